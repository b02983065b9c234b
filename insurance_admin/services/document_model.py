"""Document record model shared by customers and every policy kind.

A record is one stored file attached to an owner slot. Slots are persisted as
embedded JSON arrays on the owner row; this module converts between those
stored dicts and typed records.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class Cardinality(str, Enum):
    """How many records a slot may hold."""

    MANY = "many"
    ONE = "one"


class DiscriminatorKind(str, Enum):
    """Which stored field tells records apart inside a slot."""

    KIND = "kind"
    NAME = "name"


class OperationType(str, Enum):
    """Planned effect on one record during reconciliation."""

    KEEP = "keep"
    ADD = "add"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class SlotDescriptor:
    """Static description of one document slot on an owner."""

    name: str
    folder: str
    cardinality: Cardinality = Cardinality.MANY
    discriminator: DiscriminatorKind = DiscriminatorKind.KIND
    allowed_values: frozenset[str] | None = None
    # Fixed discriminator for cardinality-one slots (e.g. "policy_file"),
    # fallback upload label for the others.
    default_value: str | None = None
    max_label_length: int = 100

    @property
    def is_single(self) -> bool:
        return self.cardinality is Cardinality.ONE

    def label_for(self, raw: str | None) -> str | None:
        """Normalise a client-supplied discriminator for this slot."""
        if self.is_single:
            return self.default_value or self.name
        if raw is None:
            return None
        value = raw.strip()
        return value or None


@dataclass(frozen=True)
class DocumentRecord:
    """One stored document.

    ``storage_key`` never changes for a given record; replacing a document
    yields a new record that reuses ``id`` and carries a new key.
    """

    discriminator: str
    storage_key: str
    id: str | None = None
    original_name: str | None = None
    byte_size: int | None = None
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def with_id(self) -> DocumentRecord:
        if self.id:
            return self
        return replace(self, id=uuid4().hex)

    def to_dict(self, slot: SlotDescriptor) -> dict[str, Any]:
        return {
            "id": self.id,
            slot.discriminator.value: self.discriminator,
            "storage_key": self.storage_key,
            "original_name": self.original_name,
            "byte_size": self.byte_size,
            "uploaded_at": self.uploaded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], slot: SlotDescriptor) -> DocumentRecord:
        uploaded_at = data.get("uploaded_at")
        if isinstance(uploaded_at, str):
            uploaded_at = datetime.fromisoformat(uploaded_at)
        elif not isinstance(uploaded_at, datetime):
            uploaded_at = datetime.now(UTC)
        discriminator = data.get(slot.discriminator.value) or slot.label_for(None) or ""
        return cls(
            id=data.get("id"),
            discriminator=discriminator,
            storage_key=data["storage_key"],
            original_name=data.get("original_name"),
            byte_size=data.get("byte_size"),
            uploaded_at=uploaded_at,
        )


@dataclass(frozen=True)
class IncomingFile:
    """A newly uploaded file waiting for a storage key."""

    content: bytes
    discriminator: str
    original_name: str
    byte_size: int
    content_type: str | None = None


@dataclass(frozen=True)
class RetainedDescriptor:
    """Flat client echo of a record that should survive the mutation.

    Fields are optional because form submissions routinely drop them; the
    engine decides what is complete enough to keep.
    """

    id: str | None = None
    discriminator: str | None = None
    existing_reference: str | None = None
    existing_name: str | None = None
    byte_size: int | None = None


@dataclass(frozen=True)
class DeletionRequest:
    """Client signal that a record must go, by id and/or by stored reference."""

    id: str | None = None
    reference: str | None = None


@dataclass(frozen=True)
class SlotMutation:
    """Everything a mutation says about one slot.

    ``retained`` is ``None`` when the client did not resend the slot's
    descriptor list at all.
    """

    retained: tuple[RetainedDescriptor, ...] | None = None
    incoming: tuple[IncomingFile, ...] = ()
    clear: bool = False

    @property
    def is_empty(self) -> bool:
        return self.retained is None and not self.incoming and not self.clear


@dataclass(frozen=True)
class MutationRequest:
    """Typed mutation for one owner, parsed at the controller boundary."""

    slots: Mapping[str, SlotMutation] = field(default_factory=dict)
    deletions: tuple[DeletionRequest, ...] = ()

    def for_slot(self, slot_name: str) -> SlotMutation:
        return self.slots.get(slot_name, SlotMutation())


def load_collection(raw: Any, slot: SlotDescriptor) -> list[DocumentRecord]:
    """Convert a stored slot value (list, single dict or None) into records."""
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        raw = [raw]
    return [DocumentRecord.from_dict(item, slot) for item in raw if item and item.get("storage_key")]


def dump_collection(records: Sequence[DocumentRecord], slot: SlotDescriptor) -> Any:
    """Inverse of :func:`load_collection`; single slots store a dict or None."""
    items = [record.to_dict(slot) for record in records]
    if slot.is_single:
        return items[0] if items else None
    return items


def live_keys(records: Iterable[DocumentRecord]) -> set[str]:
    return {record.storage_key for record in records}
