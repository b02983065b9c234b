"""Document handling shared by customers and every policy kind.

Each owner type is described by a tuple of slot descriptors. One engine run
covers the whole owner: every slot is planned first (so malformed input fails
before any upload), then all uploads run, then the per-slot results are merged
into the values to write and the keys to delete after the write.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from insurance_admin.logger import get_logger
from insurance_admin.services.access_view import AccessViewBuilder
from insurance_admin.services.document_model import (
    Cardinality,
    DiscriminatorKind,
    DocumentRecord,
    MutationRequest,
    OperationType,
    SlotDescriptor,
    dump_collection,
    load_collection,
)
from insurance_admin.services.reconciliation import (
    DocumentOperation,
    SlotPlan,
    SlotResult,
    UploadFailedError,
    finalize_plan,
    plan_slot,
    upload_plan,
)
from insurance_admin.services.storage import BlobStore

logger = get_logger(__name__)

CUSTOMER_DOCUMENT_KINDS = frozenset(
    {"aadhaar_card", "pan_card", "driving_license", "mediclaim", "rc_book", "other"}
)
POLICY_DOCUMENT_NAMES = frozenset(
    {"Document", "Aadhaar Card", "Pancard", "Driving License", "Mediclaim", "RC Book", "Other File"}
)

CUSTOMER_SLOTS: tuple[SlotDescriptor, ...] = (
    SlotDescriptor(
        name="documents",
        folder="customers/documents",
        allowed_values=CUSTOMER_DOCUMENT_KINDS,
        default_value="other",
    ),
    SlotDescriptor(
        name="additional_documents",
        folder="customers/additional-documents",
        discriminator=DiscriminatorKind.NAME,
    ),
    SlotDescriptor(
        name="profile_photo",
        folder="customers/profile-photos",
        cardinality=Cardinality.ONE,
        default_value="profile_photo",
    ),
)


def policy_slots(kind: str) -> tuple[SlotDescriptor, ...]:
    """Slots of a life, health or vehicle policy."""
    return (
        SlotDescriptor(
            name="upload_documents",
            folder=f"policies/{kind}/documents",
            discriminator=DiscriminatorKind.NAME,
            allowed_values=POLICY_DOCUMENT_NAMES,
            default_value="Document",
        ),
        SlotDescriptor(
            name="policy_file",
            folder=f"policies/{kind}/policy-files",
            cardinality=Cardinality.ONE,
            default_value="policy_file",
        ),
    )


@dataclass(frozen=True)
class EntityChange:
    """Merged outcome of one mutation across all slots of an owner."""

    results: dict[str, SlotResult] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    keys_to_delete: tuple[str, ...] = ()
    uploaded_keys: tuple[str, ...] = ()

    @property
    def operations(self) -> list[tuple[str, DocumentOperation]]:
        return [(name, op) for name, result in self.results.items() for op in result.operations]

    def deleted_count(self) -> int:
        return sum(1 for _, op in self.operations if op.action is OperationType.DELETE)

    def apply_to(self, owner: Any) -> None:
        # Assign fresh containers so SQLAlchemy sees the JSON columns change.
        for name, value in self.values.items():
            setattr(owner, name, value)


def current_records(owner: Any, slot: SlotDescriptor) -> list[DocumentRecord]:
    return load_collection(getattr(owner, slot.name, None), slot)


async def reconcile_entity(
    owner: Any,
    slots: Sequence[SlotDescriptor],
    mutation: MutationRequest,
    store: BlobStore,
    *,
    bucket: str | None = None,
) -> EntityChange:
    """Run the engine over every slot the mutation touches.

    Raises ``MalformedMutationError`` before any upload and
    ``UploadFailedError`` (with every orphaned key) if an upload fails.
    """
    plans: list[SlotPlan] = []
    untouched: list[DocumentRecord] = []
    for slot in slots:
        records = current_records(owner, slot)
        slot_mutation = mutation.for_slot(slot.name)
        if slot_mutation.is_empty and not mutation.deletions:
            untouched.extend(records)
            continue
        plans.append(plan_slot(slot, records, slot_mutation, mutation.deletions, bucket=bucket))

    outcomes = await asyncio.gather(
        *(upload_plan(plan, store) for plan in plans), return_exceptions=True
    )
    failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    if failures:
        orphaned = [key for outcome in outcomes if isinstance(outcome, list) for key in outcome]
        for failure in failures:
            if isinstance(failure, UploadFailedError):
                orphaned.extend(failure.orphaned_keys)
        first = failures[0]
        if not isinstance(first, UploadFailedError):
            raise first
        logger.error(
            "Entity mutation aborted after upload failure",
            owner_id=str(getattr(owner, "id", None)),
            orphaned_keys=orphaned,
        )
        raise UploadFailedError(str(first), slot=first.slot, orphaned_keys=orphaned) from first

    results: dict[str, SlotResult] = {}
    values: dict[str, Any] = {}
    live: set[str] = {record.storage_key for record in untouched}
    pending: list[str] = []
    uploaded: list[str] = []
    for plan, keys in zip(plans, outcomes, strict=True):
        result = finalize_plan(plan, keys)
        if result.dropped:
            logger.warning(
                "Documents dropped without explicit deletion",
                owner_id=str(getattr(owner, "id", None)),
                slot=plan.slot.name,
                record_ids=[record.id for record in result.dropped],
                storage_keys=[record.storage_key for record in result.dropped],
            )
        records = [record.with_id() for record in result.records]
        results[plan.slot.name] = result
        values[plan.slot.name] = dump_collection(records, plan.slot)
        live.update(record.storage_key for record in records)
        pending.extend(result.keys_to_delete)
        uploaded.extend(result.uploaded_keys)

    keys_to_delete = tuple(key for key in dict.fromkeys(pending) if key not in live)
    return EntityChange(
        results=results,
        values=values,
        keys_to_delete=keys_to_delete,
        uploaded_keys=tuple(uploaded),
    )


def collect_all_keys(owner: Any, slots: Sequence[SlotDescriptor]) -> list[str]:
    """Every storage key referenced by ``owner``, in slot order."""
    keys = [record.storage_key for slot in slots for record in current_records(owner, slot)]
    return list(dict.fromkeys(keys))


async def build_entity_view(
    owner: Any,
    slots: Sequence[SlotDescriptor],
    builder: AccessViewBuilder,
) -> dict[str, Any]:
    """Signed view of every slot: a list per collection, a URL per single slot."""

    async def _render(slot: SlotDescriptor) -> Any:
        records = current_records(owner, slot)
        if slot.is_single:
            return await builder.build_single(records[0] if records else None)
        return await builder.build_view(records, slot)

    rendered = await asyncio.gather(*(_render(slot) for slot in slots))
    return {slot.name: value for slot, value in zip(slots, rendered, strict=True)}
