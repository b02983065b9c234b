"""Document reconciliation engine.

Given the persisted records of one slot and a typed mutation, decide which
records are kept, replaced, added or deleted, upload the new bytes and return
the new collection together with the keys that become orphaned. Deleting those
keys is left to the caller, after the owner row has been written.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from insurance_admin.logger import get_logger
from insurance_admin.services.document_model import (
    DeletionRequest,
    DocumentRecord,
    IncomingFile,
    OperationType,
    RetainedDescriptor,
    SlotDescriptor,
    SlotMutation,
)
from insurance_admin.services.key_codec import to_key
from insurance_admin.services.storage import BlobStore

logger = get_logger(__name__)


class MalformedMutationError(ValueError):
    """Raised when a mutation cannot be applied as submitted."""


class UploadFailedError(Exception):
    """Raised when a new file could not be written to the blob store."""

    def __init__(self, message: str, *, slot: str, orphaned_keys: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.slot = slot
        self.orphaned_keys = list(orphaned_keys)


@dataclass(frozen=True)
class DocumentOperation:
    """One planned effect, in deterministic order."""

    action: OperationType
    discriminator: str
    record_id: str | None = None
    storage_key: str | None = None
    file_index: int | None = None


@dataclass(frozen=True)
class PlannedEntry:
    """Position in the output collection: an existing record or a pending upload."""

    record: DocumentRecord | None = None
    file_index: int | None = None
    record_id: str | None = None


@dataclass(frozen=True)
class SlotPlan:
    slot: SlotDescriptor
    entries: tuple[PlannedEntry, ...]
    incoming: tuple[IncomingFile, ...]
    operations: tuple[DocumentOperation, ...]
    keys_to_delete: tuple[str, ...]
    dropped: tuple[DocumentRecord, ...]


@dataclass(frozen=True)
class SlotResult:
    slot: SlotDescriptor
    records: tuple[DocumentRecord, ...]
    keys_to_delete: tuple[str, ...]
    uploaded_keys: tuple[str, ...]
    operations: tuple[DocumentOperation, ...]
    dropped: tuple[DocumentRecord, ...]


def _dedupe(keys: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(k for k in keys if k))


def _check_label(slot: SlotDescriptor, label: str) -> None:
    if slot.allowed_values is not None and label not in slot.allowed_values:
        raise MalformedMutationError(f"Unsupported document type '{label}' for slot '{slot.name}'")


def _retain_from_descriptors(
    slot: SlotDescriptor,
    current: Sequence[DocumentRecord],
    descriptors: Sequence[RetainedDescriptor],
    bucket: str | None,
) -> list[DocumentRecord]:
    """Keep the persisted records the client echoed back.

    A descriptor only ever selects a record this slot already holds: its id
    must match and its reference must resolve to that record's key.
    """
    by_id = {record.id: record for record in current if record.id}
    retained: list[DocumentRecord] = []
    seen_ids: set[str] = set()
    for descriptor in descriptors:
        key = to_key(descriptor.existing_reference, bucket=bucket)
        discriminator = slot.label_for(descriptor.discriminator)
        if not (key and discriminator and descriptor.id):
            logger.debug(
                "Skipping incomplete retained descriptor",
                slot=slot.name,
                record_id=descriptor.id,
                has_reference=bool(key),
                has_discriminator=bool(discriminator),
            )
            continue
        _check_label(slot, discriminator)

        persisted = by_id.get(descriptor.id)
        if persisted is None or persisted.storage_key != key:
            logger.warning(
                "Ignoring retained descriptor that matches no stored record",
                slot=slot.name,
                record_id=descriptor.id,
                storage_key=key,
            )
            continue
        if descriptor.id in seen_ids:
            continue
        seen_ids.add(descriptor.id)

        retained.append(
            DocumentRecord(
                id=persisted.id,
                discriminator=discriminator,
                storage_key=persisted.storage_key,
                original_name=descriptor.existing_name or persisted.original_name or discriminator,
                byte_size=descriptor.byte_size
                if descriptor.byte_size is not None
                else persisted.byte_size,
                uploaded_at=persisted.uploaded_at,
            )
        )
    return retained


def plan_slot(
    slot: SlotDescriptor,
    current: Sequence[DocumentRecord],
    mutation: SlotMutation,
    deletions: Sequence[DeletionRequest] = (),
    *,
    bucket: str | None = None,
) -> SlotPlan:
    """Compute the deterministic operation set for one slot without any I/O."""
    incoming = tuple(mutation.incoming)
    if slot.is_single and len(incoming) > 1:
        raise MalformedMutationError(f"Slot '{slot.name}' accepts a single file")
    for file in incoming:
        if not file.discriminator:
            raise MalformedMutationError(f"Missing document label for slot '{slot.name}'")
        _check_label(slot, file.discriminator)

    delete_keys: list[str] = []
    operations: list[DocumentOperation] = []

    # 1. Retained set
    if slot.is_single or mutation.retained is None:
        retained = list(current)
    else:
        retained = _retain_from_descriptors(slot, current, mutation.retained, bucket)

    if slot.is_single and mutation.clear:
        for record in retained:
            delete_keys.append(record.storage_key)
            operations.append(
                DocumentOperation(
                    OperationType.DELETE, record.discriminator, record.id, record.storage_key
                )
            )
        retained = []

    # 2. Explicit deletions win over retention
    for request in deletions:
        key = to_key(request.reference, bucket=bucket)
        if key is None and request.id:
            match = next((r for r in [*retained, *current] if r.id == request.id), None)
            key = match.storage_key if match else None
        if key:
            delete_keys.append(key)
        survivors: list[DocumentRecord] = []
        for record in retained:
            if (request.id and record.id == request.id) or (key and record.storage_key == key):
                operations.append(
                    DocumentOperation(
                        OperationType.DELETE, record.discriminator, record.id, record.storage_key
                    )
                )
                continue
            survivors.append(record)
        retained = survivors

    # 3. Incoming files: replace first unreplaced match, otherwise add
    entries: list[PlannedEntry] = [PlannedEntry(record=record) for record in retained]
    replaced_positions: set[int] = set()
    additions: list[PlannedEntry] = []
    file_operations: list[DocumentOperation] = []
    for index, file in enumerate(incoming):
        position = next(
            (
                pos
                for pos, record in enumerate(retained)
                if pos not in replaced_positions
                and (slot.is_single or record.discriminator == file.discriminator)
            ),
            None,
        )
        if position is None:
            additions.append(PlannedEntry(file_index=index))
            file_operations.append(
                DocumentOperation(OperationType.ADD, file.discriminator, file_index=index)
            )
            continue

        old = retained[position]
        replaced_positions.add(position)
        delete_keys.append(old.storage_key)
        entries[position] = PlannedEntry(file_index=index, record_id=old.id)
        file_operations.append(
            DocumentOperation(
                OperationType.REPLACE,
                file.discriminator,
                record_id=old.id,
                storage_key=old.storage_key,
                file_index=index,
            )
        )

    keys_to_delete = _dedupe(delete_keys)
    doomed = set(keys_to_delete)
    final_entries = [
        entry
        for entry in [*entries, *additions]
        if entry.record is None or entry.record.storage_key not in doomed
    ]
    keep_operations = [
        DocumentOperation(
            OperationType.KEEP, entry.record.discriminator, entry.record.id, entry.record.storage_key
        )
        for entry in final_entries
        if entry.record is not None
    ]

    surviving_ids = {entry.record.id for entry in final_entries if entry.record is not None}
    surviving_ids.update(entry.record_id for entry in final_entries if entry.record_id)
    explicit_ids = {op.record_id for op in operations if op.record_id}
    dropped = tuple(
        record
        for record in current
        if record.id not in surviving_ids
        and record.id not in explicit_ids
        and record.storage_key not in doomed
    )

    return SlotPlan(
        slot=slot,
        entries=tuple(final_entries),
        incoming=incoming,
        operations=tuple([*keep_operations, *file_operations, *operations]),
        keys_to_delete=keys_to_delete,
        dropped=dropped,
    )


async def _upload(store: BlobStore, slot: SlotDescriptor, file: IncomingFile) -> str:
    return await asyncio.to_thread(
        store.put, file.content, f"{slot.folder}/{file.original_name}", file.content_type
    )


async def upload_plan(plan: SlotPlan, store: BlobStore) -> list[str]:
    """Upload every incoming file of ``plan`` concurrently.

    Returns keys in file order. Any failure aborts with :class:`UploadFailedError`;
    keys that did land are reported as orphans.
    """
    if not plan.incoming:
        return []
    results = await asyncio.gather(
        *(_upload(store, plan.slot, file) for file in plan.incoming),
        return_exceptions=True,
    )
    failures = [result for result in results if isinstance(result, BaseException)]
    if failures:
        orphaned = [result for result in results if isinstance(result, str)]
        logger.error(
            "Document upload failed, aborting mutation",
            slot=plan.slot.name,
            failed=len(failures),
            orphaned_keys=orphaned,
            error=str(failures[0]),
        )
        raise UploadFailedError(
            f"Failed to upload {len(failures)} file(s) for slot '{plan.slot.name}'",
            slot=plan.slot.name,
            orphaned_keys=orphaned,
        ) from failures[0]
    return [result for result in results if isinstance(result, str)]


def finalize_plan(plan: SlotPlan, uploaded_keys: Sequence[str]) -> SlotResult:
    """Combine a plan with the keys its uploads produced."""
    if len(uploaded_keys) != len(plan.incoming):
        raise ValueError("uploaded_keys must match the plan's incoming files")
    now = datetime.now(UTC)
    records: list[DocumentRecord] = []
    for entry in plan.entries:
        if entry.record is not None:
            records.append(entry.record)
            continue
        if entry.file_index is None:
            raise ValueError("Planned entry carries neither a record nor a file")
        file = plan.incoming[entry.file_index]
        records.append(
            DocumentRecord(
                id=entry.record_id,
                discriminator=file.discriminator,
                storage_key=uploaded_keys[entry.file_index],
                original_name=file.original_name,
                byte_size=file.byte_size,
                uploaded_at=now,
            )
        )

    new_keys = set(uploaded_keys)
    operations = tuple(
        replace(op, storage_key=uploaded_keys[op.file_index])
        if op.action is OperationType.ADD and op.file_index is not None
        else op
        for op in plan.operations
    )
    return SlotResult(
        slot=plan.slot,
        records=tuple(records),
        keys_to_delete=tuple(k for k in plan.keys_to_delete if k not in new_keys),
        uploaded_keys=tuple(uploaded_keys),
        operations=operations,
        dropped=plan.dropped,
    )


async def reconcile_slot(
    slot: SlotDescriptor,
    current: Sequence[DocumentRecord],
    mutation: SlotMutation,
    store: BlobStore,
    deletions: Sequence[DeletionRequest] = (),
    *,
    bucket: str | None = None,
) -> SlotResult:
    """Plan, upload and finalize one slot."""
    plan = plan_slot(slot, current, mutation, deletions, bucket=bucket)
    uploaded = await upload_plan(plan, store)
    result = finalize_plan(plan, uploaded)
    if result.dropped:
        logger.warning(
            "Documents dropped without explicit deletion",
            slot=slot.name,
            record_ids=[record.id for record in result.dropped],
            storage_keys=[record.storage_key for record in result.dropped],
        )
    return result
