"""Tests for the document reconciliation engine."""

import pytest

from insurance_admin.services.document_model import (
    Cardinality,
    DeletionRequest,
    DiscriminatorKind,
    DocumentRecord,
    IncomingFile,
    OperationType,
    RetainedDescriptor,
    SlotDescriptor,
    SlotMutation,
)
from insurance_admin.services.reconciliation import (
    MalformedMutationError,
    UploadFailedError,
    plan_slot,
    reconcile_slot,
)

KIND_SLOT = SlotDescriptor(name="documents", folder="customers/documents")
NAME_SLOT = SlotDescriptor(
    name="additional_documents",
    folder="customers/additional-documents",
    discriminator=DiscriminatorKind.NAME,
)
SINGLE_SLOT = SlotDescriptor(
    name="policy_file",
    folder="policies/life/policy-files",
    cardinality=Cardinality.ONE,
    default_value="policy_file",
)


def _file(label: str, name: str = "upload.pdf") -> IncomingFile:
    return IncomingFile(content=b"%PDF-1.4", discriminator=label, original_name=name, byte_size=8)


def _retain(record: DocumentRecord) -> RetainedDescriptor:
    return RetainedDescriptor(
        id=record.id,
        discriminator=record.discriminator,
        existing_reference=record.storage_key,
    )


@pytest.mark.asyncio
async def test_delete_then_upload_same_kind_adds_new_record(blob_store):
    """
    GIVEN a collection with one "pan" record
    WHEN the mutation deletes it and uploads another "pan" file
    THEN the result holds only the new record and the old key is queued
    """
    current = [DocumentRecord(id="1", discriminator="pan", storage_key="k1")]
    mutation = SlotMutation(incoming=(_file("pan"),))

    result = await reconcile_slot(
        KIND_SLOT, current, mutation, blob_store, deletions=[DeletionRequest(id="1")]
    )

    assert len(result.records) == 1
    record = result.records[0]
    assert record.id is None
    assert record.storage_key != "k1"
    assert record.storage_key in blob_store.objects
    assert result.keys_to_delete == ("k1",)
    actions = [op.action for op in result.operations]
    assert actions == [OperationType.ADD, OperationType.DELETE]


@pytest.mark.asyncio
async def test_retained_record_with_matching_upload_is_replaced(blob_store):
    """
    GIVEN a named record "Passport" that the client retains
    WHEN a new file named "Passport" is uploaded
    THEN the record keeps its id, gets a new key, and the old key is queued
    """
    current = [DocumentRecord(id="1", discriminator="Passport", storage_key="k1")]
    mutation = SlotMutation(retained=(_retain(current[0]),), incoming=(_file("Passport"),))

    result = await reconcile_slot(NAME_SLOT, current, mutation, blob_store)

    assert [r.id for r in result.records] == ["1"]
    assert result.records[0].storage_key not in ("k1", None)
    assert result.records[0].storage_key.startswith("customers/additional-documents/")
    assert result.keys_to_delete == ("k1",)
    assert result.operations[0].action is OperationType.REPLACE
    assert result.operations[0].record_id == "1"


def test_deletion_wins_over_retention():
    current = [
        DocumentRecord(id="1", discriminator="pan_card", storage_key="customers/documents/a.pdf"),
        DocumentRecord(id="2", discriminator="aadhaar_card", storage_key="customers/documents/b.pdf"),
    ]
    mutation = SlotMutation(retained=tuple(_retain(r) for r in current))
    deletions = [
        DeletionRequest(reference="https://bucket.s3.ap-south-1.amazonaws.com/customers/documents/a.pdf")
    ]

    plan = plan_slot(KIND_SLOT, current, mutation, deletions)

    assert [entry.record.id for entry in plan.entries] == ["2"]
    assert plan.keys_to_delete == ("customers/documents/a.pdf",)
    assert plan.dropped == ()


def test_unmatched_deletion_key_is_still_forwarded():
    deletions = [
        DeletionRequest(reference="https://bucket.s3.region.amazonaws.com/customers/documents/abc.pdf")
    ]
    plan = plan_slot(KIND_SLOT, [], SlotMutation(), deletions)

    assert plan.entries == ()
    assert plan.keys_to_delete == ("customers/documents/abc.pdf",)


@pytest.mark.asyncio
async def test_result_never_references_a_doomed_key(blob_store):
    current = [
        DocumentRecord(id="1", discriminator="pan_card", storage_key="k1"),
        DocumentRecord(id="2", discriminator="pan_card", storage_key="k2"),
        DocumentRecord(id="3", discriminator="rc_book", storage_key="k3"),
    ]
    mutation = SlotMutation(
        retained=tuple(_retain(r) for r in current),
        incoming=(_file("pan_card", "new-pan.pdf"), _file("other", "other.pdf")),
    )
    deletions = [DeletionRequest(id="3")]

    result = await reconcile_slot(KIND_SLOT, current, mutation, blob_store, deletions=deletions)

    result_keys = {r.storage_key for r in result.records}
    assert result_keys.isdisjoint(result.keys_to_delete)
    assert result_keys <= {"k1", "k2", "k3"} | set(result.uploaded_keys)
    assert set(result.keys_to_delete) == {"k1", "k3"}
    assert [r.id for r in result.records] == ["1", "2", None]


def test_replace_targets_first_unreplaced_match_only():
    current = [
        DocumentRecord(id="1", discriminator="pan_card", storage_key="k1"),
        DocumentRecord(id="2", discriminator="pan_card", storage_key="k2"),
    ]
    mutation = SlotMutation(
        retained=tuple(_retain(r) for r in current),
        incoming=(_file("pan_card"), _file("pan_card"), _file("pan_card")),
    )

    plan = plan_slot(KIND_SLOT, current, mutation)

    actions = [(op.action, op.record_id) for op in plan.operations]
    assert actions == [
        (OperationType.REPLACE, "1"),
        (OperationType.REPLACE, "2"),
        (OperationType.ADD, None),
    ]
    assert plan.keys_to_delete == ("k1", "k2")
    assert [entry.record_id for entry in plan.entries] == ["1", "2", None]


def test_incomplete_descriptors_are_dropped_without_deleting():
    current = [
        DocumentRecord(id="1", discriminator="pan_card", storage_key="k1"),
        DocumentRecord(id="2", discriminator="rc_book", storage_key="k2"),
    ]
    mutation = SlotMutation(
        retained=(
            _retain(current[0]),
            RetainedDescriptor(id="2", discriminator="rc_book", existing_reference=None),
        )
    )

    plan = plan_slot(KIND_SLOT, current, mutation)

    assert [entry.record.id for entry in plan.entries] == ["1"]
    assert plan.keys_to_delete == ()
    assert [record.id for record in plan.dropped] == ["2"]


def test_retained_metadata_falls_back_to_persisted_record():
    current = [
        DocumentRecord(
            id="1",
            discriminator="pan_card",
            storage_key="customers/documents/k1.pdf",
            original_name="pan.pdf",
            byte_size=1234,
        )
    ]
    descriptor = RetainedDescriptor(
        id="1",
        discriminator="pan_card",
        existing_reference=(
            "http://127.0.0.1:9000/insurance-documents/customers/documents/k1.pdf?X-Amz-Signature=x"
        ),
    )

    plan = plan_slot(
        KIND_SLOT, current, SlotMutation(retained=(descriptor,)), bucket="insurance-documents"
    )

    record = plan.entries[0].record
    assert record.storage_key == "customers/documents/k1.pdf"
    assert record.original_name == "pan.pdf"
    assert record.byte_size == 1234
    assert record.uploaded_at == current[0].uploaded_at


def test_omitted_slot_is_untouched():
    current = [DocumentRecord(id="1", discriminator="pan_card", storage_key="k1")]
    plan = plan_slot(KIND_SLOT, current, SlotMutation())

    assert [entry.record for entry in plan.entries] == current
    assert [op.action for op in plan.operations] == [OperationType.KEEP]
    assert plan.keys_to_delete == ()


@pytest.mark.asyncio
async def test_single_slot_upload_replaces_current(blob_store):
    current = [DocumentRecord(id="p1", discriminator="policy_file", storage_key="old.pdf")]
    result = await reconcile_slot(
        SINGLE_SLOT, current, SlotMutation(incoming=(_file("policy_file"),)), blob_store
    )

    assert len(result.records) == 1
    assert result.records[0].id == "p1"
    assert result.keys_to_delete == ("old.pdf",)


def test_single_slot_clear_queues_old_key():
    current = [DocumentRecord(id="p1", discriminator="policy_file", storage_key="old.pdf")]
    plan = plan_slot(SINGLE_SLOT, current, SlotMutation(clear=True))

    assert plan.entries == ()
    assert plan.keys_to_delete == ("old.pdf",)
    assert [op.action for op in plan.operations] == [OperationType.DELETE]


def test_single_slot_rejects_multiple_files():
    with pytest.raises(MalformedMutationError):
        plan_slot(SINGLE_SLOT, [], SlotMutation(incoming=(_file("policy_file"), _file("policy_file"))))


def test_unknown_kind_is_malformed():
    slot = SlotDescriptor(
        name="documents",
        folder="customers/documents",
        allowed_values=frozenset({"pan_card"}),
    )
    with pytest.raises(MalformedMutationError, match="Unsupported document type"):
        plan_slot(slot, [], SlotMutation(incoming=(_file("passport"),)))


@pytest.mark.asyncio
async def test_upload_failure_aborts_and_reports_orphans(blob_store):
    blob_store.fail_uploads.add("broken.pdf")
    current = [DocumentRecord(id="1", discriminator="pan_card", storage_key="k1")]
    mutation = SlotMutation(incoming=(_file("pan_card", "ok.pdf"), _file("rc_book", "broken.pdf")))

    with pytest.raises(UploadFailedError) as exc_info:
        await reconcile_slot(KIND_SLOT, current, mutation, blob_store)

    assert len(exc_info.value.orphaned_keys) == 1
    assert exc_info.value.orphaned_keys[0] in blob_store.objects
    assert blob_store.delete_calls == []


@pytest.mark.asyncio
async def test_descriptor_for_unknown_record_cannot_adopt_foreign_key(blob_store):
    """
    GIVEN a slot holding one "pan_card" record
    WHEN the client echoes a made-up id pointing at a key this slot never held
    THEN the descriptor is ignored and a matching upload never queues that key
    """
    current = [DocumentRecord(id="1", discriminator="pan_card", storage_key="customers/documents/mine.pdf")]
    forged = RetainedDescriptor(
        id="forged", discriminator="aadhaar_card", existing_reference="customers/documents/theirs.pdf"
    )
    mutation = SlotMutation(retained=(_retain(current[0]), forged), incoming=(_file("aadhaar_card"),))

    result = await reconcile_slot(KIND_SLOT, current, mutation, blob_store)

    assert "customers/documents/theirs.pdf" not in {r.storage_key for r in result.records}
    assert result.keys_to_delete == ()
    assert [(r.id, r.discriminator) for r in result.records] == [("1", "pan_card"), (None, "aadhaar_card")]


def test_descriptor_with_mismatched_key_is_ignored():
    current = [DocumentRecord(id="1", discriminator="pan_card", storage_key="customers/documents/mine.pdf")]
    swapped = RetainedDescriptor(
        id="1", discriminator="pan_card", existing_reference="customers/documents/theirs.pdf"
    )

    plan = plan_slot(KIND_SLOT, current, SlotMutation(retained=(swapped,)))

    assert plan.entries == ()
    assert plan.keys_to_delete == ()
    assert [record.id for record in plan.dropped] == ["1"]


def test_retained_descriptor_with_unknown_kind_is_malformed():
    slot = SlotDescriptor(
        name="documents",
        folder="customers/documents",
        allowed_values=frozenset({"pan_card"}),
    )
    current = [DocumentRecord(id="1", discriminator="pan_card", storage_key="k1")]
    descriptor = RetainedDescriptor(id="1", discriminator="bogus", existing_reference="k1")

    with pytest.raises(MalformedMutationError, match="Unsupported document type 'bogus'"):
        plan_slot(slot, current, SlotMutation(retained=(descriptor,)))
