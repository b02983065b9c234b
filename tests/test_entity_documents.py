"""Tests for owner-wide document reconciliation."""

from types import SimpleNamespace

import pytest

from insurance_admin.services.access_view import AccessViewBuilder
from insurance_admin.services.document_model import (
    DeletionRequest,
    DocumentRecord,
    IncomingFile,
    MutationRequest,
    RetainedDescriptor,
    SlotMutation,
)
from insurance_admin.services.entity_documents import (
    CUSTOMER_SLOTS,
    build_entity_view,
    collect_all_keys,
    policy_slots,
    reconcile_entity,
)
from insurance_admin.services.reconciliation import MalformedMutationError, UploadFailedError

DOCUMENTS, ADDITIONAL, PHOTO = CUSTOMER_SLOTS


def _customer(**overrides) -> SimpleNamespace:
    values = {
        "id": "c1",
        "documents": [
            DocumentRecord(id="d1", discriminator="pan_card", storage_key="k-pan").to_dict(DOCUMENTS),
            DocumentRecord(id="d2", discriminator="rc_book", storage_key="k-rc").to_dict(DOCUMENTS),
        ],
        "additional_documents": [
            DocumentRecord(id="a1", discriminator="Passport", storage_key="k-passport").to_dict(
                ADDITIONAL
            )
        ],
        "profile_photo": DocumentRecord(
            id="p1", discriminator="profile_photo", storage_key="k-photo"
        ).to_dict(PHOTO),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _file(label: str, name: str = "scan.pdf") -> IncomingFile:
    return IncomingFile(content=b"%PDF", discriminator=label, original_name=name, byte_size=4)


@pytest.mark.asyncio
async def test_untouched_owner_produces_no_change(blob_store):
    change = await reconcile_entity(_customer(), CUSTOMER_SLOTS, MutationRequest(), blob_store)

    assert change.values == {}
    assert change.keys_to_delete == ()
    assert blob_store.put_calls == []


@pytest.mark.asyncio
async def test_deletion_applies_across_slots(blob_store):
    owner = _customer()
    mutation = MutationRequest(deletions=(DeletionRequest(id="a1"), DeletionRequest(id="p1")))

    change = await reconcile_entity(owner, CUSTOMER_SLOTS, mutation, blob_store)
    change.apply_to(owner)

    assert owner.additional_documents == []
    assert owner.profile_photo is None
    assert [item["id"] for item in owner.documents] == ["d1", "d2"]
    assert set(change.keys_to_delete) == {"k-passport", "k-photo"}
    assert change.deleted_count() == 2


@pytest.mark.asyncio
async def test_new_records_get_ids_and_uploads_span_slots(blob_store):
    owner = _customer()
    mutation = MutationRequest(
        slots={
            "documents": SlotMutation(incoming=(_file("aadhaar_card"),)),
            "profile_photo": SlotMutation(incoming=(_file("profile_photo", "me.jpg"),)),
        }
    )

    change = await reconcile_entity(owner, CUSTOMER_SLOTS, mutation, blob_store)
    change.apply_to(owner)

    assert len(change.uploaded_keys) == 2
    added = owner.documents[-1]
    assert added["kind"] == "aadhaar_card"
    assert added["id"]
    assert owner.profile_photo["storage_key"] in change.uploaded_keys
    assert change.keys_to_delete == ("k-photo",)


@pytest.mark.asyncio
async def test_key_still_referenced_elsewhere_is_not_deleted(blob_store):
    shared = DocumentRecord(id="a9", discriminator="PAN copy", storage_key="k-pan").to_dict(ADDITIONAL)
    owner = _customer(additional_documents=[shared])
    mutation = MutationRequest(deletions=(DeletionRequest(id="d1"),))

    change = await reconcile_entity(owner, CUSTOMER_SLOTS, mutation, blob_store)

    assert change.keys_to_delete == ()
    assert [item["id"] for item in change.values["documents"]] == ["d2"]


@pytest.mark.asyncio
async def test_malformed_slot_fails_before_any_upload(blob_store):
    mutation = MutationRequest(
        slots={
            "additional_documents": SlotMutation(incoming=(_file("Visa"),)),
            "documents": SlotMutation(incoming=(_file("passport"),)),
        }
    )

    with pytest.raises(MalformedMutationError):
        await reconcile_entity(_customer(), CUSTOMER_SLOTS, mutation, blob_store)
    assert blob_store.put_calls == []


@pytest.mark.asyncio
async def test_upload_failure_reports_orphans_from_every_slot(blob_store):
    blob_store.fail_uploads.add("broken.pdf")
    mutation = MutationRequest(
        slots={
            "additional_documents": SlotMutation(incoming=(_file("Visa", "visa.pdf"),)),
            "documents": SlotMutation(incoming=(_file("pan_card", "broken.pdf"),)),
        }
    )

    with pytest.raises(UploadFailedError) as exc_info:
        await reconcile_entity(_customer(), CUSTOMER_SLOTS, mutation, blob_store)

    assert len(exc_info.value.orphaned_keys) == 1
    assert exc_info.value.orphaned_keys[0].startswith("customers/additional-documents/")


@pytest.mark.asyncio
async def test_policy_retained_named_document_keeps_metadata(blob_store):
    slots = policy_slots("health")
    upload_slot = slots[0]
    record = DocumentRecord(
        id="u1", discriminator="Mediclaim", storage_key="policies/health/documents/m.pdf", byte_size=9
    )
    owner = SimpleNamespace(id="p1", upload_documents=[record.to_dict(upload_slot)], policy_file=None)
    mutation = MutationRequest(
        slots={
            "upload_documents": SlotMutation(
                retained=(
                    RetainedDescriptor(
                        id="u1",
                        discriminator="Mediclaim",
                        existing_reference="policies/health/documents/m.pdf",
                    ),
                )
            )
        }
    )

    change = await reconcile_entity(owner, slots, mutation, blob_store)

    assert change.values["upload_documents"][0]["name"] == "Mediclaim"
    assert change.values["upload_documents"][0]["byte_size"] == 9
    assert change.keys_to_delete == ()


def test_collect_all_keys_walks_every_slot():
    assert collect_all_keys(_customer(), CUSTOMER_SLOTS) == ["k-pan", "k-rc", "k-passport", "k-photo"]
    assert collect_all_keys(_customer(documents=None, profile_photo=None), CUSTOMER_SLOTS) == [
        "k-passport"
    ]


@pytest.mark.asyncio
async def test_build_entity_view_shapes_slots(blob_store):
    view = await build_entity_view(_customer(), CUSTOMER_SLOTS, AccessViewBuilder(blob_store))

    assert [doc.kind for doc in view["documents"]] == ["pan_card", "rc_book"]
    assert view["additional_documents"][0].name == "Passport"
    assert view["additional_documents"][0].kind is None
    assert "k-photo" in view["profile_photo"]
    assert "X-Amz-Signature" in view["profile_photo"]
