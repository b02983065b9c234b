"""Services package."""

from insurance_admin.services.access_view import AccessViewBuilder
from insurance_admin.services.cleanup import CleanupCoordinator
from insurance_admin.services.document_forms import (
    UploadTooLargeError,
    parse_json_field,
    parse_mutation_form,
)
from insurance_admin.services.document_model import (
    DeletionRequest,
    DocumentRecord,
    MutationRequest,
    SlotDescriptor,
)
from insurance_admin.services.entity_documents import (
    CUSTOMER_SLOTS,
    EntityChange,
    build_entity_view,
    collect_all_keys,
    policy_slots,
    reconcile_entity,
)
from insurance_admin.services.key_codec import to_key
from insurance_admin.services.reconciliation import MalformedMutationError, UploadFailedError
from insurance_admin.services.storage import BlobStore, DeletionOutcome, StorageError, StorageService

__all__ = [
    "CUSTOMER_SLOTS",
    "AccessViewBuilder",
    "BlobStore",
    "CleanupCoordinator",
    "DeletionOutcome",
    "DeletionRequest",
    "DocumentRecord",
    "EntityChange",
    "MalformedMutationError",
    "MutationRequest",
    "SlotDescriptor",
    "StorageError",
    "StorageService",
    "UploadFailedError",
    "UploadTooLargeError",
    "build_entity_view",
    "collect_all_keys",
    "parse_json_field",
    "parse_mutation_form",
    "policy_slots",
    "reconcile_entity",
    "to_key",
]
