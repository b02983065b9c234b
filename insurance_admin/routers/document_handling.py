"""Request plumbing shared by the customer and policy routers.

Maps the document engine's exceptions onto HTTP errors and runs the
commit-then-cleanup sequence for every mutating endpoint.
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import FormData

from insurance_admin.config import settings
from insurance_admin.logger import get_logger
from insurance_admin.services import (
    AccessViewBuilder,
    BlobStore,
    CleanupCoordinator,
    EntityChange,
    MalformedMutationError,
    MutationRequest,
    SlotDescriptor,
    UploadFailedError,
    UploadTooLargeError,
    build_entity_view,
    parse_json_field,
    parse_mutation_form,
    reconcile_entity,
)
from insurance_admin.utils import (
    raise_bad_request,
    raise_internal_error,
    raise_service_unavailable,
    raise_too_large,
)

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
EntityT = TypeVar("EntityT")


def parse_fields(
    form: FormData,
    model: type[ModelT],
    *,
    json_fields: Sequence[str] = (),
    text_fields: Sequence[str] = (),
) -> ModelT:
    """Validate the non-document form fields of a request."""
    data: dict[str, Any] = {}
    try:
        for name in json_fields:
            value = parse_json_field(form, name)
            if value is not None:
                data[name] = value
    except MalformedMutationError as exc:
        raise_bad_request(str(exc), cause=exc)

    for name in text_fields:
        value = form.get(name)
        if isinstance(value, str) and value.strip():
            data[name] = value.strip()

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise_bad_request(f"Invalid fields: {fields}", cause=exc)


async def read_mutation(form: FormData, slots: Sequence[SlotDescriptor]) -> MutationRequest:
    try:
        return await parse_mutation_form(form, slots)
    except UploadTooLargeError as exc:
        raise_too_large(str(exc), cause=exc)
    except MalformedMutationError as exc:
        raise_bad_request(str(exc), cause=exc)


def select_slots(slots: Sequence[SlotDescriptor], name: str | None) -> tuple[SlotDescriptor, ...]:
    if name is None:
        return tuple(slots)
    selected = tuple(slot for slot in slots if slot.name == name)
    if not selected:
        raise_bad_request(f"Unknown document slot: {name}")
    return selected


async def apply_documents(
    owner: Any,
    slots: Sequence[SlotDescriptor],
    mutation: MutationRequest,
    store: BlobStore,
) -> EntityChange:
    """Reconcile and upload; the owner is not modified."""
    try:
        return await reconcile_entity(owner, slots, mutation, store, bucket=settings.s3_bucket)
    except MalformedMutationError as exc:
        raise_bad_request(str(exc), cause=exc)
    except UploadFailedError as exc:
        raise_service_unavailable("Document storage is unavailable, please retry", cause=exc)


async def commit_and_cleanup(
    db: AsyncSession,
    entity: EntityT,
    keys_to_delete: Sequence[str],
    store: BlobStore,
    *,
    orphaned_keys: Sequence[str] = (),
    persist: Callable[[], Awaitable[EntityT]] | None = None,
) -> EntityT:
    """Commit the session, then delete blobs that are no longer referenced.

    When the commit fails the session is rolled back, nothing is deleted, and
    the blobs uploaded for this request are logged as orphans.
    """

    async def _commit_and_refresh() -> EntityT:
        await db.commit()
        await db.refresh(entity)
        return entity

    entity_id = str(getattr(entity, "id", None))
    coordinator = CleanupCoordinator(store)
    try:
        return await coordinator.apply(
            persist or _commit_and_refresh, keys_to_delete, entity_id=entity_id
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "Failed to persist document mutation",
            entity_id=entity_id,
            orphaned_keys=list(orphaned_keys),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise_internal_error("Failed to save changes", cause=exc)


async def render_documents(
    owner: Any, slots: Sequence[SlotDescriptor], store: BlobStore
) -> dict[str, Any]:
    return await build_entity_view(owner, slots, AccessViewBuilder(store, bucket=settings.s3_bucket))
