"""Parse multipart document fields into a typed :class:`MutationRequest`.

Field layout per slot ``<slot>``:

- ``<slot>``: JSON list of retained document descriptors
- ``<slot>_files``: uploaded files
- ``<slot>_labels``: kind or name for each file, matched by position
- ``clear_<slot>``: truthy to empty a single-record slot

plus one entity-wide ``deleted_documents`` JSON list. Everything is validated
here, before any storage call is made.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from starlette.datastructures import FormData, UploadFile

from insurance_admin.config import settings
from insurance_admin.logger import get_logger
from insurance_admin.services.document_model import (
    DeletionRequest,
    DiscriminatorKind,
    IncomingFile,
    MutationRequest,
    RetainedDescriptor,
    SlotDescriptor,
    SlotMutation,
)
from insurance_admin.services.reconciliation import MalformedMutationError

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = frozenset(
    {"jpg", "jpeg", "png", "gif", "webp", "pdf", "doc", "docx", "xls", "xlsx", "txt"}
)
DELETIONS_FIELD = "deleted_documents"
_TRUTHY = {"1", "true", "yes", "on"}


class UploadTooLargeError(MalformedMutationError):
    """A single file exceeds the configured upload limit."""


class RetainedDocumentIn(BaseModel):
    """Client echo of an existing document. Accepts legacy camelCase names."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    discriminator: str | None = Field(
        default=None,
        validation_alias=AliasChoices("kind", "documentType", "name", "documentName"),
    )
    existing_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("existing_url", "existingUrl", "document_url", "documentUrl"),
    )
    existing_name: str | None = Field(
        default=None, validation_alias=AliasChoices("existing_name", "existingName")
    )
    byte_size: int | None = Field(
        default=None, ge=0, validation_alias=AliasChoices("byte_size", "fileSize")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def to_descriptor(self) -> RetainedDescriptor:
        return RetainedDescriptor(
            id=self.id or None,
            discriminator=self.discriminator,
            existing_reference=self.existing_url,
            existing_name=self.existing_name,
            byte_size=self.byte_size,
        )


class DeletedDocumentIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    document_url: str | None = Field(
        default=None, validation_alias=AliasChoices("document_url", "documentUrl")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


def parse_json_field(form: FormData, field: str, default: Any = None) -> Any:
    """Decode an optional JSON-encoded form field."""
    raw = form.get(field)
    if raw is None or isinstance(raw, UploadFile):
        return default
    text = raw.strip()
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedMutationError(f"Field '{field}' is not valid JSON") from exc


def _parse_model_list(form: FormData, field: str, model: type[BaseModel]) -> list[Any] | None:
    payload = parse_json_field(form, field)
    if payload is None:
        return None
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise MalformedMutationError(f"Field '{field}' must be a JSON list")
    try:
        return [model.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise MalformedMutationError(f"Field '{field}' has invalid entries") from exc


def _is_truthy(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in _TRUTHY


def _file_label(slot: SlotDescriptor, raw: str | None, filename: str) -> str:
    if slot.is_single:
        return slot.label_for(None) or slot.name
    label = slot.label_for(raw)
    if label is None:
        if slot.default_value:
            return slot.default_value
        if slot.discriminator is DiscriminatorKind.NAME:
            return Path(filename).stem or filename
        raise MalformedMutationError(f"Missing document label for slot '{slot.name}'")
    if slot.discriminator is DiscriminatorKind.NAME and len(label) > slot.max_label_length:
        raise MalformedMutationError(
            f"Document name exceeds {slot.max_label_length} characters in slot '{slot.name}'"
        )
    return label


def _check_extension(filename: str) -> None:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension not in ALLOWED_EXTENSIONS:
        raise MalformedMutationError(f"Unsupported file type: {extension or filename}")


async def _read_incoming(
    form: FormData,
    slot: SlotDescriptor,
    max_bytes: int,
) -> tuple[IncomingFile, ...]:
    uploads = [
        value
        for value in form.getlist(f"{slot.name}_files")
        if isinstance(value, UploadFile) and value.filename
    ]
    labels = [value for value in form.getlist(f"{slot.name}_labels") if isinstance(value, str)]

    files: list[IncomingFile] = []
    for index, upload in enumerate(uploads):
        filename = Path(upload.filename or "").name or "upload"
        _check_extension(filename)
        content = await upload.read()
        if len(content) > max_bytes:
            raise UploadTooLargeError(f"File '{filename}' exceeds {max_bytes} bytes")
        raw_label = labels[index] if index < len(labels) else None
        files.append(
            IncomingFile(
                content=content,
                discriminator=_file_label(slot, raw_label, filename),
                original_name=filename,
                byte_size=len(content),
                content_type=upload.content_type,
            )
        )
    return tuple(files)


def count_files(form: FormData, slots: Sequence[SlotDescriptor]) -> int:
    return sum(
        1
        for slot in slots
        for value in form.getlist(f"{slot.name}_files")
        if isinstance(value, UploadFile) and value.filename
    )


async def parse_mutation_form(
    form: FormData,
    slots: Sequence[SlotDescriptor],
    *,
    max_bytes: int | None = None,
    max_files: int | None = None,
) -> MutationRequest:
    """Build the typed mutation for one owner from its multipart form."""
    max_bytes = max_bytes or settings.max_upload_bytes
    max_files = max_files or settings.max_files_per_request

    total = count_files(form, slots)
    if total > max_files:
        raise MalformedMutationError(f"Too many files: {total} (max {max_files})")

    mutations: dict[str, SlotMutation] = {}
    for slot in slots:
        retained: tuple[RetainedDescriptor, ...] | None = None
        if not slot.is_single:
            items = _parse_model_list(form, slot.name, RetainedDocumentIn)
            if items is not None:
                retained = tuple(item.to_descriptor() for item in items)

        mutation = SlotMutation(
            retained=retained,
            incoming=await _read_incoming(form, slot, max_bytes),
            clear=slot.is_single and _is_truthy(form.get(f"clear_{slot.name}")),
        )
        if not mutation.is_empty:
            mutations[slot.name] = mutation

    deleted = _parse_model_list(form, DELETIONS_FIELD, DeletedDocumentIn) or []
    deletions = tuple(
        DeletionRequest(id=item.id or None, reference=item.document_url or None)
        for item in deleted
        if item.id or item.document_url
    )

    logger.debug(
        "Parsed document mutation",
        slots=sorted(mutations),
        files=total,
        deletions=len(deletions),
    )
    return MutationRequest(slots=mutations, deletions=deletions)
