"""Document response schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class DocumentView(BaseModel):
    """A stored document as returned to API clients.

    ``document_url`` is signed on every read; raw storage keys never leave the API.
    """

    id: str | None = None
    kind: str | None = None
    name: str | None = None
    original_name: str | None = None
    byte_size: int | None = None
    uploaded_at: datetime | None = None
    document_url: str = Field(..., description="Time-limited signed URL")


class DeletionSummary(BaseModel):
    """Response for hard deletes."""

    id: str
    documents_removed: int
    detail: str = "Permanently deleted"
