"""Pydantic schemas for life, health and vehicle policies."""

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from insurance_admin.models.policy import PolicyKind
from insurance_admin.schemas.base import BaseResponse, ListResponse
from insurance_admin.schemas.documents import DocumentView


class PolicyFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: UUID | None = None
    policy_number: Annotated[str | None, Field(None, min_length=1, max_length=100)] = None
    details: dict[str, Any] | None = None
    notes: Annotated[str | None, Field(None, max_length=2000)] = None


class PolicySummary(BaseResponse):
    id: UUID
    kind: PolicyKind
    customer_id: UUID
    policy_number: str
    details: dict[str, Any]
    notes: str | None = None
    is_active: bool
    created_by: UUID
    last_updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime


class PolicyResponse(PolicySummary):
    """Policy with signed document URLs."""

    upload_documents: list[DocumentView] = Field(default_factory=list)
    policy_file: str | None = None


class PolicyListResponse(ListResponse[PolicyResponse]):
    pass
