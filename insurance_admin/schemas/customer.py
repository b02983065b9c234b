"""Pydantic schemas for customers."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from insurance_admin.models.customer import CustomerType
from insurance_admin.schemas.base import BaseResponse, ListResponse
from insurance_admin.schemas.documents import DocumentView


class CustomerFields(BaseModel):
    """Non-document customer fields submitted alongside the multipart documents."""

    model_config = ConfigDict(extra="ignore")

    customer_type: CustomerType | None = None
    personal_details: dict[str, Any] | None = None
    corporate_details: list[dict[str, Any]] | None = None
    family_details: list[dict[str, Any]] | None = None


class CustomerSummary(BaseResponse):
    id: UUID
    customer_code: str
    customer_type: CustomerType
    personal_details: dict[str, Any]
    corporate_details: list[dict[str, Any]]
    family_details: list[dict[str, Any]]
    is_active: bool
    created_by: UUID
    last_updated_by: UUID | None = None
    created_at: datetime
    updated_at: datetime


class CustomerResponse(CustomerSummary):
    """Customer with signed document URLs."""

    documents: list[DocumentView] = Field(default_factory=list)
    additional_documents: list[DocumentView] = Field(default_factory=list)
    profile_photo: str | None = None


class CustomerListResponse(ListResponse[CustomerResponse]):
    pass
