"""Pydantic schemas for API request/response validation."""

from insurance_admin.schemas.base import BaseResponse, ListResponse
from insurance_admin.schemas.customer import (
    CustomerFields,
    CustomerListResponse,
    CustomerResponse,
    CustomerSummary,
)
from insurance_admin.schemas.documents import DeletionSummary, DocumentView
from insurance_admin.schemas.policy import (
    PolicyFields,
    PolicyListResponse,
    PolicyResponse,
    PolicySummary,
)

__all__ = [
    "BaseResponse",
    "CustomerFields",
    "CustomerListResponse",
    "CustomerResponse",
    "CustomerSummary",
    "DeletionSummary",
    "DocumentView",
    "ListResponse",
    "PolicyFields",
    "PolicyListResponse",
    "PolicyResponse",
    "PolicySummary",
]
