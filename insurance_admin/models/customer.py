"""Customer model."""

import secrets
from enum import Enum
from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from insurance_admin.database import Base
from insurance_admin.models.base import AuditMixin, SoftDeleteMixin, TimestampMixin, UUIDMixin


class CustomerType(str, Enum):
    INDIVIDUAL = "individual"
    CORPORATE = "corporate"


def generate_customer_code() -> str:
    """Public customer reference, e.g. ``SEVA-042917``."""
    return f"SEVA-{secrets.randbelow(1_000_000):06d}"


class Customer(UUIDMixin, AuditMixin, SoftDeleteMixin, TimestampMixin, Base):
    """Customer with embedded document slots.

    ``documents`` and ``additional_documents`` hold JSON arrays of document
    records; ``profile_photo`` holds a single record or null.
    """

    __tablename__ = "customers"

    customer_code: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False, default=generate_customer_code
    )
    customer_type: Mapped[CustomerType] = mapped_column(
        SQLEnum(CustomerType, name="customer_type_enum"),
        nullable=False,
        default=CustomerType.INDIVIDUAL,
    )
    personal_details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    corporate_details: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    family_details: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Document slots
    documents: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    additional_documents: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    profile_photo: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
