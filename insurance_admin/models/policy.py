"""Insurance policy model (life, health and vehicle)."""

from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, String, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from insurance_admin.database import Base
from insurance_admin.models.base import AuditMixin, SoftDeleteMixin, TimestampMixin, UUIDMixin


class PolicyKind(str, Enum):
    LIFE = "life"
    HEALTH = "health"
    VEHICLE = "vehicle"


class InsurancePolicy(UUIDMixin, AuditMixin, SoftDeleteMixin, TimestampMixin, Base):
    """A policy of any kind.

    Kind-specific fields (insurance, commission, nominee, rider, vehicle
    details...) live in ``details``; documents live in the two slot columns.
    """

    __tablename__ = "insurance_policies"

    kind: Mapped[PolicyKind] = mapped_column(
        SQLEnum(PolicyKind, name="policy_kind_enum"), nullable=False, index=True
    )
    customer_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    policy_number: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Document slots
    upload_documents: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    policy_file: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
