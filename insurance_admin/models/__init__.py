"""Database models."""

from insurance_admin.models.customer import Customer, CustomerType, generate_customer_code
from insurance_admin.models.policy import InsurancePolicy, PolicyKind

__all__ = [
    "Customer",
    "CustomerType",
    "InsurancePolicy",
    "PolicyKind",
    "generate_customer_code",
]
