"""API routers."""

from insurance_admin.routers import customers, policies

__all__ = ["customers", "policies"]
