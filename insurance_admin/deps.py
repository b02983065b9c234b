"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from insurance_admin.deps import BlobStoreDep, CurrentAdmin, DbSession

    async def my_endpoint(db: DbSession, admin: CurrentAdmin, store: BlobStoreDep):
        ...
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from insurance_admin.auth import AdminContext, get_current_admin
from insurance_admin.database import get_db
from insurance_admin.services.storage import BlobStore, StorageService


def get_blob_store() -> BlobStore:
    """Blob store for the request; overridden in tests."""
    return StorageService()


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentAdmin = Annotated[AdminContext, Depends(get_current_admin)]
BlobStoreDep = Annotated[BlobStore, Depends(get_blob_store)]

__all__ = ["BlobStoreDep", "CurrentAdmin", "DbSession", "get_blob_store"]
