"""Post-commit blob cleanup.

The owner row is written first. Only after that write succeeds are orphaned
blobs deleted, and deletion problems are logged rather than raised: the
mutation is already committed and an orphaned blob is harmless.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from insurance_admin.logger import async_log_timing, get_logger, log_exception
from insurance_admin.services.storage import BlobStore, DeletionOutcome

logger = get_logger(__name__)

T = TypeVar("T")


class CleanupCoordinator:
    """Sequence persistence and best-effort orphan deletion."""

    def __init__(self, store: BlobStore) -> None:
        self.store = store

    async def apply(
        self,
        persist: Callable[[], Awaitable[T]],
        keys_to_delete: Sequence[str],
        *,
        entity_id: str | None = None,
    ) -> T:
        """Run ``persist`` and then delete ``keys_to_delete``.

        A persistence failure propagates unchanged and no deletion is attempted.
        """
        entity = await persist()
        await self.cleanup(keys_to_delete, entity_id=entity_id)
        return entity

    async def cleanup(
        self,
        keys_to_delete: Sequence[str],
        *,
        entity_id: str | None = None,
    ) -> list[DeletionOutcome]:
        """Delete orphaned keys; never raises for storage problems."""
        keys = list(dict.fromkeys(k for k in keys_to_delete if k))
        if not keys:
            return []

        async with async_log_timing(
            "blob_cleanup", logger=logger, entity_id=entity_id, total=len(keys)
        ) as timing:
            try:
                outcomes = await asyncio.to_thread(self.store.delete_many, keys)
            except Exception as exc:
                log_exception(
                    logger,
                    exc,
                    "Blob cleanup failed",
                    entity_id=entity_id,
                    keys=keys,
                )
                outcomes = [DeletionOutcome(key=key, success=False, error=str(exc)) for key in keys]

            failed = [outcome for outcome in outcomes if not outcome.success]
            for outcome in failed:
                logger.error(
                    "Orphaned blob could not be deleted",
                    entity_id=entity_id,
                    key=outcome.key,
                    error=outcome.error,
                )
            timing["successful"] = len(outcomes) - len(failed)
            timing["failed"] = len(failed)

        return outcomes
