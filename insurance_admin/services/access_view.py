"""Read-time access views: replace stored keys with freshly signed URLs."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from insurance_admin.config import settings
from insurance_admin.logger import get_logger, log_exception
from insurance_admin.schemas.documents import DocumentView
from insurance_admin.services.document_model import DiscriminatorKind, DocumentRecord, SlotDescriptor
from insurance_admin.services.key_codec import to_key
from insurance_admin.services.storage import BlobStore

logger = get_logger(__name__)


class AccessViewBuilder:
    """Sign every stored key on demand; nothing is cached between calls."""

    def __init__(
        self,
        store: BlobStore,
        *,
        ttl_seconds: int | None = None,
        timeout_seconds: float | None = None,
        bucket: str | None = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.s3_presign_expiry_seconds
        self.timeout_seconds = timeout_seconds or settings.signing_timeout_seconds
        self.bucket = bucket

    async def sign_reference(self, reference: str) -> str:
        """Sign one stored reference, falling back to the raw value on failure."""
        key = to_key(reference, bucket=self.bucket)
        if not key:
            return reference
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.store.sign, key, self.ttl_seconds),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Signing timed out, returning stored key",
                key=key,
                timeout_seconds=self.timeout_seconds,
            )
        except Exception as exc:
            log_exception(
                logger,
                exc,
                "Signing failed, returning stored key",
                level="warning",
                include_traceback=False,
                key=key,
            )
        return reference

    async def build_view(
        self,
        records: Sequence[DocumentRecord],
        slot: SlotDescriptor | None = None,
    ) -> list[DocumentView]:
        urls = await asyncio.gather(*(self.sign_reference(r.storage_key) for r in records))
        named = slot is not None and slot.discriminator is DiscriminatorKind.NAME
        return [
            DocumentView(
                id=record.id,
                kind=None if named else record.discriminator,
                name=record.discriminator if named else None,
                original_name=record.original_name,
                byte_size=record.byte_size,
                uploaded_at=record.uploaded_at,
                document_url=url,
            )
            for record, url in zip(records, urls, strict=True)
        ]

    async def build_single(self, record: DocumentRecord | None) -> str | None:
        if record is None:
            return None
        return await self.sign_reference(record.storage_key)
