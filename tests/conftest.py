"""Test fixtures and configuration."""

import logging
import os
import sys
import time
from collections.abc import Sequence
from uuid import uuid4

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Settings are read at import time; pin them before importing the package.
os.environ["ENVIRONMENT"] = "testing"
os.environ["S3_BUCKET"] = "insurance-documents"
os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)

from insurance_admin.deps import get_blob_store  # noqa: E402
from insurance_admin.main import app  # noqa: E402
from insurance_admin.services.storage import DeletionOutcome, StorageError, generate_key  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class InMemoryBlobStore:
    """Blob store fake recording every call.

    ``fail_uploads`` holds original file names whose upload must fail,
    ``fail_deletes`` holds keys whose deletion must fail.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.put_calls: list[str] = []
        self.delete_calls: list[list[str]] = []
        self.sign_calls: list[str] = []
        self.fail_uploads: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.fail_signing = False
        self.sign_delay = 0.0
        self._sign_counter = 0

    def put(self, content: bytes, key_hint: str, content_type: str | None = None) -> str:
        self.put_calls.append(key_hint)
        if key_hint.rsplit("/", 1)[-1] in self.fail_uploads:
            raise StorageError(f"Failed to upload {key_hint}")
        key = generate_key(key_hint)
        self.objects[key] = content
        return key

    def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError as exc:
            raise StorageError(f"Failed to fetch {key}") from exc

    def delete(self, key: str) -> DeletionOutcome:
        if key in self.fail_deletes:
            return DeletionOutcome(key=key, success=False, error="AccessDenied: Access Denied")
        self.objects.pop(key, None)
        return DeletionOutcome(key=key, success=True)

    def delete_many(self, keys: Sequence[str]) -> list[DeletionOutcome]:
        self.delete_calls.append(list(keys))
        return [self.delete(key) for key in keys]

    def sign(self, key: str, ttl: int) -> str:
        self.sign_calls.append(key)
        if self.sign_delay:
            time.sleep(self.sign_delay)
        if self.fail_signing:
            raise StorageError(f"Failed to generate presigned URL for {key}")
        self._sign_counter += 1
        return (
            f"http://127.0.0.1:9000/insurance-documents/{key}"
            f"?X-Amz-Expires={ttl}&X-Amz-Signature=sig{self._sign_counter}"
        )

    @property
    def deleted_keys(self) -> list[str]:
        return [key for call in self.delete_calls for key in call]


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory SQLite schema per test."""
    from insurance_admin.database import Base
    from insurance_admin.models import Customer, InsurancePolicy  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    """Route the application's sessions to the test engine."""
    from insurance_admin import database

    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    previous = database.set_test_session_maker(maker)
    yield maker
    database.set_test_session_maker(previous)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


def _token(role: str) -> str:
    from insurance_admin.security import create_access_token

    return create_access_token({"sub": str(uuid4()), "role": role})


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {_token('admin')}"}


@pytest.fixture
def super_admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {_token('super_admin')}"}


@pytest_asyncio.fixture
async def client(session_maker, blob_store, admin_headers):
    """Authenticated API client backed by SQLite and the in-memory blob store."""
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=admin_headers) as ac:
        yield ac
    app.dependency_overrides.clear()
