from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

# Must be set before receipt_scanner is imported: settings, the module-level
# engine and the dramatiq broker are created at import time.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SENTRY_DSN"] = ""
os.environ["SCHEMATIC_API_KEY"] = ""
os.environ["DEV_AUTH_BYPASS"] = "false"

# Add backend folder to sys.path so `import receipt_scanner...` works when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from receipt_scanner.core.database import init_db  # noqa: E402
from receipt_scanner.core.exceptions import MeteringError  # noqa: E402
from receipt_scanner.services.inference_client import FetchedDocument  # noqa: E402
from receipt_scanner.services.receipt_store import ReceiptStore  # noqa: E402


ACME_REPLY = '{"merchant":{"name":"Acme"},"totals":{"total":42.5,"currency":"usd"}}'


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite database; unpooled so any event loop may use it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'receipts.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def store(session_factory) -> ReceiptStore:
    return ReceiptStore(session_factory)


async def create_receipt(store: ReceiptStore, owner_id: str = "user_1", file_name: str = "receipt.pdf"):
    """Create a processing receipt as the upload endpoint would."""
    return await store.insert(
        owner_id=owner_id,
        file_id=f"{owner_id}/abc_{file_name}",
        file_name=file_name,
        size=1234,
        mime_type="application/pdf",
    )


def insert_receipt(store: ReceiptStore, owner_id: str = "user_1", file_name: str = "receipt.pdf"):
    """Synchronous ``create_receipt`` for tests that run outside an event loop."""
    return asyncio.run(create_receipt(store, owner_id, file_name))


class FakeInference:
    """Inference client double; ``errors`` are raised by ``infer`` in order before replying."""

    def __init__(self, reply: str = ACME_REPLY, errors: Optional[List[BaseException]] = None, delay: float = 0.0):
        self.reply = reply
        self.errors = list(errors or [])
        self.delay = delay
        self.calls: List[str] = []
        self.closed = False

    async def fetch_document(self, document_url: str) -> FetchedDocument:
        self.calls.append("fetch")
        return FetchedDocument(content=b"%PDF-1.4 fake", file_name="doc.pdf")

    async def upload_document(self, document: FetchedDocument) -> str:
        self.calls.append("upload")
        return "file-123"

    async def infer(self, file_id: str) -> str:
        self.calls.append("infer")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.reply

    async def aclose(self) -> None:
        self.closed = True


class FakeMetering:
    """Records usage events and the receipt status visible at the time of each call."""

    def __init__(self, store: Optional[ReceiptStore] = None, failures: int = 0):
        self.store = store
        self.failures = failures
        self.events: List[dict] = []
        self.attempts = 0
        self.closed = False

    async def track(self, event: str, company_id: str, user_id: str) -> bool:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise MeteringError("entitlement service unavailable")
        record = {"event": event, "company_id": company_id, "user_id": user_id}
        if self.store is not None:
            rows = await self.store.query(user_id)
            record["statuses_seen"] = [r.status.value for r in rows]
        self.events.append(record)
        return True

    async def issue_temporary_access_token(self, resource_type: str, lookup: dict):
        return f"tok-{resource_type}-{lookup.get('id')}"

    async def aclose(self) -> None:
        self.closed = True

