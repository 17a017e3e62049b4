import asyncio
import os
import tempfile
from datetime import datetime, timedelta

# Keep the module-level engine away from the working directory
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/fraudcheck-test.db")
os.environ.setdefault("STEP_DELAY_SECONDS", "0")

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from fraudcheck.database import create_tables  # noqa: E402
from fraudcheck.models import LoanDocument  # noqa: E402
from fraudcheck.schemas import Finding  # noqa: E402
from fraudcheck.services.dispatch import ChainDispatcher  # noqa: E402
from fraudcheck.services.fraud_check import FraudCheckChain  # noqa: E402
from fraudcheck.services.verification_store import VerificationStore  # noqa: E402

ISSUES = {
    "medium": ["Font size differs around the salary field"],
    "high": ["Visible cut-paste edge around the photo"],
}


@pytest.fixture
def session_factory(tmp_path):
    # NullPool: every session opens its own connection on the running loop,
    # so factories survive separate asyncio.run() calls and TestClient threads
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    asyncio.run(create_tables(engine))
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


class RecordingDispatcher(ChainDispatcher):
    """Collects dispatched steps instead of running them."""

    def __init__(self):
        super().__init__()
        self.payloads = []

    async def dispatch(self, payload):
        self.payloads.append(payload)


class FakeAnalyzer:
    """Returns a finding per document type; an exception value is raised instead."""

    def __init__(self, outcomes=None, default="low"):
        self.outcomes = outcomes or {}
        self.default = default
        self.calls = []

    async def analyze(self, document):
        self.calls.append(document.id)
        outcome = self.outcomes.get(document.document_type, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return Finding(
            document_id=document.id,
            document_type=document.document_type,
            risk_level=outcome,
            confidence=90,
            issues=ISSUES.get(outcome, []),
            details=f"{document.document_type} looks {outcome} risk",
        )


def make_chain(db, analyzer, dispatcher):
    return FraudCheckChain(VerificationStore(db), analyzer, dispatcher, source="ai_test")


async def add_documents(session_factory, application_id, entries):
    """Insert documents in upload order.

    ``entries`` items are ``document_type`` strings or dicts of LoanDocument columns.
    Returns the ids of the inserted documents in order.
    """
    base = datetime(2026, 1, 1, 9, 0, 0)
    ids = []
    async with session_factory() as db:
        for n, entry in enumerate(entries):
            if isinstance(entry, str):
                entry = {"document_type": entry}
            values = {
                "loan_application_id": application_id,
                "file_path": f"{application_id}/{entry['document_type']}.jpg",
                "uploaded_at": base + timedelta(minutes=n),
                **entry,
            }
            doc = LoanDocument(**values)
            db.add(doc)
            await db.flush()
            ids.append(doc.id)
        await db.commit()
    return ids


async def run_next_step(session_factory, analyzer, dispatcher):
    """Pop the oldest dispatched step and execute it in a fresh session."""
    payload = dispatcher.payloads.pop(0)
    async with session_factory() as db:
        chain = make_chain(db, analyzer, dispatcher)
        return await chain.step_run(
            payload.application_id,
            payload.current_index,
            payload.document_ids,
            payload.accumulated_findings,
            payload.verification_id,
        )


async def get_run(session_factory, verification_id):
    async with session_factory() as db:
        return await VerificationStore(db).get_run(verification_id)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
