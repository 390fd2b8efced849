import asyncio
import hashlib
import hmac
import json
import os
import tempfile
import time
import uuid
from datetime import datetime, timedelta, timezone

_DB_PATH = os.path.join(tempfile.gettempdir(), f"fairdraw-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["REDIS_URL"] = "redis://127.0.0.1:6390/0"
os.environ["WEBHOOK_MAX_ATTEMPTS"] = "3"

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import app.models.audit  # noqa: F401  registers tables
import app.models.escrow  # noqa: F401
import app.models.fairness  # noqa: F401
import app.models.webhook  # noqa: F401
from app.db import Base, get_session
from app.jobs.queue import get_queue
from app.main import app
from app.models.giveaway import Entry, Giveaway
from app.models.payout import PayoutAccount
from app.security import make_access_token
from app.services import commitment, escrow
from app.services.processor import AccountInfo, ProcessorResult, get_processor

WEBHOOK_SECRET = "whsec_test"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _schema():
    if os.path.exists(_DB_PATH):
        os.remove(_DB_PATH)

    async def _create():
        engine = create_async_engine(os.environ["DATABASE_URL"], poolclass=NullPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())
    yield
    if os.path.exists(_DB_PATH):
        os.remove(_DB_PATH)


@pytest.fixture
def session_factory():
    engine = create_async_engine(os.environ["DATABASE_URL"], poolclass=NullPool)
    return async_sessionmaker(engine, expire_on_commit=False)


class FakeProcessor:
    """In-memory processor. Queue an exception in ``fail_next`` to make the next money call raise it."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_next: Exception | None = None
        self.accounts: dict[str, bool] = {}

    def _record(self, op: str, **kwargs) -> None:
        self.calls.append((op, kwargs))
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    async def create_transfer(self, *, amount, currency, destination, idempotency_key, metadata):
        self._record("transfer", amount=amount, destination=destination, idempotency_key=idempotency_key,
                     metadata=metadata)
        return ProcessorResult(reference=f"tr_{uuid.uuid4().hex[:16]}")

    async def retrieve_account(self, account_id):
        return AccountInfo(account_id=account_id, payouts_enabled=self.accounts.get(account_id, True),
                           raw={"id": account_id})

    async def create_refund(self, *, payment_reference, amount, idempotency_key, metadata):
        self._record("refund", payment_reference=payment_reference, amount=amount,
                     idempotency_key=idempotency_key, metadata=metadata)
        return ProcessorResult(reference=f"re_{uuid.uuid4().hex[:16]}", status="pending")

    async def create_transfer_reversal(self, *, transfer_reference, amount, idempotency_key, metadata):
        self._record("reversal", transfer_reference=transfer_reference, amount=amount,
                     idempotency_key=idempotency_key, metadata=metadata)
        return ProcessorResult(reference=f"trr_{uuid.uuid4().hex[:16]}")

    def money_calls(self, op: str | None = None) -> list[dict]:
        return [kw for (name, kw) in self.calls if op is None or name == op]


class FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, fn, *args, **kwargs):
        self.jobs.append(fn)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def client(session_factory, processor, queue):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_queue] = lambda: queue
    yield lambda: httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_access_token('admin-' + uuid.uuid4().hex[:8], role='admin')}"}


# ---------- data helpers ----------

async def make_giveaway(session, *, status="active", closes_at=None, prize_amount=0, entry_cost=500,
                        with_seed=True, creator_id=None) -> Giveaway:
    g = Giveaway(
        creator_id=creator_id or uuid.uuid4(),
        title="Test giveaway",
        status=status,
        entry_cost=entry_cost,
        prize_amount=prize_amount,
        closes_at=closes_at or T0 + timedelta(hours=1),
    )
    session.add(g)
    await session.commit()
    if with_seed:
        await commitment.commit(session, g.id, now=T0)
    return g


async def add_entry(session, giveaway_id, tickets=1, *, status="completed", amount=None, offset=0,
                    user_id=None, reference=None) -> Entry:
    e = Entry(
        giveaway_id=giveaway_id,
        user_id=user_id or uuid.uuid4(),
        ticket_count=tickets,
        amount_paid=amount if amount is not None else tickets * 500,
        payment_status=status,
        payment_reference=reference or (f"pi_{uuid.uuid4().hex[:20]}" if status != "not_required" else None),
        created_at=T0 - timedelta(minutes=30) + timedelta(seconds=offset),
    )
    session.add(e)
    await session.commit()
    return e


async def fund(session, giveaway_id, amount) -> None:
    await escrow.credit(session, giveaway_id, amount, external_ref=f"pi_fund_{uuid.uuid4().hex[:12]}")
    await session.commit()


async def payout_account(session, user_id, *, enabled=True) -> PayoutAccount:
    acct = PayoutAccount(user_id=user_id, processor_account_id=f"acct_{uuid.uuid4().hex[:14]}",
                         payouts_enabled=enabled, details={})
    session.add(acct)
    await session.commit()
    return acct


def sign(body: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    mac = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> tuple[str, str]:
    """(body, signature header) for a signed processor event."""
    body = json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:20]}",
        "type": event_type,
        "data": {"object": obj},
    })
    return body, sign(body)
