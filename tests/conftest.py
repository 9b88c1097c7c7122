"""Pytest configuration and fixtures."""

import asyncio
import random
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from raffle_core.database import Database
from raffle_core.gateway import CHARGE_COMPLETED, CHARGE_FAILED, ChargeResult, PaymentGateway
from raffle_core.ledger import LedgerStore
from raffle_core.notifications import NotificationDispatcher, NotificationQueue, NotificationResult
from raffle_core.reconciler import PurchaseReconciler
from raffle_core.selector import WinnerSelector

START = datetime(2025, 6, 1, 12, 0, 0)


class FakeClock:
    """Settable clock; tests move time explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """Card processor double that deduplicates charges on the idempotency key."""

    DECLINES = {
        "tok_insufficient_funds": "INSUFFICIENT_FUNDS",
        "tok_declined": "CARD_DECLINED",
        "tok_expired_card": "CARD_EXPIRED",
        "tok_expired_session": "IDEMPOTENCY_KEY_EXPIRED",
    }

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = []
        self.charges = {}

    async def charge(self, token, idempotency_key, minor_amount, currency):
        self.calls.append((token, idempotency_key, minor_amount, currency))
        if self.delay:
            await asyncio.sleep(self.delay)
        if token in self.DECLINES:
            return ChargeResult(status=CHARGE_FAILED, decline_reason=self.DECLINES[token])
        if idempotency_key not in self.charges:
            self.charges[idempotency_key] = ChargeResult(
                status=CHARGE_COMPLETED, transaction_id=f"txn_{uuid.uuid4().hex}"
            )
        return self.charges[idempotency_key]


class FakeDispatcher(NotificationDispatcher):
    """Records every message; can be told to fail the first N sends."""

    def __init__(self, failures: int = 0, delay: float = 0.0, error: str = "mailbox unavailable"):
        self.failures = failures
        self.delay = delay
        self.error = error
        self.attempts = []
        self.sent = []

    async def send(self, to, subject, body):
        self.attempts.append(to)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            return NotificationResult(success=False, error=self.error)
        self.sent.append({"to": to, "subject": subject, "body": body})
        return NotificationResult(success=True)


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    database = Database(f"sqlite:///{tmp_path / 'raffles.sqlite'}")
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def ledger(db):
    return LedgerStore(db, retry_backoff=0)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
async def notifications(dispatcher):
    queue = NotificationQueue(dispatcher, max_attempts=2, backoff_seconds=0, timeout_seconds=1)
    yield queue
    await queue.drain()


@pytest.fixture
def reconciler(ledger, gateway, notifications, clock):
    return PurchaseReconciler(ledger, gateway, notifications, clock=clock, gateway_timeout=1)


@pytest.fixture
def selector(ledger, notifications, clock):
    return WinnerSelector(ledger, notifications, rng=random.Random(7), clock=clock)


@pytest.fixture
def make_user(ledger):
    async def _make(email=None, verified=True, username="player"):
        email = email if email is not None else f"{uuid.uuid4().hex[:8]}@example.com"
        return await ledger.create_user(email, username=username, email_verified=verified)
    return _make


@pytest.fixture
def make_raffle(ledger, clock):
    """Raffle open from an hour ago until an hour from now, unless told otherwise."""
    async def _make(price="10.00", start=None, end=None, **kwargs):
        return await ledger.create_raffle(
            title=kwargs.pop("title", "Cottage Weekend"),
            price=Decimal(price),
            start_date=start or clock.now - timedelta(hours=1),
            end_date=end or clock.now + timedelta(hours=1),
            created_at=clock.now,
            **kwargs,
        )
    return _make
