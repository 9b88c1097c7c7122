"""Tests for ledger reads, administrative writes and transaction retry."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from raffle_core.database import normalize_async_url
from raffle_core.errors import RaffleDrawnDuringPurchase
from raffle_core.ledger import DuplicatePurchase, LedgerStore
from raffle_core.models import RaffleStatus
from raffle_core.money import quote


@pytest.mark.asyncio
async def test_new_raffle_gets_defaults_and_status(ledger, clock, make_raffle):
    upcoming = await make_raffle(start=clock.now + timedelta(days=1), end=clock.now + timedelta(days=2))
    clock.advance(seconds=1)
    active = await make_raffle(description=None, category="")

    assert upcoming.status == RaffleStatus.UPCOMING
    assert active.status == RaffleStatus.ACTIVE
    assert active.category == "General"
    assert active.description == ""
    assert active.total_tickets_sold == 0
    assert [r.id for r in await ledger.list_raffles()] == [upcoming.id, active.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"price": "0"},
    {"price": "-1.00"},
    {"max_tickets_total": 0},
    {"max_tickets_per_user": -5},
])
async def test_raffle_rejects_bad_values(make_raffle, kwargs):
    with pytest.raises(ValueError):
        await make_raffle(**kwargs)


@pytest.mark.asyncio
async def test_raffle_must_end_after_start(make_raffle, clock):
    with pytest.raises(ValueError):
        await make_raffle(start=clock.now, end=clock.now)


@pytest.mark.asyncio
async def test_user_email_is_trimmed(ledger):
    user = await ledger.create_user("  someone@example.com ", email_verified=True)
    assert (await ledger.get_user(user.id)).email == "someone@example.com"


@pytest.mark.asyncio
async def test_order_summary(reconciler, ledger, make_user, make_raffle):
    user = await make_user()
    raffle = await make_raffle(price="10.00")
    result = await reconciler.purchase(raffle.id, user.id, 3, "tok_visa")

    summary = (await ledger.get_order(result.order_id)).summary()
    assert summary["total_amount"] == "33.90"
    assert summary["base_amount"] == "30.00"
    assert summary["tax_amount"] == "3.90"
    assert summary["tax_rate"] == "13.00%"
    assert summary["status"] == "completed"
    assert summary["currency"] == "CAD"


@pytest.mark.asyncio
async def test_transaction_retries_transient_conflicts(db):
    ledger = LedgerStore(db, max_attempts=3, retry_backoff=0)
    calls = []

    async def fn(session):
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError("UPDATE raffles", {}, Exception("database is locked"))
        return "done"

    assert await ledger.transaction(fn) == "done"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transaction_gives_up_after_max_attempts(db):
    ledger = LedgerStore(db, max_attempts=2, retry_backoff=0)
    calls = []

    async def fn(session):
        calls.append(1)
        raise OperationalError("UPDATE raffles", {}, Exception("database is locked"))

    with pytest.raises(OperationalError):
        await ledger.transaction(fn)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_integrity_errors_are_not_retried(db):
    ledger = LedgerStore(db, max_attempts=3, retry_backoff=0)
    calls = []

    async def fn(session):
        calls.append(1)
        raise IntegrityError("INSERT INTO orders", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(IntegrityError):
        await ledger.transaction(fn)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_commit_purchase_rejects_duplicate_key(ledger, clock, make_user, make_raffle):
    user = await make_user()
    raffle = await make_raffle()
    amounts = quote(Decimal("10.00"), 1, Decimal("0.13"))
    first = await ledger.commit_purchase(raffle.id, user.id, 1, amounts, "CAD", "txn_a", "key-a", clock.now)

    with pytest.raises(DuplicatePurchase) as exc:
        await ledger.commit_purchase(raffle.id, user.id, 1, amounts, "CAD", "txn_b", "key-a", clock.now)
    assert exc.value.order.id == first.id
    assert (await ledger.get_raffle(raffle.id)).total_tickets_sold == 1
    assert (await ledger.get_participation(raffle.id, user.id)).tickets_bought == 1


@pytest.mark.asyncio
async def test_commit_purchase_refuses_a_drawn_raffle(ledger, clock, make_user, make_raffle):
    holder, latecomer = await make_user(), await make_user()
    raffle = await make_raffle()
    amounts = quote(Decimal("10.00"), 2, Decimal("0.13"))
    await ledger.commit_purchase(raffle.id, holder.id, 2, amounts, "CAD", "txn_a", "key-a", clock.now)
    assert await ledger.commit_winner(raffle.id, holder.id, clock.now)

    with pytest.raises(RaffleDrawnDuringPurchase) as exc:
        await ledger.commit_purchase(raffle.id, latecomer.id, 2, amounts, "CAD", "txn_b", "key-b", clock.now)
    assert exc.value.raffle_id == raffle.id

    assert (await ledger.get_raffle(raffle.id)).total_tickets_sold == 2
    assert await ledger.get_participation(raffle.id, latecomer.id) is None
    assert await ledger.find_order_by_key("key-b") is None


@pytest.mark.asyncio
async def test_commit_winner_needs_an_unchanged_pool(ledger, clock, make_user, make_raffle):
    user = await make_user()
    raffle = await make_raffle()
    amounts = quote(Decimal("10.00"), 3, Decimal("0.13"))
    await ledger.commit_purchase(raffle.id, user.id, 3, amounts, "CAD", "txn_a", "key-a", clock.now)

    assert not await ledger.commit_winner(raffle.id, user.id, clock.now, tickets_seen=1)
    assert (await ledger.get_raffle(raffle.id)).winner_id is None

    assert await ledger.commit_winner(raffle.id, user.id, clock.now, tickets_seen=3)
    assert (await ledger.get_raffle(raffle.id)).winner_id == user.id


@pytest.mark.asyncio
async def test_ping_reports_a_reachable_database(db):
    assert await db.ping()


@pytest.mark.parametrize("url, expected", [
    ("postgresql://u:p@db/raffles", "postgresql+asyncpg://u:p@db/raffles"),
    ("postgres://u:p@db/raffles", "postgresql+asyncpg://u:p@db/raffles"),
    ("sqlite:///./raffles.db", "sqlite+aiosqlite:///./raffles.db"),
    ("postgresql+asyncpg://u:p@db/raffles", "postgresql+asyncpg://u:p@db/raffles"),
])
def test_normalize_async_url(url, expected):
    assert normalize_async_url(url) == expected
