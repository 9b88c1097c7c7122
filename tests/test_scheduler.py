"""Tests for the lifecycle scheduler and reminders."""

import time
from datetime import timedelta

import pytest

from raffle_core.ledger import LedgerStore
from raffle_core.models import DrawStatus, RaffleStatus
from raffle_core.reminders import ReminderCoordinator
from raffle_core.scheduler import RaffleStatusScheduler, next_status


@pytest.fixture
def reminders(ledger, notifications):
    return ReminderCoordinator(ledger, notifications, lead_minutes=5, window_seconds=30,
                               frontend_url="https://raffles.test")


@pytest.fixture
def scheduler(ledger, selector, reminders, clock):
    return RaffleStatusScheduler(ledger, selector, reminders, interval_seconds=1, clock=clock)


@pytest.mark.asyncio
async def test_tick_moves_status_with_the_clock(scheduler, ledger, clock, make_raffle):
    raffle = await make_raffle(start=clock.now + timedelta(minutes=30), end=clock.now + timedelta(hours=1))
    assert raffle.status == RaffleStatus.UPCOMING

    clock.advance(minutes=31)
    summary = await scheduler.tick()
    assert summary.status_updates == 1
    assert (await ledger.get_raffle(raffle.id)).status == RaffleStatus.ACTIVE

    clock.advance(hours=1)
    await scheduler.tick()
    assert (await ledger.get_raffle(raffle.id)).status == RaffleStatus.COMPLETED


@pytest.mark.asyncio
async def test_tick_with_nothing_due(scheduler, make_raffle):
    await make_raffle()
    summary = await scheduler.tick()
    assert summary.status_updates == 0
    assert summary.failures == 0


@pytest.mark.asyncio
async def test_status_never_moves_backwards(ledger, clock, make_raffle):
    raffle = await make_raffle()
    await ledger.advance_status(raffle.id, RaffleStatus.ACTIVE, RaffleStatus.COMPLETED)
    stored = await ledger.get_raffle(raffle.id)

    assert next_status(stored, clock.now) is None
    assert next_status(stored, clock.now - timedelta(hours=5)) is None


@pytest.mark.asyncio
async def test_winner_pins_status_completed(selector, reconciler, ledger, clock, make_user, make_raffle):
    raffle = await make_raffle()
    user = await make_user()
    await reconciler.purchase(raffle.id, user.id, 1, "tok_visa")
    clock.advance(hours=2)
    await selector.select_winner(raffle.id)

    stored = await ledger.get_raffle(raffle.id)
    assert stored.status_at(stored.start_date - timedelta(days=1)) == RaffleStatus.COMPLETED
    assert stored.status_at(stored.start_date + timedelta(minutes=1)) == RaffleStatus.COMPLETED


@pytest.mark.asyncio
async def test_compare_and_set_refuses_stale_status(ledger, make_raffle):
    raffle = await make_raffle()
    assert await ledger.advance_status(raffle.id, RaffleStatus.ACTIVE, RaffleStatus.COMPLETED)
    assert not await ledger.advance_status(raffle.id, RaffleStatus.ACTIVE, RaffleStatus.COMPLETED)


@pytest.mark.asyncio
async def test_tick_draws_closed_raffles(scheduler, reconciler, ledger, notifications, dispatcher,
                                         clock, make_user, make_raffle):
    raffle = await make_raffle()
    user = await make_user()
    await reconciler.purchase(raffle.id, user.id, 2, "tok_visa")
    empty = await make_raffle(title="Nobody Came")
    clock.advance(hours=2)

    summary = await scheduler.tick()
    await notifications.drain()

    assert summary.winners_drawn == 1
    assert summary.failures == 0
    stored = await ledger.get_raffle(raffle.id)
    assert stored.winner_id == user.id
    assert stored.status == RaffleStatus.COMPLETED
    assert (await ledger.get_raffle(empty.id)).draw_status == DrawStatus.NO_PARTICIPANTS

    again = await scheduler.tick()
    assert again.winners_drawn == 0


class PickyLedger(LedgerStore):
    """Fails status updates for one raffle."""

    broken_id = None

    async def advance_status(self, raffle_id, expected, new_status):
        if raffle_id == self.broken_id:
            raise RuntimeError("row locked")
        return await super().advance_status(raffle_id, expected, new_status)


@pytest.mark.asyncio
async def test_one_failing_raffle_does_not_stop_the_tick(db, selector, clock, make_raffle):
    ledger = PickyLedger(db, retry_backoff=0)
    scheduler = RaffleStatusScheduler(ledger, selector, clock=clock)
    soon = clock.now + timedelta(minutes=10)
    broken = await make_raffle(title="Broken", start=soon, end=soon + timedelta(hours=1))
    healthy = await make_raffle(title="Healthy", start=soon, end=soon + timedelta(hours=1))
    ledger.broken_id = broken.id

    clock.advance(minutes=11)
    summary = await scheduler.tick()

    assert summary.failures == 1
    assert summary.status_updates == 1
    assert (await ledger.get_raffle(healthy.id)).status == RaffleStatus.ACTIVE
    assert (await ledger.get_raffle(broken.id)).status == RaffleStatus.UPCOMING


@pytest.mark.asyncio
async def test_ending_reminder_sent_once(scheduler, reconciler, ledger, notifications, dispatcher,
                                         clock, make_user, make_raffle):
    raffle = await make_raffle(end=clock.now + timedelta(minutes=10))
    user = await make_user()
    await reconciler.purchase(raffle.id, user.id, 2, "tok_visa")
    await notifications.drain()
    dispatcher.sent.clear()

    clock.advance(minutes=5)
    first = await scheduler.tick()
    second = await scheduler.tick()
    await notifications.drain()

    assert first.reminders_queued == 1
    assert second.reminders_queued == 0
    assert len(dispatcher.sent) == 1
    assert dispatcher.sent[0]["subject"].startswith("Final chance")
    assert f"https://raffles.test/raffles/{raffle.id}/live" in dispatcher.sent[0]["body"]
    assert (await ledger.get_raffle(raffle.id)).ending_reminder_sent


@pytest.mark.asyncio
async def test_reminder_claim_is_exclusive(ledger, clock, make_raffle):
    raffle = await make_raffle(start=clock.now + timedelta(minutes=5), end=clock.now + timedelta(hours=1))

    assert await ledger.claim_reminder(raffle.id, "starting", clock.now)
    assert not await ledger.claim_reminder(raffle.id, "starting", clock.now)
    assert await ledger.claim_reminder(raffle.id, "ending", clock.now)
    with pytest.raises(ValueError):
        await ledger.claim_reminder(raffle.id, "halfway", clock.now)


def test_health_follows_the_tick():
    scheduler = RaffleStatusScheduler(ledger=None, selector=None, interval_seconds=10)
    assert not scheduler.is_healthy()

    scheduler.started_at = time.monotonic()
    assert scheduler.is_healthy()

    scheduler.last_tick_at = time.monotonic() - 31
    assert not scheduler.is_healthy()
