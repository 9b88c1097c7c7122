"""
Raffle Status Scheduler.

Each tick moves stored raffle status forward to match the clock
(upcoming -> active -> completed), sends due reminders, and draws winners
for raffles that have closed. Every raffle is handled on its own: a failure
for one is logged and the tick continues with the rest.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from . import config, metrics
from .clock import Clock, utcnow
from .errors import NoParticipantsError
from .ledger import LedgerStore
from .models import Raffle, RaffleStatus, STATUS_RANK
from .redis_streams import RedisStreamClient, STREAM_RAFFLE_STATUS, publish_quietly
from .reminders import ReminderCoordinator
from .selector import WinnerSelector

logger = logging.getLogger(__name__)


def next_status(raffle: Raffle, now: datetime) -> Optional[RaffleStatus]:
    """The status to store, or None. Never moves backwards."""
    computed = raffle.status_at(now)
    if STATUS_RANK[computed] > STATUS_RANK[raffle.status]:
        return computed
    return None


@dataclass
class TickSummary:
    status_updates: int = 0
    winners_drawn: int = 0
    reminders_queued: int = 0
    failures: int = 0


class RaffleStatusScheduler:
    def __init__(
        self,
        ledger: LedgerStore,
        selector: WinnerSelector,
        reminders: Optional[ReminderCoordinator] = None,
        events: Optional[RedisStreamClient] = None,
        interval_seconds: float = config.SCHEDULER_INTERVAL_SECONDS,
        clock: Clock = utcnow,
    ):
        self.ledger = ledger
        self.selector = selector
        self.reminders = reminders
        self.events = events
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.started_at: Optional[float] = None
        self.last_tick_at: Optional[float] = None

    async def tick(self) -> TickSummary:
        now = self.clock()
        summary = TickSummary()
        metrics.SCHEDULER_TICKS.inc()

        due = await self._load("status", self.ledger.raffles_due_for_transition, now)
        for raffle in due:
            try:
                new_status = await self._advance(raffle, now)
            except Exception as e:
                summary.failures += 1
                metrics.SCHEDULER_ERRORS.labels(stage="status").inc()
                logger.error(f"Failed to update raffle status: {e}", extra={"raffle_id": raffle.id})
                continue
            if new_status is not None:
                summary.status_updates += 1

        if self.reminders is not None:
            try:
                summary.reminders_queued = await self.reminders.run(now)
            except Exception as e:
                summary.failures += 1
                metrics.SCHEDULER_ERRORS.labels(stage="reminder").inc()
                logger.error(f"Reminder pass failed: {e}")

        for raffle in await self._load("draw", self.ledger.raffles_needing_draw, now):
            try:
                result = await self.selector.select_winner(raffle.id)
            except NoParticipantsError:
                continue
            except Exception as e:
                summary.failures += 1
                metrics.SCHEDULER_ERRORS.labels(stage="draw").inc()
                logger.error(f"Winner draw failed, will retry next tick: {e}",
                             extra={"raffle_id": raffle.id})
                continue
            if not result.already_drawn:
                summary.winners_drawn += 1

        self.last_tick_at = time.monotonic()
        if summary.status_updates or summary.winners_drawn or summary.failures:
            logger.info(
                f"Scheduler tick: {summary.status_updates} status updates, "
                f"{summary.winners_drawn} winners drawn, {summary.failures} failures"
            )
        return summary

    async def _load(self, stage: str, query, now: datetime) -> list[Raffle]:
        try:
            return await query(now)
        except Exception as e:
            metrics.SCHEDULER_ERRORS.labels(stage=stage).inc()
            logger.error(f"Failed to load raffles for {stage} pass: {e}")
            return []

    async def _advance(self, raffle: Raffle, now: datetime) -> Optional[RaffleStatus]:
        new_status = next_status(raffle, now)
        if new_status is None:
            return None
        if not await self.ledger.advance_status(raffle.id, raffle.status, new_status):
            # Moved by another instance since we read it.
            return None

        metrics.STATUS_TRANSITIONS.labels(status=new_status.value).inc()
        logger.info(
            f"Raffle '{raffle.title}' {raffle.status.value} -> {new_status.value}",
            extra={"raffle_id": raffle.id, "status": new_status.value},
        )
        await publish_quietly(self.events, STREAM_RAFFLE_STATUS, {
            "raffle_id": raffle.id,
            "from": raffle.status.value,
            "to": new_status.value,
        })
        return new_status

    async def run(self):
        """Tick forever on a fixed period."""
        self.started_at = time.monotonic()
        logger.info(f"Raffle scheduler started, ticking every {self.interval_seconds}s")
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick crashed: {e}")
            await asyncio.sleep(self.interval_seconds)

    def is_healthy(self) -> bool:
        if self.started_at is None:
            return False
        reference = self.last_tick_at or self.started_at
        return time.monotonic() - reference < 3 * self.interval_seconds
