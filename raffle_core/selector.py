"""
Winner Selector.

Draws one winner per raffle, weighted by tickets held: a user holding N of
the raffle's T tickets wins with probability N/T. The scheduler's automatic
draw and the admin "pick winner now" action both call select_winner, and the
winner is written with a conditional update, so concurrent callers cannot
record two winners or send two notices.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from . import metrics
from .clock import Clock, utcnow
from .errors import DrawConflict, NoParticipantsError, RaffleNotEnded, RaffleNotFound
from .ledger import LedgerStore
from .models import Raffle
from .notifications import NotificationQueue, NotificationResult, winner_message
from .redis_streams import RedisStreamClient, STREAM_WINNERS_SELECTED, publish_quietly
from .telemetry import get_tracer, mark_span_failed

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

MAX_DRAW_ATTEMPTS = 3


@dataclass(frozen=True)
class WinnerResult:
    raffle_id: str
    winner_id: str
    winner_tickets: int
    total_tickets: int
    drawn_at: Optional[datetime]
    already_drawn: bool = False


def pick_weighted(entries: Sequence[tuple[str, int]], rng: random.Random) -> str:
    """Pick a user id; each ticket is one equally likely slot in the pool.

    Walks cumulative ticket ranges instead of materialising the pool.
    """
    total = sum(tickets for _, tickets in entries if tickets > 0)
    if total <= 0:
        raise NoParticipantsError("no tickets to draw from")
    index = rng.randrange(total)
    for user_id, tickets in entries:
        if tickets <= 0:
            continue
        if index < tickets:
            return user_id
        index -= tickets
    raise AssertionError("draw index fell outside the ticket pool")


def _result(raffle: Raffle, already_drawn: bool) -> WinnerResult:
    participation = raffle.participation_for(raffle.winner_id)
    return WinnerResult(
        raffle_id=raffle.id,
        winner_id=raffle.winner_id,
        winner_tickets=participation.tickets_bought if participation else 0,
        total_tickets=raffle.total_tickets_sold,
        drawn_at=raffle.drawn_at,
        already_drawn=already_drawn,
    )


class WinnerSelector:
    def __init__(
        self,
        ledger: LedgerStore,
        notifications: NotificationQueue,
        events: Optional[RedisStreamClient] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = utcnow,
    ):
        self.ledger = ledger
        self.notifications = notifications
        self.events = events
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    async def select_winner(self, raffle_id: str) -> WinnerResult:
        with tracer.start_as_current_span("raffle.select_winner") as span:
            span.set_attribute("raffle.id", raffle_id)
            try:
                result = await self._select(raffle_id)
            except (RaffleNotFound, RaffleNotEnded, NoParticipantsError, DrawConflict) as e:
                mark_span_failed(span, e, e.__class__.__name__)
                raise
            span.set_attribute("raffle.already_drawn", result.already_drawn)
            return result

    async def _select(self, raffle_id: str) -> WinnerResult:
        started = time.time()
        for attempt in range(1, MAX_DRAW_ATTEMPTS + 1):
            raffle = await self.ledger.get_raffle(raffle_id)
            if raffle is None:
                raise RaffleNotFound(f"raffle {raffle_id} not found")

            if raffle.winner_id is not None:
                metrics.DRAWS_SKIPPED.labels(reason="already_drawn").inc()
                return _result(raffle, already_drawn=True)

            now = self.clock()
            if now <= raffle.end_date:
                raise RaffleNotEnded(f"raffle {raffle_id} ends at {raffle.end_date.isoformat()}")

            entries = [(p.user_id, p.tickets_bought) for p in raffle.participants if p.tickets_bought > 0]
            if not entries:
                await self.ledger.mark_no_participants(raffle_id)
                metrics.DRAWS_SKIPPED.labels(reason="no_participants").inc()
                logger.warning("No participants, raffle closes without a winner",
                               extra={"raffle_id": raffle_id})
                raise NoParticipantsError(f"raffle {raffle_id} has no participants")

            pool_size = sum(tickets for _, tickets in entries)
            if pool_size != raffle.total_tickets_sold:
                logger.error(
                    f"Ticket counter {raffle.total_tickets_sold} disagrees with participations {pool_size}",
                    extra={"raffle_id": raffle_id},
                )

            winner_id = pick_weighted(entries, self.rng)
            if await self.ledger.commit_winner(raffle_id, winner_id, now,
                                               tickets_seen=raffle.total_tickets_sold):
                break

            # Either another draw won, or a purchase landed after the pool was read.
            logger.info("Winner commit lost a race, re-reading raffle",
                        extra={"raffle_id": raffle_id, "attempt": attempt})
        else:
            raise DrawConflict(f"raffle {raffle_id} kept changing during the draw")

        metrics.DRAWS_EXECUTED.inc()
        metrics.DRAW_DURATION.observe(time.time() - started)

        winner_tickets = dict(entries)[winner_id]
        logger.info(
            f"Winner drawn holding {winner_tickets}/{pool_size} tickets",
            extra={"raffle_id": raffle_id, "winner_id": winner_id},
        )

        await publish_quietly(self.events, STREAM_WINNERS_SELECTED, {
            "raffle_id": raffle_id,
            "title": raffle.title,
            "winner_id": winner_id,
            "winner_tickets": winner_tickets,
            "total_tickets": pool_size,
        })

        await self._notify_winner(raffle, winner_id, winner_tickets)

        return WinnerResult(
            raffle_id=raffle_id,
            winner_id=winner_id,
            winner_tickets=winner_tickets,
            total_tickets=pool_size,
            drawn_at=now,
        )

    async def _notify_winner(self, raffle: Raffle, winner_id: str, tickets: int):
        user = await self.ledger.get_user(winner_id)
        if user is None:
            logger.error("Winner has no user record, notice not sent",
                         extra={"raffle_id": raffle.id, "winner_id": winner_id})
            await self.ledger.record_winner_notice(raffle.id, False, "winner user not found")
            return

        async def record(result: NotificationResult):
            await self.ledger.record_winner_notice(raffle.id, result.success, result.error)

        self.notifications.submit(winner_message(user, raffle, tickets), "winner", on_complete=record)
