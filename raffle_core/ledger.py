"""
Ledger Store.

Every write to a raffle, its participants, or an order goes through this
module. The database transaction is the only serialization point: counters are
incremented with UPDATE expressions and the winner/status/reminder fields are
written with compare-and-set UPDATEs, so several processes can share the same
database safely.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .database import Database
from .errors import RaffleDrawnDuringPurchase
from .models import (
    DeliveryStatus, DrawStatus, Order, Participation, PaymentStatus, Raffle,
    RaffleStatus, User,
)
from .money import Quote

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = {"40001", "40P01"}


class DuplicatePurchase(Exception):
    """An order already exists for this idempotency key."""

    def __init__(self, order: Order):
        super().__init__(f"order {order.id} already recorded for key {order.idempotency_key}")
        self.order = order


def is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError):
        return True
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in TRANSIENT_SQLSTATES


def _update(model):
    return update(model).execution_options(synchronize_session=False)


class LedgerStore:
    def __init__(
        self,
        db: Database,
        max_attempts: int = config.TX_MAX_ATTEMPTS,
        retry_backoff: float = config.TX_RETRY_BACKOFF_SECONDS,
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    async def transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run fn in one transaction, retrying when the store reports a conflict."""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.db.session() as session:
                    return await fn(session)
            except DBAPIError as e:
                if attempt >= self.max_attempts or not is_transient(e):
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient ledger conflict, retrying in {delay:.2f}s: {e.__class__.__name__}",
                    extra={"attempt": attempt},
                )
                await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Administrative writes
    # ------------------------------------------------------------------

    async def create_user(self, email: str, username: str = "", email_verified: bool = False,
                          user_id: Optional[str] = None) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            username=username,
            email_verified=email_verified,
        )

        async def _insert(session):
            session.add(user)
            return user

        return await self.transaction(_insert)

    async def create_raffle(
        self,
        title: str,
        price: Decimal,
        start_date: datetime,
        end_date: datetime,
        created_at: datetime,
        description: str = "",
        category: Optional[str] = None,
        max_tickets_total: Optional[int] = None,
        max_tickets_per_user: Optional[int] = None,
        raffle_id: Optional[str] = None,
    ) -> Raffle:
        if end_date <= start_date:
            raise ValueError("end_date must be after start_date")
        raffle = Raffle(
            id=raffle_id or str(uuid.uuid4()),
            title=title,
            description=description,
            price=price,
            category=category,
            start_date=start_date,
            end_date=end_date,
            max_tickets_total=max_tickets_total,
            max_tickets_per_user=max_tickets_per_user,
            total_tickets_sold=0,
            created_at=created_at,
        )
        raffle.status = raffle.status_at(created_at)

        async def _insert(session):
            session.add(raffle)
            return raffle

        await self.transaction(_insert)
        return await self.get_raffle(raffle.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_raffle(self, raffle_id: str) -> Optional[Raffle]:
        async with self.db.session() as session:
            result = await session.execute(select(Raffle).where(Raffle.id == raffle_id))
            return result.scalar_one_or_none()

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.db.session() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.db.session() as session:
            result = await session.execute(select(Order).where(Order.id == order_id))
            return result.scalar_one_or_none()

    async def get_participation(self, raffle_id: str, user_id: str) -> Optional[Participation]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Participation).where(
                    and_(Participation.raffle_id == raffle_id, Participation.user_id == user_id)
                )
            )
            return result.scalar_one_or_none()

    async def find_order_by_key(self, idempotency_key: str) -> Optional[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Order).where(Order.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def list_raffles(self) -> list[Raffle]:
        async with self.db.session() as session:
            result = await session.execute(select(Raffle).order_by(Raffle.created_at))
            return list(result.scalars().all())

    async def raffles_due_for_transition(self, now: datetime) -> list[Raffle]:
        """Raffles whose stored status lags behind the clock or a recorded winner."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Raffle).where(
                    or_(
                        and_(Raffle.status == RaffleStatus.UPCOMING, Raffle.start_date <= now),
                        and_(Raffle.status == RaffleStatus.ACTIVE, Raffle.end_date < now),
                        and_(Raffle.status != RaffleStatus.COMPLETED, Raffle.winner_id.is_not(None)),
                    )
                ).order_by(Raffle.end_date)
            )
            return list(result.scalars().all())

    async def raffles_needing_draw(self, now: datetime) -> list[Raffle]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Raffle).where(
                    and_(
                        Raffle.end_date < now,
                        Raffle.winner_id.is_(None),
                        Raffle.draw_status == DrawStatus.PENDING,
                    )
                ).order_by(Raffle.end_date)
            )
            return list(result.scalars().all())

    async def raffles_starting_between(self, lo: datetime, hi: datetime) -> list[Raffle]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Raffle).where(
                    and_(
                        Raffle.start_date >= lo,
                        Raffle.start_date <= hi,
                        Raffle.status == RaffleStatus.UPCOMING,
                        Raffle.reminder_sent.is_(False),
                    )
                )
            )
            return list(result.scalars().all())

    async def raffles_ending_between(self, lo: datetime, hi: datetime) -> list[Raffle]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Raffle).where(
                    and_(
                        Raffle.end_date >= lo,
                        Raffle.end_date <= hi,
                        Raffle.status == RaffleStatus.ACTIVE,
                        Raffle.ending_reminder_sent.is_(False),
                    )
                )
            )
            return list(result.scalars().all())

    async def participant_contacts(self, raffle_id: str) -> list[tuple[User, int]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(User, Participation.tickets_bought)
                .join(Participation, Participation.user_id == User.id)
                .where(Participation.raffle_id == raffle_id)
                .order_by(Participation.id)
            )
            return [(user, tickets) for user, tickets in result.all()]

    async def pending_receipts(self, limit: int = 100) -> list[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Order)
                .where(Order.receipt_status != DeliveryStatus.SENT)
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def winning_chance(self, raffle_id: str, user_id: str) -> Optional[dict]:
        raffle = await self.get_raffle(raffle_id)
        if raffle is None:
            return None
        participation = await self.get_participation(raffle_id, user_id)
        user_tickets = participation.tickets_bought if participation else 0
        total = raffle.total_tickets_sold
        chance = (user_tickets / total) * 100 if total > 0 else 0.0
        return {"total_tickets": total, "user_tickets": user_tickets, "winning_chance": chance}

    # ------------------------------------------------------------------
    # Purchase commit
    # ------------------------------------------------------------------

    async def commit_purchase(
        self,
        raffle_id: str,
        user_id: str,
        tickets: int,
        amounts: Quote,
        currency: str,
        transaction_id: str,
        idempotency_key: str,
        now: datetime,
    ) -> Order:
        """Record a paid purchase: order row, raffle counter and participation, all or nothing.

        Raises DuplicatePurchase if an order already exists for the key.
        """

        async def _apply(session: AsyncSession) -> Order:
            order = Order(
                id=str(uuid.uuid4()),
                user_id=user_id,
                raffle_id=raffle_id,
                tickets_bought=tickets,
                base_amount=amounts.base,
                tax_amount=amounts.tax,
                amount=amounts.total,
                currency=currency,
                payment_status=PaymentStatus.COMPLETED,
                transaction_id=transaction_id,
                idempotency_key=idempotency_key,
                receipt_status=DeliveryStatus.PENDING,
                created_at=now,
            )
            session.add(order)
            await session.flush()

            # Tickets never land on a raffle that already has a winner.
            result = await session.execute(
                _update(Raffle)
                .where(and_(Raffle.id == raffle_id, Raffle.winner_id.is_(None)))
                .values(total_tickets_sold=Raffle.total_tickets_sold + tickets)
            )
            if result.rowcount != 1:
                if await session.get(Raffle, raffle_id) is None:
                    raise LookupError(f"raffle {raffle_id} disappeared during commit")
                raise RaffleDrawnDuringPurchase(raffle_id)

            result = await session.execute(
                _update(Participation)
                .where(and_(Participation.raffle_id == raffle_id, Participation.user_id == user_id))
                .values(
                    tickets_bought=Participation.tickets_bought + tickets,
                    last_purchase_at=now,
                )
            )
            if result.rowcount == 0:
                session.add(Participation(
                    raffle_id=raffle_id,
                    user_id=user_id,
                    tickets_bought=tickets,
                    first_purchase_at=now,
                    last_purchase_at=now,
                ))
                await session.flush()
            return order

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.transaction(_apply)
            except IntegrityError:
                existing = await self.find_order_by_key(idempotency_key)
                if existing is not None:
                    raise DuplicatePurchase(existing)
                # Lost the race to create the participation row; the retry
                # takes the increment path instead.
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "Participation insert conflict, retrying purchase commit",
                    extra={"raffle_id": raffle_id, "user_id": user_id, "attempt": attempt},
                )

    async def record_receipt_outcome(self, order_id: str, success: bool, error: Optional[str],
                                     now: datetime) -> None:
        values = {
            "receipt_status": DeliveryStatus.SENT if success else DeliveryStatus.FAILED,
            "receipt_error": None if success else error,
        }
        if success:
            values["receipt_sent_at"] = now

        async def _apply(session):
            await session.execute(_update(Order).where(Order.id == order_id).values(**values))

        await self.transaction(_apply)

    # ------------------------------------------------------------------
    # Lifecycle writes
    # ------------------------------------------------------------------

    async def advance_status(self, raffle_id: str, expected: RaffleStatus,
                             new_status: RaffleStatus) -> bool:
        """Compare-and-set the stored status. False if someone else moved it first."""

        async def _apply(session):
            result = await session.execute(
                _update(Raffle)
                .where(and_(Raffle.id == raffle_id, Raffle.status == expected))
                .values(status=new_status)
            )
            return result.rowcount == 1

        return await self.transaction(_apply)

    async def commit_winner(self, raffle_id: str, winner_id: str, now: datetime,
                            tickets_seen: Optional[int] = None) -> bool:
        """Record the winner unless one is already set. True if this call recorded it.

        With tickets_seen, the winner is only written if no ticket was sold
        since the draw read its pool.
        """
        conditions = [Raffle.id == raffle_id, Raffle.winner_id.is_(None)]
        if tickets_seen is not None:
            conditions.append(Raffle.total_tickets_sold == tickets_seen)

        async def _apply(session):
            result = await session.execute(
                _update(Raffle)
                .where(and_(*conditions))
                .values(
                    winner_id=winner_id,
                    status=RaffleStatus.COMPLETED,
                    draw_status=DrawStatus.DRAWN,
                    drawn_at=now,
                    winner_notice_status=DeliveryStatus.PENDING,
                )
            )
            return result.rowcount == 1

        return await self.transaction(_apply)

    async def mark_no_participants(self, raffle_id: str) -> bool:
        async def _apply(session):
            result = await session.execute(
                _update(Raffle)
                .where(and_(
                    Raffle.id == raffle_id,
                    Raffle.winner_id.is_(None),
                    Raffle.draw_status == DrawStatus.PENDING,
                ))
                .values(draw_status=DrawStatus.NO_PARTICIPANTS)
            )
            return result.rowcount == 1

        return await self.transaction(_apply)

    async def record_winner_notice(self, raffle_id: str, success: bool, error: Optional[str]) -> None:
        async def _apply(session):
            await session.execute(
                _update(Raffle)
                .where(Raffle.id == raffle_id)
                .values(
                    winner_notice_status=DeliveryStatus.SENT if success else DeliveryStatus.FAILED,
                    winner_notice_error=None if success else error,
                )
            )

        await self.transaction(_apply)

    async def claim_reminder(self, raffle_id: str, stage: str, now: datetime) -> bool:
        """Atomically flip a reminder flag. Only the caller that flips it sends the reminder."""
        if stage == "starting":
            flag, stamp = Raffle.reminder_sent, "reminder_sent_at"
            values = {"reminder_sent": True}
        elif stage == "ending":
            flag, stamp = Raffle.ending_reminder_sent, "ending_reminder_sent_at"
            values = {"ending_reminder_sent": True}
        else:
            raise ValueError(f"unknown reminder stage: {stage}")
        values[stamp] = now

        async def _apply(session):
            result = await session.execute(
                _update(Raffle)
                .where(and_(Raffle.id == raffle_id, flag.is_(False)))
                .values(**values)
            )
            return result.rowcount == 1

        return await self.transaction(_apply)
