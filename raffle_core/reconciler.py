"""
Purchase Reconciler.

Validates a ticket purchase, charges the card, and records the paid purchase
in one ledger transaction. Once a charge has been sent the work runs to
completion even if the caller goes away; the outcome is either a committed
order or a classified failure.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from . import config, metrics
from .clock import Clock, utcnow
from .errors import (
    BookkeepingError, GatewayUnavailable, PaymentFailed, PaymentFailureKind,
    PurchaseRejected, RejectionCode,
)
from .gateway import PaymentGateway, classify_decline
from .helpers import is_valid_email
from .ledger import DuplicatePurchase, LedgerStore
from .models import Order, Raffle, RaffleStatus, User
from .money import quote
from .notifications import NotificationQueue, NotificationResult, receipt_message
from .operator_events import send_operator_event
from .redis_streams import RedisStreamClient, STREAM_PURCHASES_COMPLETED, publish_quietly
from .telemetry import get_tracer, mark_span_failed

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    raffle_id: str
    user_id: str
    tickets_bought: int
    base_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    amount_minor: int
    currency: str
    transaction_id: str
    idempotency_key: str
    total_tickets_sold: Optional[int] = None
    replayed: bool = False

    @classmethod
    def from_order(cls, order: Order, total_tickets_sold: Optional[int] = None,
                   replayed: bool = False) -> "OrderResult":
        return cls(
            order_id=order.id,
            raffle_id=order.raffle_id,
            user_id=order.user_id,
            tickets_bought=order.tickets_bought,
            base_amount=order.base_amount,
            tax_amount=order.tax_amount,
            total_amount=order.amount,
            amount_minor=int(order.amount * 100),
            currency=order.currency,
            transaction_id=order.transaction_id,
            idempotency_key=order.idempotency_key,
            total_tickets_sold=total_tickets_sold,
            replayed=replayed,
        )


class PurchaseReconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        notifications: NotificationQueue,
        events: Optional[RedisStreamClient] = None,
        tax_rate: Decimal = config.TAX_RATE,
        currency: str = config.CURRENCY,
        min_charge_minor: int = config.MIN_CHARGE_MINOR_UNITS,
        gateway_timeout: float = config.GATEWAY_TIMEOUT_SECONDS,
        clock: Clock = utcnow,
        service_name: str = "raffle-engine",
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.notifications = notifications
        self.events = events
        self.tax_rate = Decimal(tax_rate)
        self.currency = currency
        self.min_charge_minor = min_charge_minor
        self.gateway_timeout = gateway_timeout
        self.clock = clock
        self.service_name = service_name
        self._inflight: set[asyncio.Task] = set()

    async def purchase(
        self,
        raffle_id: str,
        user_id: str,
        tickets_requested: int,
        payment_token: str,
        idempotency_key: Optional[str] = None,
    ) -> OrderResult:
        started = time.time()
        with tracer.start_as_current_span("raffle.purchase") as span:
            span.set_attribute("raffle.id", raffle_id)
            span.set_attribute("raffle.tickets_requested", str(tickets_requested))
            try:
                result = await self._purchase(
                    raffle_id, user_id, tickets_requested, payment_token, idempotency_key
                )
            except PurchaseRejected as e:
                metrics.PURCHASES.labels(outcome="rejected").inc()
                metrics.PURCHASE_REJECTIONS.labels(code=e.code.value).inc()
                mark_span_failed(span, e, "rejected")
                logger.info(
                    f"Purchase rejected: {e.message}",
                    extra={"raffle_id": raffle_id, "user_id": user_id, "reason": e.code.value},
                )
                raise
            except PaymentFailed as e:
                metrics.PURCHASES.labels(outcome="payment_failed").inc()
                metrics.PAYMENT_FAILURES.labels(kind=e.kind.value).inc()
                mark_span_failed(span, e, "payment_failed")
                raise
            except BookkeepingError as e:
                metrics.PURCHASES.labels(outcome="bookkeeping_failed").inc()
                mark_span_failed(span, e, "bookkeeping_failed")
                raise

            span.set_attribute("raffle.order_id", result.order_id)
            metrics.PURCHASES.labels(outcome="replayed" if result.replayed else "completed").inc()
            metrics.PURCHASE_DURATION.observe(time.time() - started)
            return result

    async def _purchase(self, raffle_id, user_id, tickets_requested, payment_token,
                        idempotency_key) -> OrderResult:
        if isinstance(tickets_requested, bool) or not isinstance(tickets_requested, int) \
                or tickets_requested <= 0:
            raise PurchaseRejected(
                RejectionCode.INVALID_TICKET_COUNT,
                "Ticket quantity must be a positive whole number",
            )

        if idempotency_key:
            existing = await self.ledger.find_order_by_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, raffle_id, user_id, tickets_requested)
        else:
            idempotency_key = uuid.uuid4().hex

        raffle = await self.ledger.get_raffle(raffle_id)
        now = self.clock()
        self._check_raffle(raffle, raffle_id, tickets_requested, now)

        user = await self.ledger.get_user(user_id)
        self._check_user(user, user_id)
        self._check_user_limit(raffle, user_id, tickets_requested)

        amounts = quote(raffle.price, tickets_requested, self.tax_rate)
        if amounts.minor < self.min_charge_minor:
            raise PurchaseRejected(
                RejectionCode.AMOUNT_BELOW_MINIMUM,
                f"Order total is below the minimum charge of {self.min_charge_minor} minor units",
                minimum_minor=self.min_charge_minor,
                amount_minor=amounts.minor,
            )

        logger.info(
            "Charging for purchase",
            extra={
                "raffle_id": raffle_id, "user_id": user_id, "tickets": tickets_requested,
                "amount_minor": amounts.minor, "idempotency_key": idempotency_key,
            },
        )

        # From here on the charge may already be in flight, so the caller
        # going away must not cancel the work.
        task = asyncio.create_task(self._charge_and_record(
            raffle, user, tickets_requested, amounts, payment_token, idempotency_key
        ))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    def _check_raffle(self, raffle: Optional[Raffle], raffle_id: str, tickets: int, now):
        if raffle is None:
            raise PurchaseRejected(RejectionCode.RAFFLE_NOT_FOUND, "Raffle not found")

        # The clock decides, whatever the scheduler has stored so far.
        if raffle.winner_id is not None or now > raffle.end_date:
            raise PurchaseRejected(RejectionCode.RAFFLE_ENDED, "This raffle has ended")
        if raffle.status_at(now) != RaffleStatus.ACTIVE:
            raise PurchaseRejected(RejectionCode.RAFFLE_NOT_ACTIVE, "This raffle is not open for ticket sales")

        if raffle.max_tickets_total is not None:
            available = max(raffle.max_tickets_total - raffle.total_tickets_sold, 0)
            if tickets > available:
                raise PurchaseRejected(
                    RejectionCode.NOT_ENOUGH_TICKETS,
                    "not enough tickets available",
                    available=available,
                )

    def _check_user(self, user: Optional[User], user_id: str):
        if user is None:
            raise PurchaseRejected(RejectionCode.USER_NOT_FOUND, "User not found")
        if not is_valid_email(user.email):
            raise PurchaseRejected(RejectionCode.EMAIL_INVALID, "A valid email address is required")
        if not user.email_verified:
            raise PurchaseRejected(RejectionCode.EMAIL_NOT_VERIFIED, "Email verification required")

    def _check_user_limit(self, raffle: Raffle, user_id: str, tickets: int):
        if raffle.max_tickets_per_user is None:
            return
        participation = raffle.participation_for(user_id)
        owned = participation.tickets_bought if participation else 0
        remaining = max(raffle.max_tickets_per_user - owned, 0)
        if tickets > remaining:
            raise PurchaseRejected(
                RejectionCode.USER_LIMIT_EXCEEDED,
                f"You can buy at most {remaining} more tickets for this raffle",
                remaining=remaining,
            )

    async def _charge_and_record(self, raffle: Raffle, user: User, tickets: int, amounts,
                                 payment_token: str, idempotency_key: str) -> OrderResult:
        try:
            charge = await asyncio.wait_for(
                self.gateway.charge(payment_token, idempotency_key, amounts.minor, self.currency),
                timeout=self.gateway_timeout,
            )
        except (asyncio.TimeoutError, GatewayUnavailable) as e:
            logger.error(
                f"Payment gateway unavailable: {e}",
                extra={"raffle_id": raffle.id, "user_id": user.id, "idempotency_key": idempotency_key},
            )
            raise PaymentFailed(
                PaymentFailureKind.GENERIC,
                "The payment processor is not responding. Please try again later.",
            ) from e

        if not charge.completed or not charge.transaction_id:
            kind, message, should_retry = classify_decline(charge.decline_reason)
            logger.info(
                f"Charge not completed: {charge.decline_reason}",
                extra={"raffle_id": raffle.id, "user_id": user.id, "reason": kind.value},
            )
            raise PaymentFailed(kind, message, should_retry, charge.decline_reason)

        now = self.clock()
        try:
            order = await self.ledger.commit_purchase(
                raffle_id=raffle.id,
                user_id=user.id,
                tickets=tickets,
                amounts=amounts,
                currency=self.currency,
                transaction_id=charge.transaction_id,
                idempotency_key=idempotency_key,
                now=now,
            )
        except DuplicatePurchase as dup:
            return self._replay(dup.order, raffle.id, user.id, tickets)
        except Exception as e:
            error = await self._bookkeeping_failure(
                raffle, user, tickets, amounts, charge.transaction_id, idempotency_key, e
            )
            raise error from e

        metrics.TICKETS_SOLD.inc(tickets)
        committed = await self.ledger.get_raffle(raffle.id)
        total_sold = committed.total_tickets_sold if committed else None
        if raffle.max_tickets_total is not None and total_sold is not None \
                and total_sold > raffle.max_tickets_total:
            logger.warning(
                "Concurrent purchases overran the ticket cap; paid tickets were honoured",
                extra={"raffle_id": raffle.id, "order_id": order.id, "tickets": total_sold},
            )

        logger.info(
            "Purchase committed",
            extra={
                "raffle_id": raffle.id, "user_id": user.id, "order_id": order.id,
                "transaction_id": charge.transaction_id, "amount_minor": amounts.minor,
                "tickets": tickets,
            },
        )

        await publish_quietly(self.events, STREAM_PURCHASES_COMPLETED, {
            "order_id": order.id,
            "raffle_id": raffle.id,
            "user_id": user.id,
            "tickets": tickets,
            "amount_minor": amounts.minor,
            "currency": self.currency,
        })

        self._send_receipt(user, committed or raffle, order)
        return OrderResult.from_order(order, total_tickets_sold=total_sold)

    async def _bookkeeping_failure(self, raffle, user, tickets, amounts, transaction_id,
                                   idempotency_key, cause: Exception) -> BookkeepingError:
        error = BookkeepingError(
            raffle_id=raffle.id,
            user_id=user.id,
            tickets=tickets,
            amount_minor=amounts.minor,
            transaction_id=transaction_id,
            idempotency_key=idempotency_key,
        )
        metrics.BOOKKEEPING_FAILURES.inc()
        logger.critical(
            f"BOOKKEEPING FAILURE: charge succeeded but order was not recorded: {cause}",
            exc_info=cause,
            extra={
                "raffle_id": raffle.id, "user_id": user.id, "tickets": tickets,
                "amount_minor": amounts.minor, "transaction_id": transaction_id,
                "idempotency_key": idempotency_key,
            },
        )
        await send_operator_event(
            "bookkeeping_failure",
            self.service_name,
            dimensions={"raffle_id": raffle.id},
            properties={
                "user_id": user.id,
                "tickets": tickets,
                "amount_minor": amounts.minor,
                "currency": self.currency,
                "transaction_id": transaction_id,
                "idempotency_key": idempotency_key,
                "reason": cause.__class__.__name__,
                "error": str(cause),
            },
        )
        return error

    def _replay(self, order: Order, raffle_id: str, user_id: str, tickets: int) -> OrderResult:
        """Return the order already recorded under this key, if it is the same purchase."""
        if (order.raffle_id, order.user_id, order.tickets_bought) != (raffle_id, user_id, tickets):
            logger.warning(
                "Idempotency key already used by a different purchase",
                extra={"raffle_id": raffle_id, "user_id": user_id, "idempotency_key": order.idempotency_key},
            )
            raise PurchaseRejected(
                RejectionCode.IDEMPOTENCY_KEY_CONFLICT,
                "This idempotency key was already used for a different purchase",
            )
        logger.info(
            "Returning previously recorded order for idempotency key",
            extra={"order_id": order.id, "idempotency_key": order.idempotency_key},
        )
        return OrderResult.from_order(order, replayed=True)

    def _send_receipt(self, user: User, raffle: Raffle, order: Order):
        async def record(result: NotificationResult):
            await self.ledger.record_receipt_outcome(order.id, result.success, result.error, self.clock())
            if not result.success:
                logger.warning(
                    f"Receipt delivery failed: {result.error}",
                    extra={"order_id": order.id, "user_id": user.id},
                )

        self.notifications.submit(receipt_message(user, raffle, order), "receipt", on_complete=record)

    async def drain(self):
        """Wait for purchases whose charge is already in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
