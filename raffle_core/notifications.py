"""
Notification delivery.

Receipts, winner notices and reminders are best-effort: they are submitted as
background tasks with their own retry and timeout policy, and their outcome is
only ever written to the delivery fields of the order or raffle.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from . import config, metrics
from .models import Order, Raffle, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str


class NotificationDispatcher(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> NotificationResult:
        ...


class HttpNotificationDispatcher(NotificationDispatcher):
    """Send email through the email gateway's HTTP endpoint."""

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def send(self, to: str, subject: str, body: str) -> NotificationResult:
        try:
            response = await self.client.post(
                f"{self.base_url}/email",
                json={"to": to.strip(), "subject": subject.strip(), "body": body},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Email gateway call failed: {e}")
            return NotificationResult(success=False, error=str(e))

        if not isinstance(data, dict):
            return NotificationResult(
                success=False,
                error=f"email gateway returned a {type(data).__name__} body ({response.status_code})",
            )
        if response.status_code >= 400 or data.get("status") != "delivered":
            return NotificationResult(
                success=False,
                error=data.get("error") or f"email gateway returned {response.status_code}",
            )
        return NotificationResult(success=True)


OnComplete = Callable[[NotificationResult], Awaitable[None]]


class NotificationQueue:
    """Fire-and-forget delivery with bounded retry."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        max_attempts: int = config.NOTIFY_MAX_ATTEMPTS,
        backoff_seconds: float = config.NOTIFY_BACKOFF_SECONDS,
        timeout_seconds: float = config.NOTIFY_TIMEOUT_SECONDS,
    ):
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.background_tasks: set[asyncio.Task] = set()

    async def deliver(self, message: Message, kind: str) -> NotificationResult:
        error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self.dispatcher.send(message.to, message.subject, message.body),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = NotificationResult(False, f"timed out after {self.timeout_seconds}s")
            except Exception as e:
                result = NotificationResult(False, str(e) or e.__class__.__name__)

            if result.success:
                metrics.NOTIFICATIONS_SENT.labels(type=kind, status="sent").inc()
                logger.info(f"Sent {kind} notification", extra={"attempt": attempt})
                return result

            error = result.error
            logger.warning(
                f"{kind} notification attempt failed: {error}",
                extra={"attempt": attempt},
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        metrics.NOTIFICATIONS_SENT.labels(type=kind, status="failed").inc()
        return NotificationResult(success=False, error=error)

    def submit(self, message: Message, kind: str,
               on_complete: Optional[OnComplete] = None) -> asyncio.Task:
        task = asyncio.create_task(self._run(message, kind, on_complete))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def _run(self, message: Message, kind: str,
                   on_complete: Optional[OnComplete]) -> NotificationResult:
        result = await self.deliver(message, kind)
        if on_complete is not None:
            try:
                await on_complete(result)
            except Exception:
                logger.exception(f"Failed to record {kind} delivery outcome")
        return result

    async def drain(self):
        """Wait for every outstanding delivery."""
        while self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)


# ----------------------------
# Message builders
# ----------------------------
def receipt_message(user: User, raffle: Raffle, order: Order) -> Message:
    reference = order.id[-8:].upper()
    body = (
        f"Hello {user.username or user.email},\n\n"
        f"Thank you for your raffle ticket purchase. Your order has been confirmed.\n\n"
        f"Order number: #{reference}\n"
        f"Raffle: {raffle.title}\n"
        f"Tickets: {order.tickets_bought}\n"
        f"Subtotal: ${order.base_amount:.2f} {order.currency}\n"
        f"Tax: ${order.tax_amount:.2f} {order.currency}\n"
        f"Total: ${order.amount:.2f} {order.currency}\n\n"
        f"If you have any questions, contact support with order number #{reference}."
    )
    return Message(to=user.email, subject=f"Your receipt for {raffle.title}", body=body)


def winner_message(user: User, raffle: Raffle, tickets: int) -> Message:
    body = (
        f"Hello {user.username or user.email},\n\n"
        f"You are the winner of {raffle.title}!\n"
        f"Your winning tickets: {tickets}\n\n"
        f"Our team will contact you shortly with prize details and delivery information."
    )
    return Message(
        to=user.email,
        subject=f"Congratulations! You won the raffle: {raffle.title}",
        body=body,
    )


def reminder_message(user: User, raffle: Raffle, tickets: int, stage: str,
                     frontend_url: str, lead_minutes: int) -> Message:
    link = f"{frontend_url.rstrip('/')}/raffles/{raffle.id}/live"
    if stage == "starting":
        subject = f"Reminder: {raffle.title} starts in {lead_minutes} minutes"
        when = f"starts at {raffle.start_date.isoformat()} UTC"
    else:
        subject = f"Final chance: {raffle.title} ends in {lead_minutes} minutes"
        when = f"ends at {raffle.end_date.isoformat()} UTC"
    body = (
        f"Hello {user.username or user.email},\n\n"
        f"The raffle {raffle.title} {when}.\n"
        f"Your tickets: {tickets}\n\n"
        f"Join here: {link}"
    )
    return Message(to=user.email, subject=subject, body=body)
