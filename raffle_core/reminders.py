import logging
from datetime import datetime, timedelta

from . import config, metrics
from .helpers import is_valid_email
from .ledger import LedgerStore
from .models import Raffle
from .notifications import NotificationQueue, reminder_message

logger = logging.getLogger(__name__)


class ReminderCoordinator:
    """Emails participants shortly before a raffle starts and before it ends.

    Each reminder flag is claimed in the ledger before anything is sent, so
    only one scheduler instance sends a given reminder.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        notifications: NotificationQueue,
        lead_minutes: int = config.REMINDER_LEAD_MINUTES,
        window_seconds: int = config.REMINDER_WINDOW_SECONDS,
        frontend_url: str = config.FRONTEND_URL,
    ):
        self.ledger = ledger
        self.notifications = notifications
        self.lead_minutes = lead_minutes
        self.window_seconds = window_seconds
        self.frontend_url = frontend_url

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        target = now + timedelta(minutes=self.lead_minutes)
        spread = timedelta(seconds=self.window_seconds)
        return target - spread, target + spread

    async def run(self, now: datetime) -> int:
        """Send due reminders. Returns the number of messages queued."""
        lo, hi = self.window(now)
        queued = 0
        for stage, finder in (
            ("starting", self.ledger.raffles_starting_between),
            ("ending", self.ledger.raffles_ending_between),
        ):
            for raffle in await finder(lo, hi):
                try:
                    queued += await self._remind(raffle, stage, now)
                except Exception as e:
                    metrics.SCHEDULER_ERRORS.labels(stage="reminder").inc()
                    logger.error(f"Failed to send {stage} reminders: {e}",
                                 extra={"raffle_id": raffle.id})
        return queued

    async def _remind(self, raffle: Raffle, stage: str, now: datetime) -> int:
        if not await self.ledger.claim_reminder(raffle.id, stage, now):
            return 0

        queued = 0
        for user, tickets in await self.ledger.participant_contacts(raffle.id):
            if not is_valid_email(user.email):
                logger.warning("Participant has no usable email, skipping reminder",
                               extra={"raffle_id": raffle.id, "user_id": user.id})
                continue
            message = reminder_message(user, raffle, tickets, stage, self.frontend_url, self.lead_minutes)
            self.notifications.submit(message, "reminder")
            queued += 1

        logger.info(f"Queued {queued} {stage} reminders", extra={"raffle_id": raffle.id})
        return queued
