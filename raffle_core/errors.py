from enum import Enum
from typing import Optional


class RejectionCode(str, Enum):
    INVALID_TICKET_COUNT = "INVALID_TICKET_COUNT"
    RAFFLE_NOT_FOUND = "RAFFLE_NOT_FOUND"
    RAFFLE_NOT_ACTIVE = "RAFFLE_NOT_ACTIVE"
    RAFFLE_ENDED = "RAFFLE_ENDED"
    NOT_ENOUGH_TICKETS = "NOT_ENOUGH_TICKETS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    EMAIL_INVALID = "EMAIL_INVALID"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    USER_LIMIT_EXCEEDED = "USER_LIMIT_EXCEEDED"
    AMOUNT_BELOW_MINIMUM = "AMOUNT_BELOW_MINIMUM"
    IDEMPOTENCY_KEY_CONFLICT = "IDEMPOTENCY_KEY_CONFLICT"


class PaymentFailureKind(str, Enum):
    DECLINED = "DECLINED"
    INVALID_INSTRUMENT = "INVALID_INSTRUMENT"
    EXPIRED_SESSION = "EXPIRED_SESSION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    GENERIC = "GENERIC"


class RaffleError(Exception):
    """Base class for raffle engine errors."""


class PurchaseRejected(RaffleError):
    """A purchase failed validation before any charge was attempted."""

    def __init__(self, code: RejectionCode, message: str, **details):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class PaymentFailed(RaffleError):
    """The gateway did not complete the charge. Nothing was recorded."""

    def __init__(
        self,
        kind: PaymentFailureKind,
        message: str,
        should_retry: bool = False,
        decline_reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.should_retry = should_retry
        self.decline_reason = decline_reason


class BookkeepingError(RaffleError):
    """The charge went through but the purchase could not be recorded."""

    def __init__(
        self,
        raffle_id: str,
        user_id: str,
        tickets: int,
        amount_minor: int,
        transaction_id: str,
        idempotency_key: str,
    ):
        super().__init__(
            f"charge {transaction_id} succeeded but order commit failed "
            f"(raffle={raffle_id} user={user_id} tickets={tickets} amount_minor={amount_minor})"
        )
        self.raffle_id = raffle_id
        self.user_id = user_id
        self.tickets = tickets
        self.amount_minor = amount_minor
        self.transaction_id = transaction_id
        self.idempotency_key = idempotency_key


class GatewayUnavailable(RaffleError):
    """The payment gateway could not be reached or timed out."""


class RaffleNotFound(RaffleError):
    pass


class RaffleNotEnded(RaffleError):
    pass


class NoParticipantsError(RaffleError):
    """The raffle closed without a single ticket sold. Not retried."""


class RaffleDrawnDuringPurchase(RaffleError):
    """A winner was recorded while the purchase's charge was in flight."""

    def __init__(self, raffle_id: str):
        super().__init__(f"raffle {raffle_id} was drawn before the purchase could be recorded")
        self.raffle_id = raffle_id


class DrawConflict(RaffleError):
    """Ticket sales kept landing between reading the pool and recording the winner."""
