import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from .errors import GatewayUnavailable, PaymentFailureKind

logger = logging.getLogger(__name__)

CHARGE_COMPLETED = "completed"
CHARGE_FAILED = "failed"


@dataclass(frozen=True)
class ChargeResult:
    status: str
    transaction_id: Optional[str] = None
    decline_reason: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == CHARGE_COMPLETED


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(
        self, token: str, idempotency_key: str, minor_amount: int, currency: str
    ) -> ChargeResult:
        """Charge the card behind token. The gateway deduplicates on idempotency_key."""


class HttpPaymentGateway(PaymentGateway):
    """Card processor reached over HTTP with a bearer token."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, access_token: str = "",
                 timeout: float = 10.0):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout

    async def charge(
        self, token: str, idempotency_key: str, minor_amount: int, currency: str
    ) -> ChargeResult:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        try:
            response = await self.client.post(
                f"{self.base_url}/charges",
                json={
                    "source_id": token,
                    "idempotency_key": idempotency_key,
                    "amount": minor_amount,
                    "currency": currency,
                },
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"payment gateway timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"payment gateway unreachable: {e}") from e

        if response.status_code >= 500:
            raise GatewayUnavailable(f"payment gateway error {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnavailable("payment gateway returned invalid JSON") from e
        if not isinstance(data, dict):
            raise GatewayUnavailable(f"payment gateway returned a {type(data).__name__} body")

        if response.status_code >= 400:
            errors = data.get("errors")
            first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else {}
            reason = first.get("code") or data.get("decline_reason") or "GENERIC_DECLINE"
            return ChargeResult(
                status=CHARGE_FAILED,
                transaction_id=data.get("transaction_id"),
                decline_reason=reason,
            )

        return ChargeResult(
            status=str(data.get("status", CHARGE_FAILED)).lower(),
            transaction_id=data.get("transaction_id"),
            decline_reason=data.get("decline_reason"),
        )


INSUFFICIENT_FUNDS_CODES = {"INSUFFICIENT_FUNDS"}
INVALID_INSTRUMENT_CODES = {
    "INVALID_CARD", "INVALID_CARD_DATA", "INVALID_EXPIRATION", "CARD_EXPIRED",
    "CVV_FAILURE", "ADDRESS_VERIFICATION_FAILURE", "INVALID_ACCOUNT", "CARD_NOT_SUPPORTED",
}
EXPIRED_SESSION_CODES = {
    "IDEMPOTENCY_KEY_REUSED", "IDEMPOTENCY_KEY_EXPIRED", "SESSION_EXPIRED",
    "PAYMENT_SESSION_EXPIRED", "EXPIRED",
}
DECLINED_CODES = {"CARD_DECLINED", "GENERIC_DECLINE", "TRANSACTION_LIMIT", "CARD_DECLINED_VERIFICATION_REQUIRED"}

FAILURE_MESSAGES = {
    PaymentFailureKind.INSUFFICIENT_FUNDS: "Insufficient funds. Please use a different card.",
    PaymentFailureKind.INVALID_INSTRUMENT: "Card details are invalid or expired. Please check the card or use another one.",
    PaymentFailureKind.EXPIRED_SESSION: "Your payment session expired. Please refresh and try again.",
    PaymentFailureKind.DECLINED: "Card declined. Please try another payment method.",
    PaymentFailureKind.GENERIC: "Payment could not be processed. Please try again later.",
}


def classify_decline(reason: Optional[str]) -> tuple[PaymentFailureKind, str, bool]:
    """Map a gateway decline code to (kind, caller message, should_retry).

    Only an expired session is worth retrying, and only with a fresh
    idempotency key.
    """
    code = (reason or "").upper()
    if code in INSUFFICIENT_FUNDS_CODES:
        kind = PaymentFailureKind.INSUFFICIENT_FUNDS
    elif code in INVALID_INSTRUMENT_CODES:
        kind = PaymentFailureKind.INVALID_INSTRUMENT
    elif code in EXPIRED_SESSION_CODES:
        kind = PaymentFailureKind.EXPIRED_SESSION
    elif code in DECLINED_CODES:
        kind = PaymentFailureKind.DECLINED
    else:
        kind = PaymentFailureKind.GENERIC
    return kind, FAILURE_MESSAGES[kind], kind == PaymentFailureKind.EXPIRED_SESSION
