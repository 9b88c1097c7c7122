from .database import Database, Base
from .ledger import LedgerStore, DuplicatePurchase
from .gateway import PaymentGateway, HttpPaymentGateway, ChargeResult, classify_decline
from .notifications import (
    NotificationDispatcher,
    HttpNotificationDispatcher,
    NotificationQueue,
    NotificationResult,
)
from .reconciler import PurchaseReconciler, OrderResult
from .selector import WinnerSelector, WinnerResult
from .scheduler import RaffleStatusScheduler
from .reminders import ReminderCoordinator
from .redis_streams import (
    RedisStreamClient,
    STREAM_PURCHASES_COMPLETED,
    STREAM_RAFFLE_STATUS,
    STREAM_WINNERS_SELECTED,
)
from .health import create_health_router
from .logging_config import configure_logging
from .telemetry import setup_telemetry, instrument_fastapi, get_tracer
from .operator_events import send_operator_event
from . import errors, metrics

__all__ = [
    "Database",
    "Base",
    "LedgerStore",
    "DuplicatePurchase",
    "PaymentGateway",
    "HttpPaymentGateway",
    "ChargeResult",
    "classify_decline",
    "NotificationDispatcher",
    "HttpNotificationDispatcher",
    "NotificationQueue",
    "NotificationResult",
    "PurchaseReconciler",
    "OrderResult",
    "WinnerSelector",
    "WinnerResult",
    "RaffleStatusScheduler",
    "ReminderCoordinator",
    "RedisStreamClient",
    "STREAM_PURCHASES_COMPLETED",
    "STREAM_RAFFLE_STATUS",
    "STREAM_WINNERS_SELECTED",
    "create_health_router",
    "configure_logging",
    "setup_telemetry",
    "instrument_fastapi",
    "get_tracer",
    "send_operator_event",
    "errors",
    "metrics",
]
