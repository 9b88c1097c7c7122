import logging
import json
import sys
from datetime import datetime, timezone

# Domain identifiers lifted from `extra=` into every JSON record.
CONTEXT_KEYS = (
    "raffle_id", "user_id", "order_id", "transaction_id", "idempotency_key",
    "amount_minor", "tickets", "reason", "status", "winner_id", "attempt",
    "stream", "msg_id",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the emitting service."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        # Decimals and datetimes fall back to str
        return json.dumps(entry, default=str)


def configure_logging(service_name: str, level: str = "INFO"):
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger(service_name)
