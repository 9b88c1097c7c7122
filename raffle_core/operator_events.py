import os
import time
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

SPLUNK_REALM = os.getenv("SPLUNK_REALM", "us1")
SPLUNK_ACCESS_TOKEN = os.getenv("SPLUNK_ACCESS_TOKEN", "")


async def send_operator_event(
    event_type: str,
    service: str,
    dimensions: Optional[dict] = None,
    properties: Optional[dict] = None,
) -> bool:
    """Raise an operator-visible event in Splunk Observability.

    Used for conditions that need manual follow-up, such as a charge that
    succeeded without a committed order.
    """
    if not SPLUNK_ACCESS_TOKEN:
        logger.warning(f"SPLUNK_ACCESS_TOKEN not set, operator event kept in logs only: {event_type}")
        return False

    payload = [{
        "category": "ALERT",
        "eventType": event_type,
        "dimensions": {
            "service": service,
            "environment": os.getenv("DEPLOYMENT_ENV", "production"),
            **(dimensions or {}),
        },
        "properties": {k: str(v) for k, v in (properties or {}).items()},
        "timestamp": int(time.time() * 1000),
    }]

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                f"https://ingest.{SPLUNK_REALM}.signalfx.com/v2/event",
                json=payload,
                headers={"Content-Type": "application/json", "X-SF-Token": SPLUNK_ACCESS_TOKEN},
            )
    except httpx.HTTPError as e:
        logger.error(f"Error sending operator event {event_type}: {e}")
        return False

    if response.status_code in (200, 202):
        logger.info(f"Sent operator event: {event_type}")
        return True
    logger.warning(f"Operator event {event_type} rejected: {response.status_code}")
    return False
