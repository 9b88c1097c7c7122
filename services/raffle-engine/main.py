import asyncio
import os
import random
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional

if not os.getenv("PYTHONPATH"):
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from raffle_core import (
    Database, LedgerStore, HttpPaymentGateway, HttpNotificationDispatcher, NotificationQueue,
    PurchaseReconciler, WinnerSelector, RaffleStatusScheduler, ReminderCoordinator,
    RedisStreamClient, create_health_router, configure_logging, setup_telemetry,
    instrument_fastapi, config,
)
from raffle_core.errors import (
    BookkeepingError, DrawConflict, NoParticipantsError, PaymentFailed, PurchaseRejected,
    RaffleNotEnded, RaffleNotFound, RejectionCode,
)
from raffle_core.schemas import (
    OrderResponse, OrderSummaryResponse, PurchaseErrorResponse, PurchaseRequest,
    WinnerResponse, WinningChanceResponse,
)

SERVICE_NAME = "raffle-engine"

logger = configure_logging(SERVICE_NAME, os.getenv("LOG_LEVEL", "INFO"))

db = Database(config.DATABASE_URL)
ledger = LedgerStore(db)
redis_client = RedisStreamClient(config.REDIS_URL)
setup_telemetry(SERVICE_NAME, engine=db.engine)

background_tasks = set()

SHUTDOWN_DRAIN_SECONDS = float(os.getenv("SHUTDOWN_DRAIN_SECONDS", "30"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.create_tables()
    await redis_client.connect()

    http_client = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
    )
    notifications = NotificationQueue(HttpNotificationDispatcher(http_client, config.EMAIL_GATEWAY_URL))
    gateway = HttpPaymentGateway(
        http_client, config.PAYMENT_GATEWAY_URL, config.PAYMENT_GATEWAY_TOKEN,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
    )
    selector = WinnerSelector(ledger, notifications, events=redis_client)
    scheduler = RaffleStatusScheduler(
        ledger, selector, ReminderCoordinator(ledger, notifications), events=redis_client,
    )

    app.state.reconciler = PurchaseReconciler(
        ledger, gateway, notifications, events=redis_client, service_name=SERVICE_NAME,
    )
    app.state.selector = selector
    app.state.scheduler = scheduler

    task = asyncio.create_task(scheduler.run())
    background_tasks.add(task)

    logger.info("Raffle engine started")
    yield

    for task in background_tasks:
        task.cancel()
    # Charges already sent must still be recorded; receipts get a bounded wait.
    await app.state.reconciler.drain()
    try:
        await asyncio.wait_for(notifications.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Shutting down with notifications still in flight")
    await redis_client.close()
    await http_client.aclose()
    await db.close()


app = FastAPI(title="Raffle Engine", lifespan=lifespan)
instrument_fastapi(app)


async def check_scheduler():
    scheduler = getattr(app.state, "scheduler", None)
    return scheduler is not None and scheduler.is_healthy()


app.include_router(create_health_router(SERVICE_NAME, {
    "ledger": db.ping,
    "redis": redis_client.ping,
    "scheduler": check_scheduler,
}))


# ----------------------------
# Error mapping
# ----------------------------
NOT_FOUND_CODES = {RejectionCode.RAFFLE_NOT_FOUND, RejectionCode.USER_NOT_FOUND}
CONFLICT_CODES = {
    RejectionCode.RAFFLE_NOT_ACTIVE, RejectionCode.RAFFLE_ENDED,
    RejectionCode.NOT_ENOUGH_TICKETS, RejectionCode.USER_LIMIT_EXCEEDED,
    RejectionCode.IDEMPOTENCY_KEY_CONFLICT,
}


@app.exception_handler(PurchaseRejected)
async def purchase_rejected(request: Request, exc: PurchaseRejected):
    if exc.code in NOT_FOUND_CODES:
        status = 404
    elif exc.code in CONFLICT_CODES:
        status = 409
    else:
        status = 400
    body = PurchaseErrorResponse(error=exc.message, code=exc.code.value, details=exc.details)
    return JSONResponse(status_code=status, content=body.model_dump())


@app.exception_handler(PaymentFailed)
async def payment_failed(request: Request, exc: PaymentFailed):
    body = PurchaseErrorResponse(error=exc.message, code=exc.kind.value, should_retry=exc.should_retry)
    return JSONResponse(status_code=402, content=body.model_dump())


@app.exception_handler(BookkeepingError)
async def bookkeeping_failed(request: Request, exc: BookkeepingError):
    body = PurchaseErrorResponse(
        error="Your payment was received but your order could not be finalized. "
              "Our team has been alerted; please contact support with the reference below.",
        code="ORDER_PENDING_RECONCILIATION",
        details={"reference": exc.idempotency_key},
    )
    return JSONResponse(status_code=500, content=body.model_dump())


# ----------------------------
# Raffle endpoints
# ----------------------------
@app.post("/raffles/{raffle_id}/purchase", response_model=OrderResponse)
async def purchase_tickets(
    raffle_id: str,
    request: PurchaseRequest,
    x_idempotency_key: Optional[str] = Header(None),
):
    result = await app.state.reconciler.purchase(
        raffle_id=raffle_id,
        user_id=request.user_id,
        tickets_requested=request.tickets,
        payment_token=request.payment_token,
        idempotency_key=x_idempotency_key or request.idempotency_key,
    )
    return OrderResponse.model_validate(result)


@app.post("/raffles/{raffle_id}/draw", response_model=WinnerResponse)
async def draw_winner(raffle_id: str):
    """Admin "pick winner now". Same path as the scheduler's automatic draw."""
    try:
        result = await app.state.selector.select_winner(raffle_id)
    except RaffleNotFound:
        raise HTTPException(status_code=404, detail="Raffle not found")
    except RaffleNotEnded:
        raise HTTPException(status_code=409, detail="Raffle has not ended yet")
    except NoParticipantsError:
        raise HTTPException(status_code=409, detail="No participants in this raffle")
    except DrawConflict:
        raise HTTPException(status_code=409, detail="Raffle is still settling purchases, try again")
    return WinnerResponse.model_validate(result)


@app.get("/raffles/{raffle_id}/chance/{user_id}", response_model=WinningChanceResponse)
async def winning_chance(raffle_id: str, user_id: str):
    chance = await ledger.winning_chance(raffle_id, user_id)
    if chance is None:
        raise HTTPException(status_code=404, detail="Raffle not found")
    return WinningChanceResponse(**chance)


@app.get("/orders/receipts/pending", response_model=list[OrderSummaryResponse])
async def pending_receipts(limit: int = 100):
    orders = await ledger.pending_receipts(limit=min(limit, 500))
    return [OrderSummaryResponse(**o.summary()) for o in orders]


@app.get("/orders/{order_id}", response_model=OrderSummaryResponse)
async def get_order(order_id: str):
    order = await ledger.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderSummaryResponse(**order.summary())


# ----------------------------
# Simulated collaborators for local runs
# ----------------------------
class ChargeRequest(BaseModel):
    source_id: str
    idempotency_key: str
    amount: int
    currency: str


class EmailRequest(BaseModel):
    to: str
    subject: str
    body: str


SIMULATED_DECLINES = {
    "tok_insufficient_funds": "INSUFFICIENT_FUNDS",
    "tok_declined": "CARD_DECLINED",
    "tok_expired_card": "CARD_EXPIRED",
    "tok_expired_session": "IDEMPOTENCY_KEY_EXPIRED",
}
simulated_charges: dict[str, dict] = {}


@app.post("/gateway/charges")
async def charge_gateway(request: ChargeRequest):
    """Simulated card processor that deduplicates on the idempotency key."""
    await asyncio.sleep(random.uniform(0.05, 0.5))

    if request.idempotency_key in simulated_charges:
        return simulated_charges[request.idempotency_key]

    reason = SIMULATED_DECLINES.get(request.source_id)
    if reason:
        return JSONResponse(status_code=402, content={"errors": [{"code": reason}]})

    charge = {"status": "completed", "transaction_id": f"txn_{uuid.uuid4().hex}"}
    simulated_charges[request.idempotency_key] = charge
    return charge


@app.post("/gateway/email")
async def email_gateway(request: EmailRequest):
    """Simulated email provider with occasional delivery failures."""
    delay = random.uniform(0.1, 2.0)
    await asyncio.sleep(delay)

    if random.random() < 0.02:
        logger.warning("Email delivery failed (simulated)")
        return {"status": "failed", "error": "simulated provider failure"}

    return {
        "status": "delivered",
        "latency_ms": int(delay * 1000),
        "message_id": f"msg_{random.randint(100000, 999999)}",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
