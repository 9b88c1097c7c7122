from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class PurchaseRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36)
    # Validated by the reconciler so a bad count gets its own rejection code.
    tickets: int
    payment_token: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = Field(None, max_length=128)


class OrderResponse(BaseModel):
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

    model_config = ConfigDict(from_attributes=True)


class PurchaseErrorResponse(BaseModel):
    error: str
    code: str
    should_retry: bool = False
    details: dict = {}


class WinnerResponse(BaseModel):
    raffle_id: str
    winner_id: str
    winner_tickets: int
    total_tickets: int
    drawn_at: Optional[datetime] = None
    already_drawn: bool

    model_config = ConfigDict(from_attributes=True)


class WinningChanceResponse(BaseModel):
    total_tickets: int
    user_tickets: int
    winning_chance: float


class OrderSummaryResponse(BaseModel):
    order_id: str
    user_id: str
    raffle_id: str
    tickets_bought: int
    total_amount: str
    base_amount: str
    tax_amount: str
    tax_rate: str
    currency: str
    status: str
    created_at: datetime
    receipt_status: str
