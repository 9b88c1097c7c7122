from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .database import Base


class RaffleStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


# Status only ever moves forward through this order.
STATUS_RANK = {
    RaffleStatus.UPCOMING: 0,
    RaffleStatus.ACTIVE: 1,
    RaffleStatus.COMPLETED: 2,
}


class DrawStatus(str, Enum):
    PENDING = "pending"
    DRAWN = "drawn"
    NO_PARTICIPANTS = "no_participants"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @validates("email")
    def _normalize_email(self, key, value):
        return (value or "").strip()


class Raffle(Base):
    __tablename__ = "raffles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(128), nullable=False, default="General")
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[RaffleStatus] = mapped_column(
        SQLEnum(RaffleStatus), default=RaffleStatus.UPCOMING, nullable=False
    )
    total_tickets_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_tickets_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_tickets_per_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    winner_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    draw_status: Mapped[DrawStatus] = mapped_column(
        SQLEnum(DrawStatus), default=DrawStatus.PENDING, nullable=False
    )
    drawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    winner_notice_status: Mapped[Optional[DeliveryStatus]] = mapped_column(
        SQLEnum(DeliveryStatus), nullable=True
    )
    winner_notice_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ending_reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ending_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    participants: Mapped[list["Participation"]] = relationship(
        back_populates="raffle",
        order_by="Participation.id",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_raffle_status", "status"),
        Index("idx_raffle_end_date", "end_date"),
    )

    @validates("category")
    def _default_category(self, key, value):
        return value or "General"

    @validates("description")
    def _default_description(self, key, value):
        return value or ""

    @validates("price")
    def _positive_price(self, key, value):
        value = Decimal(str(value))
        if value <= 0:
            raise ValueError("price must be positive")
        return value

    @validates("total_tickets_sold")
    def _non_negative_count(self, key, value):
        if value is None or value < 0:
            raise ValueError("total_tickets_sold cannot be negative")
        return value

    @validates("max_tickets_total", "max_tickets_per_user")
    def _positive_cap(self, key, value):
        if value is not None and value <= 0:
            raise ValueError(f"{key} must be positive when set")
        return value

    def status_at(self, now: datetime) -> RaffleStatus:
        """Status as a function of time; a drawn raffle is always completed."""
        if self.winner_id is not None:
            return RaffleStatus.COMPLETED
        if now < self.start_date:
            return RaffleStatus.UPCOMING
        if now <= self.end_date:
            return RaffleStatus.ACTIVE
        return RaffleStatus.COMPLETED

    def participation_for(self, user_id: str) -> Optional["Participation"]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None


class Participation(Base):
    __tablename__ = "raffle_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_id: Mapped[str] = mapped_column(ForeignKey("raffles.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    tickets_bought: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_purchase_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_purchase_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    raffle: Mapped[Raffle] = relationship(back_populates="participants")

    __table_args__ = (
        UniqueConstraint("raffle_id", "user_id", name="uq_participant_raffle_user"),
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    raffle_id: Mapped[str] = mapped_column(ForeignKey("raffles.id"), nullable=False, index=True)
    tickets_bought: Mapped[int] = mapped_column(Integer, nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.COMPLETED, nullable=False
    )
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    receipt_status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus), default=DeliveryStatus.PENDING, nullable=False
    )
    receipt_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    receipt_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def summary(self) -> dict:
        tax_rate = (self.tax_amount / self.base_amount * 100) if self.base_amount else Decimal(0)
        return {
            "order_id": self.id,
            "user_id": self.user_id,
            "raffle_id": self.raffle_id,
            "tickets_bought": self.tickets_bought,
            "total_amount": str(self.amount),
            "base_amount": str(self.base_amount),
            "tax_amount": str(self.tax_amount),
            "tax_rate": f"{tax_rate:.2f}%",
            "currency": self.currency,
            "status": self.payment_status.value,
            "created_at": self.created_at.isoformat(),
            "receipt_status": self.receipt_status.value,
        }
