import enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from app.database import Base
from app.utils.clock import utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentRecord(Base):
    __tablename__ = "payment_records"
    __table_args__ = (
        Index("ix_payment_records_user_status_end", "user_id", "status", "subscription_end"),
    )

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(100), unique=True, nullable=False, index=True)
    gateway_order_id = Column(String(100), nullable=True, index=True)
    # Unique: a gateway payment can activate at most one subscription window.
    gateway_payment_id = Column(String(100), unique=True, nullable=True, index=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    company_id = Column(Integer, nullable=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True)

    currency = Column(String(8), nullable=False, default="INR")
    base_amount = Column(Numeric(12, 2, asdecimal=True), nullable=False)
    discount_amount = Column(Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    final_amount = Column(Numeric(12, 2, asdecimal=True), nullable=False)

    status = Column(Enum(PaymentStatus, native_enum=False, length=20), nullable=False, default=PaymentStatus.PENDING)
    payment_date = Column(DateTime, default=utcnow, nullable=False)
    subscription_start = Column(DateTime, nullable=True)
    subscription_end = Column(DateTime, nullable=True)

    notes = Column(String(1000), nullable=True)
    gateway_response = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DeferredWebhookEvent(Base):
    """Webhook that arrived before any matching payment record existed."""

    __tablename__ = "deferred_webhook_events"
    __table_args__ = (
        UniqueConstraint("event_type", "gateway_payment_id", name="uq_deferred_event_payment"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(64), nullable=False)
    gateway_payment_id = Column(String(100), nullable=False, index=True)
    gateway_order_id = Column(String(100), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    outcome = Column(String(64), nullable=True)
