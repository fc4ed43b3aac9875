from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.models.payment import PaymentRecord, PaymentStatus
from app.models.subscription_plan import SubscriptionPlan
from app.utils.clock import as_naive_utc, utcnow


@dataclass(frozen=True)
class SubscriptionDetails:
    transaction_id: str
    plan_id: int
    plan_name: str
    plan_type: str
    start_date: datetime
    end_date: datetime
    days_remaining: int


def active_payment(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[PaymentRecord]:
    """Successful payment whose window covers ``now``, preferring the latest end."""
    now = as_naive_utc(now or utcnow())
    return (
        db.query(PaymentRecord)
        .filter(
            PaymentRecord.user_id == user_id,
            PaymentRecord.status == PaymentStatus.SUCCESS,
            PaymentRecord.subscription_start <= now,
            PaymentRecord.subscription_end >= now,
        )
        .order_by(PaymentRecord.subscription_end.desc(), PaymentRecord.id.desc())
        .first()
    )


def is_active(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
    return active_payment(db, user_id, now) is not None


def details(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[SubscriptionDetails]:
    now = as_naive_utc(now or utcnow())
    payment = active_payment(db, user_id, now)
    if payment is None:
        return None
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.id == payment.plan_id).first()
    return SubscriptionDetails(
        transaction_id=payment.transaction_id,
        plan_id=payment.plan_id,
        plan_name=plan.name if plan else "",
        plan_type=plan.plan_type.value if plan else "",
        start_date=payment.subscription_start,
        end_date=payment.subscription_end,
        days_remaining=max((payment.subscription_end - now).days, 0),
    )


def check_entitlement(db: Session, user_id: int, now: Optional[datetime] = None) -> dict:
    now = as_naive_utc(now or utcnow())
    current = details(db, user_id, now)
    return {
        "user_id": user_id,
        "is_valid": current is not None,
        "plan_name": current.plan_name if current else None,
        "expiry_date": current.end_date if current else None,
        "checked_at": now,
    }
