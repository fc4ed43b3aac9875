import logging
import uuid
from datetime import datetime

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.models.offer import Offer
from app.models.payment import PaymentRecord, PaymentStatus
from app.models.subscription_plan import PlanDuration
from app.services.errors import InvalidStateTransition

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

_unmapped = set(PaymentStatus) - set(ALLOWED_TRANSITIONS)
if _unmapped:
    raise RuntimeError(f"Payment statuses without transition rules: {sorted(s.value for s in _unmapped)}")

# relativedelta clamps to the last day of the month: Jan 31 + 1 month = Feb 28/29.
PLAN_TERMS: dict[PlanDuration, relativedelta] = {
    PlanDuration.MONTHLY: relativedelta(months=1),
    PlanDuration.QUARTERLY: relativedelta(months=3),
    PlanDuration.YEARLY: relativedelta(years=1),
}


def is_terminal(status: PaymentStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target)


def subscription_window(duration: PlanDuration, start: datetime) -> tuple[datetime, datetime]:
    return start, start + PLAN_TERMS[PlanDuration(duration)]


def generate_transaction_id(now: datetime) -> str:
    return f"TXN_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"


def consume_offer(db: Session, offer_id: int) -> bool:
    """Atomically count one redemption; False when the usage cap is already reached."""
    result = db.execute(
        update(Offer)
        .where(
            Offer.id == offer_id,
            or_(Offer.max_usage_count.is_(None), Offer.used_count < Offer.max_usage_count),
        )
        .values(used_count=Offer.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Offer %s usage cap reached; redemption not counted", offer_id)
        return False
    return True


def find_by_payment_id(db: Session, payment_id: str) -> PaymentRecord | None:
    return (
        db.query(PaymentRecord)
        .populate_existing()
        .filter(PaymentRecord.gateway_payment_id == payment_id)
        .first()
    )


def find_by_order_id(db: Session, order_id: str, status: PaymentStatus | None = None) -> PaymentRecord | None:
    query = db.query(PaymentRecord).populate_existing().filter(PaymentRecord.gateway_order_id == order_id)
    if status is not None:
        query = query.filter(PaymentRecord.status == status)
    return query.order_by(PaymentRecord.id.desc()).first()


def transition(db: Session, record: PaymentRecord, target: PaymentStatus, now: datetime, **values) -> bool:
    """Conditional status update; False when another writer moved the row first."""
    ensure_transition(record.status, target)
    result = db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.id == record.id, PaymentRecord.status == record.status)
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
