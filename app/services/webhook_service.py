import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payment import DeferredWebhookEvent, PaymentRecord, PaymentStatus
from app.models.subscription_plan import SubscriptionPlan
from app.schemas.payment import payment_payload
from app.services import payment_events
from app.services.errors import MalformedWebhook
from app.services.payment_state import (
    can_transition,
    consume_offer,
    find_by_order_id,
    find_by_payment_id,
    subscription_window,
    transition,
)
from app.utils.clock import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"

# Reconciliation outcomes, stored on deferred events once replayed.
ACTIVATED = "activated"
MARKED_FAILED = "marked_failed"
NOOP = "noop"
DEFERRED = "deferred"
IGNORED = "ignored"


@dataclass
class WebhookEvent:
    event_type: str
    payment_id: str | None
    order_id: str | None
    payload: dict = field(default_factory=dict)


def parse_webhook(raw_body: bytes) -> WebhookEvent:
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedWebhook("Webhook body is not valid JSON") from exc
    if not isinstance(data, dict) or not isinstance(data.get("event"), str):
        raise MalformedWebhook("Webhook body has no event type")

    event_type = data["event"]
    payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
    payment = payload.get("payment") if isinstance(payload.get("payment"), dict) else {}
    entity = payment.get("entity") if isinstance(payment.get("entity"), dict) else {}
    payment_id = entity.get("id")
    order_id = entity.get("order_id")

    if event_type.startswith("payment.") and not payment_id:
        raise MalformedWebhook(f"{event_type} webhook carries no payment id")
    return WebhookEvent(event_type=event_type, payment_id=payment_id, order_id=order_id, payload=data)


def _locate(db: Session, payment_id: str, order_id: str | None) -> PaymentRecord | None:
    record = find_by_payment_id(db, payment_id)
    if record is None and order_id:
        record = find_by_order_id(db, order_id, PaymentStatus.PENDING) or find_by_order_id(db, order_id)
    return record


def _defer(db: Session, event_type: str, payment_id: str, order_id: str | None, payload: dict, now: datetime) -> str:
    db.add(
        DeferredWebhookEvent(
            event_type=event_type,
            gateway_payment_id=payment_id,
            gateway_order_id=order_id,
            payload=payload,
            received_at=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Deferred %s for payment %s already stored", event_type, payment_id)
        return DEFERRED
    logger.warning("No payment record for %s (%s); event deferred for reconciliation", payment_id, event_type)
    return DEFERRED


def _on_captured(db: Session, payment_id: str, order_id: str | None, payload: dict, now: datetime) -> str:
    record = _locate(db, payment_id, order_id)
    if record is None or (record.status != PaymentStatus.PENDING and record.gateway_payment_id != payment_id):
        # Either nothing is stored yet or only an earlier attempt on the same order.
        return _defer(db, PAYMENT_CAPTURED, payment_id, order_id, payload, now)
    if record.status == PaymentStatus.SUCCESS:
        logger.info("Payment %s already successful; captured webhook is a no-op", payment_id)
        return NOOP
    if not can_transition(record.status, PaymentStatus.SUCCESS):
        logger.warning("Ignoring captured webhook for %s: record %s is %s", payment_id, record.transaction_id, record.status.value)
        return NOOP

    values: dict[str, Any] = {"gateway_payment_id": payment_id, "payment_date": now}
    if record.subscription_start is None:
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.id == record.plan_id).first()
        start, end = subscription_window(plan.duration, now)
        values.update(subscription_start=start, subscription_end=end)
    if record.offer_id is not None and not consume_offer(db, record.offer_id):
        logger.warning("Offer %s reached its usage cap before payment %s; honouring the quoted discount", record.offer_id, payment_id)

    try:
        moved = transition(db, record, PaymentStatus.SUCCESS, now, **values)
        if not moved:
            db.rollback()
            logger.warning("Payment %s changed concurrently; captured webhook skipped", payment_id)
            return NOOP
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Payment %s was activated by another path first", payment_id)
        return NOOP

    record = find_by_payment_id(db, payment_id)
    logger.info("Payment %s captured via webhook; transaction %s is now successful", payment_id, record.transaction_id)
    payment_events.emit(payment_events.PAYMENT_SUCCEEDED, payment_payload(record))
    return ACTIVATED


def _on_failed(db: Session, payment_id: str, order_id: str | None, payload: dict, now: datetime) -> str:
    record = _locate(db, payment_id, order_id)
    if record is None:
        return _defer(db, PAYMENT_FAILED, payment_id, order_id, payload, now)
    if record.status != PaymentStatus.PENDING:
        if record.status == PaymentStatus.SUCCESS:
            logger.warning("Out-of-order failed webhook for %s ignored; record is already successful", payment_id)
        return NOOP

    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    response = {
        "failed_payment_id": payment_id,
        "error_code": entity.get("error_code"),
        "error_description": entity.get("error_description"),
    }
    if not transition(db, record, PaymentStatus.FAILED, now, gateway_response=response):
        db.rollback()
        return NOOP
    db.commit()
    logger.info("Payment %s failed; transaction %s marked failed", payment_id, record.transaction_id)
    payment_events.emit(payment_events.PAYMENT_FAILED, payment_payload(_locate(db, payment_id, order_id)))
    return MARKED_FAILED


def _on_subscription_cancelled(db: Session, payment_id: str | None, order_id: str | None, payload: dict, now: datetime) -> str:
    logger.info("Subscription cancelled webhook received; no local action taken")
    return NOOP


_HANDLERS: dict[str, Callable[..., str]] = {
    PAYMENT_CAPTURED: _on_captured,
    PAYMENT_FAILED: _on_failed,
    SUBSCRIPTION_CANCELLED: _on_subscription_cancelled,
}


def reconcile(
    db: Session,
    event_type: str,
    payment_id: str | None,
    payload: dict | None = None,
    *,
    order_id: str | None = None,
    now: datetime | None = None,
) -> str:
    """Apply one gateway event; replaying the same event leaves the same state."""
    now = as_naive_utc(now or utcnow())
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring unhandled webhook event %s", event_type)
        return IGNORED
    return handler(db, payment_id, order_id, payload or {}, now)


def drain_deferred_events(db: Session, payment_id: str, now: datetime | None = None) -> int:
    """Replay early webhooks for a payment once its record exists."""
    now = as_naive_utc(now or utcnow())
    events = (
        db.query(DeferredWebhookEvent)
        .filter(
            DeferredWebhookEvent.gateway_payment_id == payment_id,
            DeferredWebhookEvent.processed_at.is_(None),
        )
        .order_by(DeferredWebhookEvent.received_at.asc(), DeferredWebhookEvent.id.asc())
        .all()
    )
    if not events:
        return 0

    replayed = 0
    for event in events:
        if _locate(db, payment_id, event.gateway_order_id) is None:
            continue
        event_id = event.id
        outcome = reconcile(
            db,
            event.event_type,
            payment_id,
            event.payload or {},
            order_id=event.gateway_order_id,
            now=now,
        )
        if outcome == DEFERRED:
            continue
        stored = db.query(DeferredWebhookEvent).filter(DeferredWebhookEvent.id == event_id).one()
        stored.processed_at = now
        stored.outcome = outcome
        db.commit()
        replayed += 1
        logger.info("Replayed deferred %s for payment %s: %s", stored.event_type, payment_id, outcome)
    return replayed


def drain_all_deferred_events(db: Session, now: datetime | None = None) -> int:
    payment_ids = [
        payment_id
        for (payment_id,) in db.query(DeferredWebhookEvent.gateway_payment_id)
        .filter(DeferredWebhookEvent.processed_at.is_(None))
        .group_by(DeferredWebhookEvent.gateway_payment_id)
        .order_by(func.min(DeferredWebhookEvent.received_at))
        .all()
    ]
    return sum(drain_deferred_events(db, payment_id, now) for payment_id in payment_ids)
