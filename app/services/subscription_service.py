import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.offer import Offer
from app.models.payment import PaymentRecord, PaymentStatus
from app.models.subscription_plan import SubscriptionPlan
from app.schemas.payment import payment_payload
from app.services import payment_events
from app.services.errors import (
    InvalidAmount,
    InvalidStateTransition,
    OfferNotApplicable,
    OfferNotFound,
    PaymentNotFound,
    PaymentVerificationFailed,
    PlanNotFound,
)
from app.services.payment_state import (
    consume_offer,
    ensure_transition,
    find_by_order_id,
    find_by_payment_id,
    generate_transaction_id,
    subscription_window,
    transition,
)
from app.services.pricing import (
    Quote,
    compute_final_amount,
    find_offer_by_code,
    ineligibility_reason,
    is_applicable,
    to_decimal,
    to_minor_units,
)
from app.services.razorpay_gateway import RazorpayGateway
from app.services.webhook_service import drain_deferred_events
from app.utils.clock import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


def get_plan(db: Session, plan_id: int, active_only: bool = False) -> SubscriptionPlan:
    query = db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id)
    if active_only:
        query = query.filter(SubscriptionPlan.is_active == True)
    plan = query.first()
    if not plan:
        raise PlanNotFound()
    return plan


def get_offer(db: Session, offer_id: int) -> Offer:
    offer = db.query(Offer).populate_existing().filter(Offer.id == offer_id).first()
    if not offer:
        raise OfferNotFound()
    return offer


def quote(
    db: Session,
    plan_id: int,
    offer_code: Optional[str] = None,
    *,
    offer_id: Optional[int] = None,
    currency: str = "INR",
    now: Optional[datetime] = None,
) -> Quote:
    """Price a plan, rejecting an explicitly requested offer that does not apply."""
    now = as_naive_utc(now or utcnow())
    plan = get_plan(db, plan_id, active_only=True)

    offer = None
    if offer_code:
        offer = find_offer_by_code(db, offer_code)
        if offer is None:
            raise OfferNotFound()
    elif offer_id is not None:
        offer = get_offer(db, offer_id)

    if offer is not None:
        reason = ineligibility_reason(offer, plan.price, now)
        if reason:
            raise OfferNotApplicable(reason)
    return compute_final_amount(plan.price, offer, now=now, currency=currency)


def initiate_payment(
    db: Session,
    gateway: RazorpayGateway,
    user_id: int,
    plan_id: int,
    offer_id: Optional[int] = None,
    *,
    company_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = as_naive_utc(now or utcnow())
    currency = gateway.config.currency
    plan = get_plan(db, plan_id, active_only=True)
    pricing = quote(db, plan.id, offer_id=offer_id, currency=currency, now=now)

    transaction_id = generate_transaction_id(now)
    # Raises before anything is stored, so a failed order creation is safe to retry.
    order_id = gateway.create_order(pricing.final_amount, currency, receipt=transaction_id)

    record = PaymentRecord(
        transaction_id=transaction_id,
        gateway_order_id=order_id,
        user_id=user_id,
        company_id=company_id,
        plan_id=plan.id,
        offer_id=pricing.offer_id,
        currency=currency,
        base_amount=pricing.base_amount,
        discount_amount=pricing.discount_amount,
        final_amount=pricing.final_amount,
        status=PaymentStatus.PENDING,
        payment_date=now,
        notes=f"Payment for {plan.name} subscription",
    )
    db.add(record)
    db.commit()
    logger.info("Initiated payment %s (order %s) for user %s plan %s", transaction_id, order_id, user_id, plan.id)
    return {
        "gateway_order_id": order_id,
        "transaction_id": transaction_id,
        "amount": pricing.final_amount,
        "currency": currency,
        "key_id": gateway.config.key_id,
        "description": f"Subscription: {plan.name}",
    }


def _existing_activation(record: PaymentRecord, user_id: int) -> PaymentRecord:
    if record.user_id != user_id:
        logger.error(
            "Payment %s belongs to user %s but user %s tried to confirm it",
            record.gateway_payment_id,
            record.user_id,
            user_id,
        )
        raise PaymentVerificationFailed()
    logger.info("Payment %s already activated as %s; returning existing record", record.gateway_payment_id, record.transaction_id)
    return record


def _check_order_terms(record: PaymentRecord, user_id: int, plan_id: int, offer_id: Optional[int]) -> None:
    """The order's stored terms win; a confirmation naming other terms is rejected."""
    if record.user_id != user_id:
        logger.error("Order %s belongs to user %s but user %s tried to confirm it", record.gateway_order_id, record.user_id, user_id)
        raise PaymentVerificationFailed()
    if plan_id != record.plan_id or (offer_id is not None and offer_id != record.offer_id):
        logger.error(
            "Order %s was placed for plan %s offer %s but confirmation named plan %s offer %s",
            record.gateway_order_id,
            record.plan_id,
            record.offer_id,
            plan_id,
            offer_id,
        )
        raise PaymentVerificationFailed()


def _quote_from_record(record: PaymentRecord) -> Quote:
    return Quote(
        base_amount=Decimal(record.base_amount),
        discount_amount=Decimal(record.discount_amount),
        final_amount=Decimal(record.final_amount),
        currency=record.currency,
        offer_id=record.offer_id,
    )


def _verify_captured_amount(gateway: RazorpayGateway, order_id: str, payment_id: str, pricing: Quote) -> None:
    if gateway.config.demo_mode:
        logger.warning("Demo mode: captured amount of payment %s not checked", payment_id)
        return

    payment = gateway.fetch_payment(payment_id)
    expected = to_minor_units(pricing.final_amount, pricing.currency)
    mismatch = (
        payment.get("status") not in ("authorized", "captured")
        or payment.get("amount") != expected
        or str(payment.get("currency") or pricing.currency).upper() != pricing.currency.upper()
        or payment.get("order_id") not in (None, order_id)
    )
    if mismatch:
        logger.error(
            "Payment %s on order %s is %s %s %s; expected captured %s %s",
            payment_id,
            order_id,
            payment.get("status"),
            payment.get("amount"),
            payment.get("currency"),
            expected,
            pricing.currency,
        )
        raise PaymentVerificationFailed()


def _persist_activation(
    db: Session,
    *,
    user_id: int,
    company_id: Optional[int],
    plan: SubscriptionPlan,
    pricing: Quote,
    pending: Optional[PaymentRecord],
    order_id: str,
    payment_id: str,
    now: datetime,
) -> PaymentRecord:
    # The gateway already charged the quoted amount, so a lost usage race keeps the discount.
    if pricing.offer_id is not None and not consume_offer(db, pricing.offer_id):
        logger.warning("Offer %s reached its usage cap before payment %s; honouring the quoted discount", pricing.offer_id, payment_id)

    start, end = subscription_window(plan.duration, now)
    values = {
        "gateway_payment_id": payment_id,
        "plan_id": plan.id,
        "offer_id": pricing.offer_id,
        "base_amount": pricing.base_amount,
        "discount_amount": pricing.discount_amount,
        "final_amount": pricing.final_amount,
        "payment_date": now,
        "subscription_start": start,
        "subscription_end": end,
    }

    if pending is not None and transition(db, pending, PaymentStatus.SUCCESS, now, **values):
        db.flush()
        return find_by_payment_id(db, payment_id)

    record = PaymentRecord(
        transaction_id=generate_transaction_id(now),
        gateway_order_id=order_id,
        user_id=user_id,
        company_id=company_id,
        currency=pricing.currency,
        status=PaymentStatus.SUCCESS,
        notes=f"Payment for {plan.name} subscription",
        **values,
    )
    db.add(record)
    db.flush()
    return record


def activate_subscription(
    db: Session,
    gateway: RazorpayGateway,
    *,
    user_id: int,
    plan_id: int,
    order_id: str,
    payment_id: str,
    signature: str,
    offer_id: Optional[int] = None,
    company_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PaymentRecord:
    """Turn a verified gateway payment into exactly one subscription window.

    Repeated or concurrent confirmations of the same gateway payment return the
    record created by the first one. The unique index on ``gateway_payment_id``
    decides the winner; losers roll back and re-read.

    Amounts come from the order's stored quote. An order this service never
    recorded is priced now and must match what the gateway captured.
    """
    try:
        verified = gateway.verify_signature(order_id, payment_id, signature)
    except ValueError as exc:
        logger.error("Malformed confirmation for order %s: %s", order_id, exc)
        raise PaymentVerificationFailed() from exc
    if not verified:
        raise PaymentVerificationFailed()

    now = as_naive_utc(now or utcnow())
    existing = find_by_payment_id(db, payment_id)
    if existing is not None:
        return _existing_activation(existing, user_id)

    prior = find_by_order_id(db, order_id, PaymentStatus.PENDING) or find_by_order_id(db, order_id)
    if prior is not None and prior.gateway_payment_id == payment_id:
        return _existing_activation(prior, user_id)
    if prior is not None:
        _check_order_terms(prior, user_id, plan_id, offer_id)
        plan = get_plan(db, prior.plan_id)
        pricing = _quote_from_record(prior)
        if prior.offer_id is not None and not is_applicable(get_offer(db, prior.offer_id), plan.price, now):
            logger.warning(
                "Offer %s no longer applicable at confirmation of payment %s; keeping the quoted discount",
                prior.offer_id,
                payment_id,
            )
    else:
        plan = get_plan(db, plan_id)
        offer = get_offer(db, offer_id) if offer_id is not None else None
        pricing = compute_final_amount(plan.price, offer, now=now, currency=gateway.config.currency)

    pending = prior if prior is not None and prior.status == PaymentStatus.PENDING and prior.gateway_payment_id is None else None
    if pending is None:
        _verify_captured_amount(gateway, order_id, payment_id, pricing)

    try:
        record = _persist_activation(
            db,
            user_id=user_id,
            company_id=company_id,
            plan=plan,
            pricing=pricing,
            pending=pending,
            order_id=order_id,
            payment_id=payment_id,
            now=now,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_by_payment_id(db, payment_id)
        if existing is None:
            raise
        return _existing_activation(existing, user_id)

    logger.info(
        "Payment %s for user %s activated plan %s until %s (transaction %s)",
        payment_id,
        user_id,
        plan.id,
        record.subscription_end,
        record.transaction_id,
    )
    payload = payment_payload(record)
    drain_deferred_events(db, payment_id, now)
    payment_events.emit(payment_events.PAYMENT_SUCCEEDED, payload)
    return find_by_payment_id(db, payment_id)


confirm_payment = activate_subscription


def cancel_payment(db: Session, user_id: int, order_id: str, now: Optional[datetime] = None) -> PaymentRecord:
    now = as_naive_utc(now or utcnow())
    record = find_by_order_id(db, order_id)
    if record is None or record.user_id != user_id:
        raise PaymentNotFound()
    ensure_transition(record.status, PaymentStatus.CANCELLED)
    if not transition(db, record, PaymentStatus.CANCELLED, now):
        db.rollback()
        current = find_by_order_id(db, order_id)
        raise InvalidStateTransition(current.status, PaymentStatus.CANCELLED)
    db.commit()
    record = find_by_order_id(db, order_id)
    logger.info("Payment %s cancelled by user %s", record.transaction_id, user_id)
    payment_events.emit(payment_events.PAYMENT_CANCELLED, payment_payload(record))
    return record


def refund_payment(
    db: Session,
    gateway: RazorpayGateway,
    transaction_id: str,
    amount=None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentRecord:
    now = as_naive_utc(now or utcnow())
    record = db.query(PaymentRecord).populate_existing().filter(PaymentRecord.transaction_id == transaction_id).first()
    if record is None:
        raise PaymentNotFound()
    ensure_transition(record.status, PaymentStatus.REFUNDED)

    refund_amount = to_decimal(amount) if amount is not None else Decimal(record.final_amount)
    if refund_amount <= 0 or refund_amount > Decimal(record.final_amount):
        raise InvalidAmount("Refund amount must be positive and no more than the amount paid")

    refund = gateway.refund(record.gateway_payment_id, refund_amount, reason, currency=record.currency)
    response = dict(record.gateway_response or {})
    response["refund"] = refund
    if not transition(db, record, PaymentStatus.REFUNDED, now, gateway_response=response):
        db.rollback()
        logger.error("Refund %s issued but payment %s changed concurrently", refund.get("id"), transaction_id)
        current = db.query(PaymentRecord).populate_existing().filter(PaymentRecord.id == record.id).one()
        raise InvalidStateTransition(current.status, PaymentStatus.REFUNDED)
    db.commit()
    record = db.query(PaymentRecord).populate_existing().filter(PaymentRecord.id == record.id).one()
    logger.info("Payment %s refunded (%s %s)", transaction_id, refund_amount, record.currency)
    payment_events.emit(payment_events.PAYMENT_REFUNDED, payment_payload(record))
    return record


def payment_history(db: Session, user_id: int) -> List[PaymentRecord]:
    return (
        db.query(PaymentRecord)
        .filter(PaymentRecord.user_id == user_id)
        .order_by(PaymentRecord.payment_date.desc(), PaymentRecord.id.desc())
        .all()
    )
