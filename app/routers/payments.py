import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.database import get_db
from app.models.user import User
from app.schemas.payment import (
    ConfirmPaymentRequest,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    QuoteRequest,
    QuoteResponse,
    RefundRequest,
    payment_payload,
)
from app.services import subscription_service
from app.services.auth_middleware import get_current_admin, get_current_user
from app.services.razorpay_gateway import RazorpayGateway, get_gateway
from app.services.webhook_service import parse_webhook, reconcile
from app.utils.response import create_response, handle_exception

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger(__name__)


@router.post("/quote")
def quote_plan(
    body: QuoteRequest,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    try:
        pricing = subscription_service.quote(
            db, body.plan_id, body.offer_code, currency=gateway.config.currency
        )
        data = QuoteResponse(plan_id=body.plan_id, **pricing.as_dict())
        return create_response(message="Quote calculated", data=data.model_dump(mode="json"))
    except Exception as exc:
        return handle_exception(exc)


@router.post("/initiate")
def initiate_payment(
    body: InitiatePaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    try:
        order = subscription_service.initiate_payment(
            db,
            gateway,
            current_user.id,
            body.plan_id,
            body.offer_id,
            company_id=current_user.company_id,
        )
        data = InitiatePaymentResponse(**order).model_dump(mode="json")
        data.update(
            name=current_user.full_name,
            email=current_user.email,
            contact=current_user.phone or "",
        )
        return create_response(message="Payment initiated", data=data, status_code=status.HTTP_201_CREATED)
    except Exception as exc:
        return handle_exception(exc)


@router.post("/confirm")
def confirm_payment(
    body: ConfirmPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    try:
        record = subscription_service.confirm_payment(
            db,
            gateway,
            user_id=current_user.id,
            plan_id=body.plan_id,
            order_id=body.gateway_order_id,
            payment_id=body.gateway_payment_id,
            signature=body.signature,
            offer_id=body.offer_id,
            company_id=current_user.company_id,
        )
        return create_response(message="Payment successful", data=payment_payload(record))
    except Exception as exc:
        return handle_exception(exc)


@router.post("/{gateway_order_id}/cancel")
def cancel_payment(
    gateway_order_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        record = subscription_service.cancel_payment(db, current_user.id, gateway_order_id)
        return create_response(message="Payment cancelled", data=payment_payload(record))
    except Exception as exc:
        return handle_exception(exc)


@router.get("/history")
def payment_history(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        records = subscription_service.payment_history(db, current_user.id)
        return create_response(
            message="Payment history fetched",
            data={"count": len(records), "payments": [payment_payload(record) for record in records]},
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post("/{transaction_id}/refund")
def refund_payment(
    transaction_id: str,
    body: RefundRequest,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    try:
        record = subscription_service.refund_payment(db, gateway, transaction_id, body.amount, body.reason)
        logger.info("Admin %s refunded %s", admin.id, transaction_id)
        return create_response(message="Payment refunded", data=payment_payload(record))
    except Exception as exc:
        return handle_exception(exc)


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    raw_body = await request.body()
    try:
        if gateway.config.webhook_secret:
            signature = request.headers.get("X-Razorpay-Signature")
            if not gateway.verify_webhook_signature(raw_body, signature):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")
        elif not gateway.config.demo_mode:
            logger.error("RAZORPAY_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook signature cannot be verified")
        event = parse_webhook(raw_body)
    except Exception as exc:
        return handle_exception(exc)

    logger.info("Received Razorpay webhook %s for payment %s", event.event_type, event.payment_id)
    try:
        outcome = await run_in_threadpool(
            reconcile,
            db,
            event.event_type,
            event.payment_id,
            event.payload,
            order_id=event.order_id,
        )
    except Exception:
        # Always acknowledged once the payload parsed.
        logger.exception("Reconciliation of %s for payment %s failed", event.event_type, event.payment_id)
        outcome = "error"
    return create_response(message="Webhook received", data={"event": event.event_type, "outcome": outcome})
