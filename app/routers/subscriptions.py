import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas.payment import EntitlementResponse, SubscriptionDetailsResponse
from app.services import entitlement_service
from app.utils.clock import utcnow
from app.utils.response import create_response, handle_exception

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])
logger = logging.getLogger(__name__)


def _ensure_user(db: Session, user_id: int) -> None:
    if not db.query(User.id).filter(User.id == user_id).first():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@router.get("/entitlement/{user_id}")
def check_entitlement(user_id: int, db: Session = Depends(get_db)):
    try:
        _ensure_user(db, user_id)
        result = entitlement_service.check_entitlement(db, user_id)
        logger.info("Entitlement check for user %s: %s", user_id, result["is_valid"])
        return create_response(
            message="Entitlement checked",
            data=EntitlementResponse(**result).model_dump(mode="json"),
        )
    except Exception as exc:
        return handle_exception(exc)


@router.get("/details/{user_id}")
def subscription_details(user_id: int, db: Session = Depends(get_db)):
    try:
        _ensure_user(db, user_id)
        now = utcnow()
        current = entitlement_service.details(db, user_id, now)
        if current is None:
            return create_response(
                message="No active subscription found",
                data={"is_valid": False, "checked_at": now},
            )
        data = SubscriptionDetailsResponse(**asdict(current)).model_dump(mode="json")
        data["is_valid"] = True
        return create_response(message="Subscription details fetched", data=data)
    except Exception as exc:
        return handle_exception(exc)
