from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.subscription_plan import SubscriptionPlan
from app.schemas.subscription_plan import SubscriptionPlanResponse
from app.utils.response import create_response, handle_exception

router = APIRouter(prefix="/plans", tags=["Plans"])


def _billing_term(plan: SubscriptionPlan) -> str:
    return {
        "monthly": "Billed monthly",
        "quarterly": "Billed quarterly",
        "yearly": "Billed yearly",
    }[plan.duration.value]


def _plan_payload(plan: SubscriptionPlan) -> dict:
    payload = SubscriptionPlanResponse.model_validate(plan).model_dump(mode="json")
    payload["billing_term"] = _billing_term(plan)
    return payload


@router.get("")
def list_active_plans(db: Session = Depends(get_db)):
    try:
        plans = (
            db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.is_active == True)
            .order_by(SubscriptionPlan.price.asc(), SubscriptionPlan.id.asc())
            .all()
        )
        return create_response(
            message="Active plans fetched",
            data={"count": len(plans), "plans": [_plan_payload(plan) for plan in plans]},
        )
    except Exception as exc:
        return handle_exception(exc)
