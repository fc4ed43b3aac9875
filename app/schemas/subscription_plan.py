from decimal import Decimal

from pydantic import BaseModel

from app.models.subscription_plan import PlanDuration, PlanType


class SubscriptionPlanResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    price: Decimal
    duration: PlanDuration
    plan_type: PlanType
    max_users: int
    is_active: bool

    model_config = {"from_attributes": True}
