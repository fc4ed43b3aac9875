import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, Numeric, String

from app.database import Base
from app.utils.clock import utcnow


class PlanDuration(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class PlanType(str, enum.Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    price = Column(Numeric(12, 2, asdecimal=True), nullable=False)
    duration = Column(Enum(PlanDuration, native_enum=False, length=20), nullable=False)
    plan_type = Column(Enum(PlanType, native_enum=False, length=20), nullable=False, default=PlanType.BASIC)
    max_users = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
