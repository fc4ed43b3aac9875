import logging
import os
from datetime import timedelta
from decimal import Decimal

from dotenv import load_dotenv

from app.database import Base, engine, SessionLocal
from app.models.offer import DiscountType, Offer
from app.models.payment import PaymentRecord  # noqa: F401 - ensure table is created
from app.models.subscription_plan import PlanDuration, PlanType, SubscriptionPlan
from app.models.user import User
from app.services.pricing import normalize_offer_code
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PLANS = [
    {
        "name": "Basic Monthly",
        "description": "Core features for a single user.",
        "price": Decimal("499.00"),
        "duration": PlanDuration.MONTHLY,
        "plan_type": PlanType.BASIC,
        "max_users": 1,
    },
    {
        "name": "Standard Monthly",
        "description": "Everything in Basic for small teams.",
        "price": Decimal("999.00"),
        "duration": PlanDuration.MONTHLY,
        "plan_type": PlanType.STANDARD,
        "max_users": 5,
    },
    {
        "name": "Premium Quarterly",
        "description": "Priority support and advanced reports, billed every three months.",
        "price": Decimal("2699.00"),
        "duration": PlanDuration.QUARTERLY,
        "plan_type": PlanType.PREMIUM,
        "max_users": 15,
    },
    {
        "name": "Enterprise Yearly",
        "description": "Unlimited seats with a dedicated account manager.",
        "price": Decimal("24999.00"),
        "duration": PlanDuration.YEARLY,
        "plan_type": PlanType.ENTERPRISE,
        "max_users": 100,
    },
]

DEFAULT_OFFERS = [
    {
        "name": "Welcome 10%",
        "description": "10% off orders of 500 and above.",
        "code": "WELCOME10",
        "discount_type": DiscountType.PERCENTAGE,
        "value": Decimal("10"),
        "min_order_amount": Decimal("500.00"),
        "max_usage_count": 1000,
    },
    {
        "name": "Flat 200",
        "description": "200 off any plan.",
        "code": "FLAT200",
        "discount_type": DiscountType.FIXED_AMOUNT,
        "value": Decimal("200.00"),
        "min_order_amount": None,
        "max_usage_count": None,
    },
]


def _seed_plans(session) -> int:
    created = 0
    for entry in DEFAULT_PLANS:
        exists = session.query(SubscriptionPlan).filter(SubscriptionPlan.name == entry["name"]).first()
        if exists:
            continue
        session.add(SubscriptionPlan(**entry))
        created += 1
    return created


def _seed_offers(session) -> int:
    now = utcnow()
    created = 0
    for entry in DEFAULT_OFFERS:
        exists = session.query(Offer).filter(Offer.code == normalize_offer_code(entry["code"])).first()
        if exists:
            continue
        session.add(Offer(start_date=now, end_date=now + timedelta(days=90), **entry))
        created += 1
    return created


def _seed_admin(session) -> bool:
    email = os.getenv("DEFAULT_ADMIN_EMAIL")
    if not email:
        return False
    if session.query(User).filter(User.email == email).first():
        return False
    session.add(User(first_name="Admin", email=email, is_admin=True, is_active=True))
    return True


def run_seed():
    load_dotenv()
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        plans = _seed_plans(session)
        offers = _seed_offers(session)
        admin = _seed_admin(session)
        session.commit()
        logger.info("Seeded %s plans, %s offers, admin=%s", plans, offers, admin)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_seed()
