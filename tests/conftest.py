import os
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

# Ensure predictable environment variables for tests before importing the app.
BASE_DIR = Path(__file__).resolve().parents[1]
TEST_DB_PATH = BASE_DIR / "test.db"

if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("DATABASE_URL", f"sqlite:///{TEST_DB_PATH}")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("PAYMENT_DEMO_MODE", "false")

import app.main as main  # noqa: E402  (import after env vars are set)
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.models.offer import DiscountType, Offer  # noqa: E402
from app.models.subscription_plan import PlanDuration, PlanType, SubscriptionPlan  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services import payment_events  # noqa: E402
from app.services.auth_middleware import get_current_admin, get_current_user  # noqa: E402
from app.services.razorpay_gateway import GatewayConfig, RazorpayGateway, get_gateway  # noqa: E402
from helpers import KEY_SECRET, NOW, WEBHOOK_SECRET, FakeRazorpay  # noqa: E402


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    payment_events.clear()
    yield
    payment_events.clear()


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def fake_razorpay():
    return FakeRazorpay()


@pytest.fixture()
def gateway(fake_razorpay):
    config = GatewayConfig(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://api.razorpay.test",
        currency="INR",
        timeout_seconds=2,
        max_attempts=3,
        backoff_seconds=0,
    )
    client = RazorpayGateway(config, transport=httpx.MockTransport(fake_razorpay.handler))
    yield client
    client.close()


@pytest.fixture()
def user(db):
    record = User(first_name="Asha", last_name="Rao", email="asha@example.com", phone="9990001111", company_id=7)
    db.add(record)
    db.commit()
    return record


@pytest.fixture()
def other_user(db):
    record = User(first_name="Vikram", email="vikram@example.com")
    db.add(record)
    db.commit()
    return record


@pytest.fixture()
def make_plan(db):
    def _make_plan(price="999.00", duration=PlanDuration.MONTHLY, name="Standard Monthly", is_active=True):
        plan = SubscriptionPlan(
            name=name,
            price=Decimal(price),
            duration=duration,
            plan_type=PlanType.STANDARD,
            is_active=is_active,
        )
        db.add(plan)
        db.commit()
        return plan

    return _make_plan


@pytest.fixture()
def make_offer(db):
    def _make_offer(
        code="SAVE10",
        discount_type=DiscountType.PERCENTAGE,
        value="10",
        min_order_amount=None,
        start=NOW - timedelta(days=1),
        end=NOW + timedelta(days=30),
        max_usage_count=None,
        used_count=0,
        is_active=True,
    ):
        offer = Offer(
            name=f"Offer {code}",
            code=code,
            discount_type=discount_type,
            value=Decimal(value),
            min_order_amount=Decimal(min_order_amount) if min_order_amount is not None else None,
            start_date=start,
            end_date=end,
            max_usage_count=max_usage_count,
            used_count=used_count,
            is_active=is_active,
        )
        db.add(offer)
        db.commit()
        return offer

    return _make_offer


@pytest.fixture()
def client(gateway, user):
    acting_user = SimpleNamespace(
        id=user.id,
        email=user.email,
        phone=user.phone,
        company_id=user.company_id,
        full_name=user.full_name,
        is_admin=True,
        is_active=True,
    )
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    main.app.dependency_overrides[get_current_user] = lambda: acting_user
    main.app.dependency_overrides[get_current_admin] = lambda: acting_user
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
