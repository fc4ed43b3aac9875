from app.models.offer import Offer
from app.models.subscription_plan import SubscriptionPlan
from app.models.user import User
from seed import DEFAULT_OFFERS, DEFAULT_PLANS, run_seed


def test_seed_is_idempotent(db, monkeypatch):
    monkeypatch.setenv("DEFAULT_ADMIN_EMAIL", "admin@example.com")

    run_seed()
    run_seed()

    assert db.query(SubscriptionPlan).count() == len(DEFAULT_PLANS)
    assert db.query(Offer).count() == len(DEFAULT_OFFERS)
    admin = db.query(User).filter(User.email == "admin@example.com").one()
    assert admin.is_admin is True
    welcome = db.query(Offer).filter(Offer.code == "WELCOME10").one()
    assert welcome.end_date > welcome.start_date
