from jose import jwt

from app import main
from app.config import settings
from app.models.payment import PaymentRecord, PaymentStatus
from app.models.subscription_plan import PlanDuration
from app.services.auth_middleware import get_current_admin, get_current_user
from app.services.razorpay_gateway import GatewayConfig, RazorpayGateway, get_gateway
from helpers import NOW, sign_payment


def _initiate(client, plan_id, offer_id=None):
    response = client.post("/payments/initiate", json={"plan_id": plan_id, "offer_id": offer_id})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _confirm(client, order_id, plan_id, payment_id="pay_api", signature=None):
    return client.post(
        "/payments/confirm",
        json={
            "gateway_order_id": order_id,
            "gateway_payment_id": payment_id,
            "signature": signature or sign_payment(order_id, payment_id),
            "plan_id": plan_id,
        },
    )


def test_list_plans_sorted_by_price(client, make_plan):
    make_plan("2699.00", duration=PlanDuration.QUARTERLY, name="Premium Quarterly")
    make_plan("499.00", name="Basic Monthly")
    make_plan("99.00", name="Retired", is_active=False)

    response = client.get("/plans")

    assert response.status_code == 200
    plans = response.json()["data"]["plans"]
    assert [plan["name"] for plan in plans] == ["Basic Monthly", "Premium Quarterly"]
    assert plans[0]["price"] == "499.00"
    assert plans[1]["billing_term"] == "Billed quarterly"


def test_quote_endpoint(client, make_plan, make_offer):
    plan = make_plan("999.00")
    make_offer(code="WELCOME10", min_order_amount="500", start=NOW.replace(year=2000), end=NOW.replace(year=2099))

    response = client.post("/payments/quote", json={"plan_id": plan.id, "offer_code": "welcome10"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["discount_amount"] == "99.90"
    assert data["final_amount"] == "899.10"
    assert data["currency"] == "INR"


def test_quote_endpoint_errors(client, make_plan, make_offer):
    plan = make_plan("100.00")
    make_offer(code="BIGSPEND", min_order_amount="500", start=NOW.replace(year=2000), end=NOW.replace(year=2099))

    not_applicable = client.post("/payments/quote", json={"plan_id": plan.id, "offer_code": "BIGSPEND"})
    missing_plan = client.post("/payments/quote", json={"plan_id": 4040})

    assert not_applicable.status_code == 422
    assert not_applicable.json()["message"] == "Minimum order amount is 500.00"
    assert missing_plan.status_code == 404
    assert missing_plan.json()["message"] == "Plan not found"


def test_checkout_flow(client, db, user, make_plan):
    plan = make_plan("999.00")

    order = _initiate(client, plan.id)
    assert order["amount"] == "999.00"
    assert order["key_id"] == "rzp_test_key"
    assert order["email"] == user.email
    assert order["contact"] == user.phone

    response = _confirm(client, order["gateway_order_id"], plan.id)
    repeat = _confirm(client, order["gateway_order_id"], plan.id)

    assert response.status_code == 200
    assert response.json()["message"] == "Payment successful"
    data = response.json()["data"]
    assert data["status"] == "success"
    assert data["transaction_id"] == order["transaction_id"]
    assert repeat.json()["data"] == data

    history = client.get("/payments/history").json()["data"]
    assert history["count"] == 1
    assert history["payments"][0]["gateway_payment_id"] == "pay_api"


def test_confirm_with_bad_signature(client, db, make_plan):
    plan = make_plan()
    order = _initiate(client, plan.id)

    response = _confirm(client, order["gateway_order_id"], plan.id, signature="f" * 64)

    assert response.status_code == 400
    assert response.json()["message"] == "Payment verification failed"
    record = db.query(PaymentRecord).populate_existing().one()
    assert record.status == PaymentStatus.PENDING


def test_confirm_with_blank_signature_is_validation_error(client, make_plan):
    plan = make_plan()

    response = client.post(
        "/payments/confirm",
        json={"gateway_order_id": "order_1", "gateway_payment_id": "pay_1", "signature": "", "plan_id": plan.id},
    )

    assert response.status_code == 422
    assert response.json()["message"] == "Invalid request"
    assert response.json()["data"]["errors"][0]["loc"] == ["body", "signature"]


def test_gateway_outage_returns_503(client, fake_razorpay, make_plan):
    plan = make_plan()
    fake_razorpay.queue(*[(500, {"error": {"description": "boom"}})] * 3)

    response = client.post("/payments/initiate", json={"plan_id": plan.id})

    assert response.status_code == 503
    assert response.json()["message"] == "Payment gateway unavailable, please retry"
    assert client.get("/payments/history").json()["data"]["count"] == 0


def test_cancel_and_refund_endpoints(client, make_plan):
    plan = make_plan("999.00")
    abandoned = _initiate(client, plan.id)
    paid = _initiate(client, plan.id)
    _confirm(client, paid["gateway_order_id"], plan.id, payment_id="pay_paid")

    cancelled = client.post(f"/payments/{abandoned['gateway_order_id']}/cancel")
    refunded = client.post(f"/payments/{paid['transaction_id']}/refund", json={"amount": "100.00", "reason": "goodwill"})
    conflict = client.post(f"/payments/{paid['gateway_order_id']}/cancel")

    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert refunded.status_code == 200
    assert refunded.json()["data"]["status"] == "refunded"
    assert conflict.status_code == 409
    assert conflict.json()["message"] == "Cannot move payment from refunded to cancelled"


def test_bearer_token_resolves_user(client, db, user, make_plan):
    main.app.dependency_overrides.pop(get_current_user, None)
    main.app.dependency_overrides.pop(get_current_admin, None)
    token = jwt.encode({"sub": str(user.id)}, settings.JWT_SECRET, algorithm=settings.ALGORITHM)

    ok = client.get("/payments/history", headers={"Authorization": f"Bearer {token}"})
    bad = client.get("/payments/history", headers={"Authorization": "Bearer not-a-token"})
    unknown = client.get(
        "/payments/history",
        headers={"Authorization": f"Bearer {jwt.encode({'sub': '999'}, settings.JWT_SECRET, algorithm=settings.ALGORITHM)}"},
    )
    not_admin = client.post(
        "/payments/TXN_missing/refund", json={}, headers={"Authorization": f"Bearer {token}"}
    )

    assert ok.status_code == 200
    assert bad.status_code == 401
    assert unknown.status_code == 404
    assert not_admin.status_code == 403
    assert ok.json()["data"]["count"] == 0


def test_confirm_without_key_secret_is_server_error(client, make_plan):
    plan = make_plan()
    order = _initiate(client, plan.id)
    unconfigured = RazorpayGateway(GatewayConfig(key_id="rzp_test_key", key_secret=""))
    main.app.dependency_overrides[get_gateway] = lambda: unconfigured
    try:
        response = _confirm(client, order["gateway_order_id"], plan.id)
    finally:
        unconfigured.close()

    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error"
    history = client.get("/payments/history").json()["data"]
    assert history["payments"][0]["status"] == "pending"
