import hashlib
import hmac
import json
from datetime import datetime

import httpx

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
NOW = datetime(2024, 1, 31, 10, 0, 0)


def sign_payment(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(event: str, payment_id: str, order_id: str | None = None, **entity) -> bytes:
    entity.update({"id": payment_id, "order_id": order_id, "entity": "payment"})
    return json.dumps({"entity": "event", "event": event, "payload": {"payment": {"entity": entity}}}).encode()


class FakeRazorpay:
    """Stands in for the Razorpay REST API behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.queued: list = []
        self._orders = 0
        self.payments: dict[str, dict] = {}

    def queue(self, *responses) -> None:
        self.queued.extend(responses)

    def capture(self, payment_id: str, amount: int, order_id: str | None = None, currency: str = "INR") -> None:
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "status": "captured",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued:
            queued = self.queued.pop(0)
            if isinstance(queued, Exception):
                raise queued
            status_code, body = queued
            return httpx.Response(status_code, json=body)

        path = request.url.path
        if request.method == "POST" and path == "/v1/orders":
            self._orders += 1
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": f"order_test{self._orders:04d}",
                    "amount": body["amount"],
                    "currency": body["currency"],
                    "receipt": body["receipt"],
                    "status": "created",
                },
            )
        if request.method == "POST" and path.endswith("/refund"):
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": "rfnd_test0001", "amount": body["amount"], "status": "processed"})
        if request.method == "GET" and path.startswith("/v1/payments/"):
            payment = self.payments.get(path.rsplit("/", 1)[-1])
            if payment is not None:
                return httpx.Response(200, json=payment)
        return httpx.Response(404, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "not found"}})

    def json_bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests if request.content]
