import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.services.errors import GatewayError, GatewayUnavailable
from app.services.pricing import to_minor_units
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEMO_ORDER_PREFIX = "order_demo_"


@dataclass(frozen=True)
class GatewayConfig:
    key_id: str
    key_secret: str
    webhook_secret: str = ""
    base_url: str = "https://api.razorpay.com"
    currency: str = "INR"
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    demo_mode: bool = False

    @classmethod
    def from_settings(cls, source) -> "GatewayConfig":
        return cls(
            key_id=source.RAZORPAY_KEY_ID,
            key_secret=source.RAZORPAY_KEY_SECRET,
            webhook_secret=source.RAZORPAY_WEBHOOK_SECRET,
            base_url=source.RAZORPAY_BASE_URL,
            currency=source.PAYMENT_CURRENCY,
            timeout_seconds=source.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=source.GATEWAY_MAX_ATTEMPTS,
            demo_mode=source.PAYMENT_DEMO_MODE,
        )


class _TransientResponse(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"Gateway returned {response.status_code}")


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _require_text(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


class RazorpayGateway:
    """Thin Razorpay REST client: orders, signatures, payment fetch and refunds."""

    def __init__(self, config: GatewayConfig, transport: httpx.BaseTransport | None = None):
        self.config = config
        self._client = httpx.Client(
            base_url=config.base_url,
            auth=(config.key_id, config.key_secret),
            timeout=config.timeout_seconds,
            transport=transport,
        )
        if config.demo_mode:
            logger.warning(
                "Payment gateway running in DEMO mode: orders get synthetic ids and are never sent to Razorpay"
            )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(max(self.config.max_attempts, 1)),
            wait=wait_exponential(multiplier=self.config.backoff_seconds, max=10),
            retry=retry_if_exception_type((httpx.TransportError, _TransientResponse)),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self._client.request(method, path, **kwargs)
                    if response.status_code == 429 or response.status_code >= 500:
                        raise _TransientResponse(response)
        except (httpx.TransportError, _TransientResponse) as exc:
            logger.error("Gateway %s %s failed after %s attempts: %s", method, path, self.config.max_attempts, exc)
            raise GatewayUnavailable(cause=exc) from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            description = _error_description(response)
            logger.error("Gateway %s %s rejected: %s %s", method, path, response.status_code, description)
            raise GatewayError(f"Payment gateway rejected the request: {description}", cause=exc) from exc
        return response.json()

    def create_order(self, amount, currency: Optional[str] = None, receipt: Optional[str] = None) -> str:
        currency = (currency or self.config.currency).upper()
        receipt = receipt or uuid.uuid4().hex
        amount_minor = to_minor_units(amount, currency)

        if self.config.demo_mode:
            order_id = f"{DEMO_ORDER_PREFIX}{utcnow():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"
            logger.warning("Demo mode: created synthetic order %s for %s %s", order_id, amount, currency)
            return order_id

        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        order = self._request("POST", "/v1/orders", json=payload)
        order_id = order.get("id")
        if not order_id:
            raise GatewayError("Payment gateway returned an order without an id")
        logger.info("Razorpay order %s created for %s %s (receipt %s)", order_id, amount, currency, receipt)
        return order_id

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        _require_text("order_id", order_id)
        _require_text("payment_id", payment_id)
        _require_text("signature", signature)
        if not self.config.key_secret:
            raise RuntimeError("Gateway key secret is not configured")

        expected = _hmac_hex(self.config.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        is_valid = hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
        if is_valid:
            logger.info("Payment signature verified for order %s", order_id)
        else:
            logger.error(
                "Payment signature mismatch for order %s payment %s; possible forgery", order_id, payment_id
            )
        return is_valid

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self.config.webhook_secret:
            raise RuntimeError("Webhook secret is not configured")
        if not signature:
            logger.error("Webhook received without a signature header")
            return False
        expected = _hmac_hex(self.config.webhook_secret, raw_body)
        is_valid = hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
        if not is_valid:
            logger.error("Webhook signature mismatch; possible forgery")
        return is_valid

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        _require_text("payment_id", payment_id)
        if self.config.demo_mode:
            return {"id": payment_id, "status": "captured", "demo": True}
        return self._request("GET", f"/v1/payments/{payment_id}")

    def refund(self, payment_id: str, amount, reason: Optional[str] = None, currency: Optional[str] = None) -> Dict[str, Any]:
        _require_text("payment_id", payment_id)
        currency = (currency or self.config.currency).upper()
        payload: Dict[str, Any] = {"amount": to_minor_units(amount, currency), "speed": "normal"}
        if reason:
            payload["notes"] = {"reason": reason}

        if self.config.demo_mode:
            refund_id = f"rfnd_demo_{uuid.uuid4().hex[:12]}"
            logger.warning("Demo mode: synthetic refund %s for payment %s", refund_id, payment_id)
            return {"id": refund_id, "payment_id": payment_id, "amount": payload["amount"], "status": "processed"}

        refund = self._request("POST", f"/v1/payments/{payment_id}/refund", json=payload)
        logger.info("Refund %s processed for payment %s", refund.get("id"), payment_id)
        return refund


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("description") or error.get("code") or str(error)
    return str(body)[:200]


_gateway: RazorpayGateway | None = None


def get_gateway() -> RazorpayGateway:
    """FastAPI dependency returning the process-wide gateway client."""
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway(GatewayConfig.from_settings(settings))
    return _gateway


def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        _gateway.close()
        _gateway = None
