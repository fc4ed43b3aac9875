from fastapi import status


class BillingError(Exception):
    """Base class for billing failures that surface to API callers."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Billing request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidAmount(BillingError):
    default_message = "Invalid amount"


class PlanNotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Plan not found"


class OfferNotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Offer not found"


class OfferNotApplicable(BillingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Offer is not applicable to this order"


class PaymentNotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Payment not found"


class PaymentVerificationFailed(BillingError):
    default_message = "Payment verification failed"


class InvalidStateTransition(BillingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Invalid payment state transition"

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move payment from {current.value} to {target.value}")


class MalformedWebhook(BillingError):
    default_message = "Malformed webhook payload"


class GatewayError(BillingError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment gateway error"

    def __init__(self, message: str | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class GatewayUnavailable(GatewayError):
    """Transient failure; no record was written so the caller may retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Payment gateway unavailable, please retry"
