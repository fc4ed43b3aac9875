from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.offer import DiscountType, Offer
from app.services.errors import InvalidAmount

DEFAULT_MINOR_UNIT_EXPONENT = 2
CURRENCY_EXPONENTS = {
    "INR": 2,
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "AED": 2,
    "SGD": 2,
    "JPY": 0,
    "KRW": 0,
}

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Quote:
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    currency: str = "INR"
    offer_id: int | None = None

    def as_dict(self) -> dict:
        return {
            "base_amount": self.base_amount,
            "discount_amount": self.discount_amount,
            "final_amount": self.final_amount,
            "currency": self.currency,
            "offer_id": self.offer_id,
        }


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_MINOR_UNIT_EXPONENT)


def _quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-currency_exponent(currency))


def to_decimal(value) -> Decimal:
    if isinstance(value, float):
        raise InvalidAmount("Monetary values must not be floats")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmount(f"Not a valid amount: {value!r}") from exc
    if not result.is_finite():
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    return result


def round_money(amount: Decimal, currency: str = "INR") -> Decimal:
    return amount.quantize(_quantum(currency), rounding=ROUND_HALF_UP)


def to_minor_units(amount, currency: str = "INR") -> int:
    """Gateway integer representation, e.g. rupees to paise."""
    value = round_money(to_decimal(amount), currency)
    return int(value.scaleb(currency_exponent(currency)))


def from_minor_units(amount: int, currency: str = "INR") -> Decimal:
    return round_money(Decimal(int(amount)).scaleb(-currency_exponent(currency)), currency)


def normalize_offer_code(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().upper()
    return normalized or None


def find_offer_by_code(db: Session, code: str | None) -> Offer | None:
    normalized = normalize_offer_code(code)
    if not normalized:
        return None
    return db.query(Offer).filter(func.upper(Offer.code) == normalized).first()


def ineligibility_reason(offer: Offer, base_amount, now: datetime) -> str | None:
    """First unmet offer condition, or None when the offer applies."""
    if not offer.is_active:
        return "Offer is not active"
    if now < offer.start_date:
        return "Offer has not started yet"
    if now > offer.end_date:
        return "Offer has expired"
    if offer.min_order_amount is not None and to_decimal(base_amount) < to_decimal(offer.min_order_amount):
        return f"Minimum order amount is {offer.min_order_amount}"
    if offer.max_usage_count is not None and (offer.used_count or 0) >= offer.max_usage_count:
        return "Offer usage limit reached"
    return None


def is_applicable(offer: Offer, base_amount, now: datetime) -> bool:
    return ineligibility_reason(offer, base_amount, now) is None


def compute_discount(base_amount: Decimal, offer: Offer, currency: str = "INR") -> Decimal:
    value = to_decimal(offer.value)
    if value < ZERO:
        raise InvalidAmount("Offer value must not be negative")
    if offer.discount_type == DiscountType.PERCENTAGE:
        discount = round_money(base_amount * value / HUNDRED, currency)
    elif offer.discount_type == DiscountType.FIXED_AMOUNT:
        discount = round_money(value, currency)
    else:
        raise ValueError(f"Unsupported discount type: {offer.discount_type}")
    return min(discount, base_amount)


def compute_final_amount(
    base_amount,
    offer: Offer | None = None,
    *,
    now: datetime | None = None,
    currency: str = "INR",
) -> Quote:
    """Discount and payable amount for a base price and an optional offer.

    When ``now`` is given the offer is checked for applicability first and an
    inapplicable offer contributes no discount.
    """
    base = to_decimal(base_amount)
    if base < ZERO:
        raise InvalidAmount("Base amount must not be negative")
    base = round_money(base, currency)

    if offer is None or (now is not None and not is_applicable(offer, base, now)):
        return Quote(base_amount=base, discount_amount=round_money(ZERO, currency), final_amount=base, currency=currency)

    discount = compute_discount(base, offer, currency)
    final = max(base - discount, ZERO)
    return Quote(
        base_amount=base,
        discount_amount=discount,
        final_amount=round_money(final, currency),
        currency=currency,
        offer_id=offer.id,
    )
