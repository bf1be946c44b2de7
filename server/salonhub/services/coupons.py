# salonhub/services/coupons.py
"""
Coupon validation and discount pricing.

All prices are integer minor units (cents). Validation never writes: the
redemption counter only moves when a payment is confirmed, so quoting a
price cannot use up a capped coupon.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict, Optional

from flask import current_app

from salonhub.errors import ConflictError, ValidationError
from salonhub.models_billing import Coupon, DISCOUNT_AMOUNT, DISCOUNT_PERCENT, DISCOUNT_TYPES, to_minor_units

MIN_CHARGE_MINOR = 50


@dataclass(frozen=True)
class CouponQuote:
    coupon: Coupon
    original_minor: int
    discount_minor: int
    discounted_minor: int


@dataclass(frozen=True)
class PriceQuote:
    """What the customer will be charged for one billing period."""
    original_minor: int
    discounted_minor: int
    coupon_quote: Optional[CouponQuote] = None

    @property
    def discount_minor(self) -> int:
        return self.original_minor - self.discounted_minor

    @property
    def is_free(self) -> bool:
        return self.discounted_minor == 0


def _min_charge() -> int:
    return int(current_app.config.get("MIN_CHARGE_MINOR", MIN_CHARGE_MINOR))


def compute_discount(discount_type: str, amount, price_minor: int) -> int:
    """
    Discount in minor units for a coupon value against a price.

    percent -> floor(price * amount / 100)
    amount  -> round(amount * 100), amount being major units
    """
    value = Decimal(str(amount))
    if discount_type == DISCOUNT_PERCENT:
        return int((Decimal(price_minor) * value / 100).to_integral_value(rounding=ROUND_FLOOR))
    if discount_type == DISCOUNT_AMOUNT:
        return to_minor_units(value)
    raise ValidationError(f"Unsupported discount type: {discount_type}")


def validate_coupon(code: Optional[str], plan_price_minor: int, now: Optional[datetime] = None) -> CouponQuote:
    """
    Validate a coupon code against a plan price.

    Args:
        code: Raw code as typed by the customer
        plan_price_minor: Plan price in cents
        now: Clock override for tests

    Returns:
        CouponQuote with the discount applied

    Raises:
        ValidationError: unknown, inactive, out of window, or below the charge floor
        ConflictError: usage cap reached
    """
    normalized = Coupon.normalize_code(code)
    if not normalized:
        raise ValidationError("Coupon code is required")

    coupon = Coupon.query.filter_by(code=normalized).first()
    if not coupon:
        raise ValidationError("Invalid coupon code")
    if not coupon.is_active:
        raise ValidationError("Coupon is not active")

    now = now or datetime.utcnow()
    if coupon.start_date and now < coupon.start_date:
        raise ValidationError("Coupon is not yet valid")
    if coupon.end_date and now > coupon.end_date:
        raise ValidationError("Coupon has expired")
    if coupon.is_exhausted:
        raise ConflictError("Coupon usage limit reached", code="COUPON_EXHAUSTED", details={"couponExhausted": True})

    discount = max(compute_discount(coupon.discount_type, coupon.amount, plan_price_minor), 0)
    discounted = max(plan_price_minor - discount, 0)
    if discounted < _min_charge():
        raise ValidationError("Discounted amount must be at least $0.50")

    return CouponQuote(
        coupon=coupon,
        original_minor=plan_price_minor,
        discount_minor=plan_price_minor - discounted,
        discounted_minor=discounted,
    )


def quote_price(plan_price_minor: int, coupon_code: Optional[str] = None) -> PriceQuote:
    """Single pricing path shared by checkout and preview."""
    if not coupon_code or not str(coupon_code).strip():
        return PriceQuote(original_minor=plan_price_minor, discounted_minor=plan_price_minor)
    quote = validate_coupon(coupon_code, plan_price_minor)
    return PriceQuote(
        original_minor=quote.original_minor,
        discounted_minor=quote.discounted_minor,
        coupon_quote=quote,
    )


# ===== Admin payload validation =====

def _parse_date(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")


def normalize_coupon_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate admin coupon input and return model-ready fields."""
    code = Coupon.normalize_code(payload.get("code"))
    if not code:
        raise ValidationError("Coupon code is required")

    discount_type = payload.get("discountType") or DISCOUNT_PERCENT
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError("discountType must be 'percent' or 'amount'")

    try:
        amount = Decimal(str(payload.get("amount")))
    except (InvalidOperation, TypeError):
        raise ValidationError("Amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be a positive number")
    if discount_type == DISCOUNT_PERCENT and amount > 100:
        raise ValidationError("Percent discount cannot exceed 100%")

    max_redemptions = payload.get("maxRedemptions")
    if max_redemptions not in (None, ""):
        try:
            max_redemptions = int(max_redemptions)
        except (TypeError, ValueError):
            raise ValidationError("Max redemptions must be a positive number")
        if max_redemptions <= 0:
            raise ValidationError("Max redemptions must be a positive number")
    else:
        max_redemptions = None

    start_date = _parse_date(payload.get("startDate"))
    end_date = _parse_date(payload.get("endDate"))
    if start_date and end_date and end_date < start_date:
        raise ValidationError("endDate must be after startDate")

    return {
        "code": code,
        "description": payload.get("description"),
        "discount_type": discount_type,
        "amount": amount,
        "max_redemptions": max_redemptions,
        "start_date": start_date,
        "end_date": end_date,
    }
