# salonhub/services/checkout.py
"""
Membership checkout.

create_checkout() builds a Stripe Checkout session for a plan (optionally
discounted by a coupon); preview_checkout() returns the same pricing without
touching Stripe or the database. Both price through coupons.quote_price().
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import current_app

from salonhub.errors import ConfigurationError, NotFoundError, ValidationError
from salonhub.extensions import db
from salonhub.models import User
from salonhub.models_billing import Plan, INTERVALS, from_minor_units
from salonhub.services.coupons import PriceQuote, quote_price
from salonhub.services.membership_service import ensure_membership
from salonhub.services.stripe_service import StripeGateway, ensure_price_for_plan


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


def build_success_url(plan_id) -> str:
    return f"{current_app.config['FRONTEND_URL'].rstrip('/')}/dashboard/membership?status=success&plan={plan_id}"


def build_cancel_url() -> str:
    return f"{current_app.config['FRONTEND_URL'].rstrip('/')}/dashboard/membership?status=cancelled"


def load_active_plan(plan_id) -> Plan:
    if plan_id in (None, ""):
        raise ValidationError("planId is required")
    try:
        plan_id = int(plan_id)
    except (TypeError, ValueError):
        raise NotFoundError("Plan not found or inactive")

    plan = db.session.get(Plan, plan_id)
    if not plan or not plan.is_active:
        raise NotFoundError("Plan not found or inactive")
    if plan.price_minor <= 0:
        raise ConfigurationError("Price must be greater than zero to create Stripe price.")
    return plan


def checkout_metadata(user: User, plan: Plan, quote: PriceQuote) -> Dict[str, str]:
    """
    Pricing context the webhook reconciler reads back on activation.

    Stripe metadata values must be strings.
    """
    metadata = {"userId": str(user.id), "planId": str(plan.id)}
    if quote.coupon_quote:
        coupon = quote.coupon_quote.coupon
        metadata.update({
            "couponId": str(coupon.id),
            "code": coupon.code,
            "discountType": coupon.discount_type,
            "amount": str(coupon.amount),
            "originalAmount": str(quote.original_minor),
            "discountedAmount": str(quote.discounted_minor),
        })
    return metadata


def create_checkout(user: User, plan_id, coupon_code: Optional[str], gateway: StripeGateway) -> CheckoutSession:
    """
    Create a subscription checkout session.

    Args:
        user: Authenticated user
        plan_id: Plan to subscribe to
        coupon_code: Optional coupon typed by the user
        gateway: Payment provider adapter

    Returns:
        CheckoutSession with the session id and redirect url

    Raises:
        NotFoundError: plan missing or inactive
        ValidationError / ConflictError: coupon rejected
        ConfigurationError: plan has no positive price
        ProviderError: Stripe call failed
    """
    plan = load_active_plan(plan_id)

    # Price before provisioning so a rejected coupon never reaches Stripe
    quote = quote_price(plan.price_minor, coupon_code)

    price_id, product_id = ensure_price_for_plan(plan, gateway)
    membership = ensure_membership(user, plan)
    db.session.commit()

    if quote.coupon_quote:
        interval = plan.interval if plan.interval in INTERVALS else "month"
        line_item: Dict[str, Any] = {
            "price_data": {
                "currency": gateway.currency,
                "unit_amount": quote.discounted_minor,
                "recurring": {"interval": interval},
                "product": product_id,
            },
            "quantity": 1,
        }
    else:
        line_item = {"price": price_id, "quantity": 1}

    metadata = checkout_metadata(user, plan, quote)
    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [line_item],
        "success_url": build_success_url(plan.id),
        "cancel_url": build_cancel_url(),
        "metadata": metadata,
        "subscription_data": {"metadata": dict(metadata)},
    }
    if membership.stripe_customer_id:
        params["customer"] = membership.stripe_customer_id
    elif user.email:
        params["customer_email"] = user.email

    session = gateway.create_checkout_session(**params)

    mode = "LIVE" if session["id"].startswith("cs_live_") else "TEST"
    current_app.logger.info(
        f"[CHECKOUT] Created session {session['id'][:20]}... ({mode}) user={user.id} plan={plan.id} "
        f"amount={quote.discounted_minor} coupon={metadata.get('code')}"
    )
    return CheckoutSession(id=session["id"], url=session.get("url"))


def preview_checkout(plan_id, coupon_code: Optional[str] = None) -> Dict[str, Any]:
    """Quote a checkout without creating a session or writing anything."""
    plan = load_active_plan(plan_id)
    quote = quote_price(plan.price_minor, coupon_code)

    result: Dict[str, Any] = {
        "originalPrice": from_minor_units(quote.original_minor),
        "discountedPrice": from_minor_units(quote.discounted_minor),
        "isFree": quote.is_free,
    }
    if quote.coupon_quote:
        coupon = quote.coupon_quote.coupon
        result["coupon"] = {
            "id": coupon.id,
            "code": coupon.code,
            "discountType": coupon.discount_type,
            "amount": float(coupon.amount),
            "discountAmount": from_minor_units(quote.discount_minor),
        }
    return result
