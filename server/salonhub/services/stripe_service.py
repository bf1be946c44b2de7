# salonhub/services/stripe_service.py
"""
Stripe integration for membership billing.

Provides:
- StripeGateway: thin wrapper around an injected stripe.StripeClient that
  returns plain dicts and turns Stripe errors into ProviderError
- Lazy product/price provisioning for membership plans
- Helpers that read billing periods, invoice amounts and card details out of
  provider payloads
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import stripe
from flask import Flask, current_app

from salonhub.errors import ConfigurationError, ProviderError, SignatureError
from salonhub.models_billing import Plan, INTERVALS


def _plain(obj: Any) -> Any:
    """Recursively convert StripeObjects into builtin dicts/lists."""
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {k: _plain(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_plain(v) for v in obj]
    return obj


class StripeGateway:
    """
    Payment provider adapter.

    One instance is built in create_app() and stored on
    app.extensions["payment_gateway"]; services receive it as an argument.
    """

    def __init__(self, client: "stripe.StripeClient", currency: str = "usd", webhook_tolerance: int = 300):
        self.client = client
        # stripe>=12 groups the v1 resources under client.v1
        self._api = getattr(client, "v1", client)
        self.currency = currency
        self.webhook_tolerance = webhook_tolerance

    def _call(self, action: str, fn, *args, **kwargs) -> Dict[str, Any]:
        try:
            return _plain(fn(*args, **kwargs))
        except stripe.StripeError as e:
            current_app.logger.warning(f"[STRIPE] {action} failed: {e}")
            raise ProviderError(f"Payment provider error during {action}: {getattr(e, 'user_message', None) or e}")

    # ---- webhooks ----
    def construct_event(self, payload: bytes, sig_header: Optional[str], secret: str) -> Dict[str, Any]:
        if not sig_header:
            raise SignatureError("Missing Stripe-Signature header")
        try:
            event = self.client.construct_event(payload, sig_header, secret, tolerance=self.webhook_tolerance)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid webhook signature: {e}")
        except ValueError as e:
            raise SignatureError(f"Invalid payload: {e}")
        return _plain(event)

    # ---- subscriptions ----
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscription retrieve", self._api.subscriptions.retrieve, subscription_id)

    def update_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        return self._call("subscription update", self._api.subscriptions.update, subscription_id, params=params)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscription cancel", self._api.subscriptions.cancel, subscription_id)

    # ---- invoices / charges ----
    def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return self._call("invoice retrieve", self._api.invoices.retrieve, invoice_id)

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        return self._call("charge retrieve", self._api.charges.retrieve, charge_id)

    # ---- catalog ----
    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return self._call("price retrieve", self._api.prices.retrieve, price_id)

    def create_price(self, **params) -> Dict[str, Any]:
        return self._call("price create", self._api.prices.create, params=params)

    def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        return self._call("product retrieve", self._api.products.retrieve, product_id)

    def create_product(self, **params) -> Dict[str, Any]:
        return self._call("product create", self._api.products.create, params=params)

    # ---- checkout ----
    def create_checkout_session(self, **params) -> Dict[str, Any]:
        return self._call("checkout session create", self._api.checkout.sessions.create, params=params)


def build_gateway(app: Flask) -> Optional[StripeGateway]:
    """Create the configured gateway, or None when no secret key is set."""
    api_key = app.config.get("STRIPE_SECRET_KEY")
    if not api_key:
        app.logger.warning("STRIPE_SECRET_KEY not configured; membership checkout disabled")
        return None
    if not api_key.startswith(("sk_live_", "sk_test_", "rk_live_", "rk_test_")):
        raise ConfigurationError("STRIPE_SECRET_KEY must start with sk_live_ or sk_test_")

    mode = "LIVE" if "_live_" in api_key else "TEST"
    app.logger.info(f"[STRIPE] Initializing client in {mode} mode")
    return StripeGateway(
        stripe.StripeClient(api_key),
        currency=app.config.get("STRIPE_CURRENCY", "usd"),
        webhook_tolerance=app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
    )


def get_gateway() -> StripeGateway:
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        raise ConfigurationError("Payment provider is not configured")
    return gateway


# ===== Plan catalog provisioning =====

def _looks_like(value: Optional[str], prefix: str) -> bool:
    return bool(value and value.startswith(prefix))


def _plan_interval(plan: Plan) -> str:
    return plan.interval if plan.interval in INTERVALS else "month"


def _price_matches(price: Dict[str, Any], plan: Plan, currency: str) -> bool:
    recurring = price.get("recurring") or {}
    return (
        price.get("active", True)
        and price.get("unit_amount") == plan.price_minor
        and (price.get("currency") or "").lower() == currency.lower()
        and recurring.get("interval") == _plan_interval(plan)
    )


def ensure_price_for_plan(plan: Plan, gateway: StripeGateway) -> Tuple[str, str]:
    """
    Make sure a plan has a usable recurring Stripe price.

    Reuses the stored price only while Stripe still knows it and its amount,
    currency and interval match the plan; otherwise reuses or creates the
    product and creates a new recurring price. New ids are written onto the
    plan (caller commits).

    Returns:
        Tuple of (stripe_price_id, stripe_product_id)
    """
    if _looks_like(plan.stripe_price_id, "price_"):
        try:
            price = gateway.retrieve_price(plan.stripe_price_id)
        except ProviderError:
            current_app.logger.warning(f"Failed to reuse Stripe price {plan.stripe_price_id} for plan {plan.id}")
            price = None
        if price:
            product = price.get("product")
            product_id = product.get("id") if isinstance(product, dict) else product
            if product_id and plan.stripe_product_id != product_id:
                plan.stripe_product_id = product_id
            if _price_matches(price, plan, gateway.currency):
                return price["id"], product_id
            current_app.logger.info(
                f"[STRIPE] Price {price['id']} no longer matches plan {plan.id} "
                f"(amount={price.get('unit_amount')} currency={price.get('currency')}), replacing it"
            )

    product_id = plan.stripe_product_id if _looks_like(plan.stripe_product_id, "prod_") else None
    if product_id:
        try:
            product_id = gateway.retrieve_product(product_id)["id"]
        except ProviderError:
            current_app.logger.warning(f"Failed to reuse Stripe product {product_id} for plan {plan.id}")
            product_id = None

    if not product_id:
        product_id = gateway.create_product(name=plan.name, metadata={"planId": str(plan.id)})["id"]

    if plan.price_minor <= 0:
        raise ConfigurationError("Price must be greater than zero to create Stripe price.")

    interval = _plan_interval(plan)
    price = gateway.create_price(
        currency=gateway.currency,
        unit_amount=plan.price_minor,
        recurring={"interval": interval},
        product=product_id,
    )

    plan.stripe_price_id = price["id"]
    plan.stripe_product_id = product_id
    current_app.logger.info(f"[STRIPE] Provisioned price {price['id']} for plan {plan.id}")
    return price["id"], product_id


# ===== Payload helpers =====

def ts(value: Optional[int]) -> Optional[datetime]:
    """Stripe unix timestamp -> naive UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.utcfromtimestamp(int(value))


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = ((subscription.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period bounds; newer API versions report them per item."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        item = _first_item(subscription)
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return ts(start), ts(end)


def subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def object_id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or an embedded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def invoice_amount(invoice: Dict[str, Any]) -> Optional[int]:
    if isinstance(invoice.get("amount_paid"), int):
        return invoice["amount_paid"]
    if isinstance(invoice.get("amount_due"), int):
        return invoice["amount_due"]
    return None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = object_id(invoice.get("subscription"))
    if sub:
        return sub
    # Newer API versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return object_id(details.get("subscription"))


def card_summary(charge: Dict[str, Any]) -> Dict[str, Optional[str]]:
    card = ((charge.get("payment_method_details") or {}).get("card")) or {}
    return {"brand": card.get("brand"), "last4": card.get("last4")}
