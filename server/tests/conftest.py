import copy
import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from salonhub import create_app
from salonhub.config import TestConfig
from salonhub.errors import ProviderError, SignatureError
from salonhub.extensions import db
from salonhub.models import User
from salonhub.models_billing import Coupon, Plan
from salonhub.services.membership_service import PaymentConfirmation

PASSWORD = "Correct-Horse-9"

PERIOD_START = datetime(2026, 1, 1)
PERIOD_END = datetime(2027, 1, 1)


def unix(value: datetime) -> int:
    return int((value - datetime(1970, 1, 1)).total_seconds())


def confirmation(user, plan, **overrides):
    fields = dict(
        user_id=user.id,
        plan_id=plan.id,
        customer_id="cus_1",
        subscription_id="sub_1",
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        price_id="price_1",
        amount_paid=plan.price_minor,
        currency="usd",
        invoice_id="in_1",
        event_id="evt_1",
    )
    fields.update(overrides)
    return PaymentConfirmation(**fields)


class FakeGateway:
    """In-memory stand-in for StripeGateway. Records every call."""

    currency = "usd"

    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.invoices = {}
        self.charges = {}
        self.prices = {}
        self.products = {}
        self.failing = set()
        self._seq = 0

    def _next_id(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _enter(self, _method, *args, **kwargs):
        self.calls.append((_method, args, kwargs))
        if _method in self.failing:
            raise ProviderError(f"{_method} failed")

    def _lookup(self, store, key, what):
        if key not in store:
            raise ProviderError(f"No such {what}: {key}")
        return copy.deepcopy(store[key])

    def called(self, method):
        return [c for c in self.calls if c[0] == method]

    def construct_event(self, payload, sig_header, secret):
        if sig_header != "valid":
            raise SignatureError("Invalid webhook signature")
        return json.loads(payload)

    def retrieve_subscription(self, subscription_id):
        self._enter("retrieve_subscription", subscription_id)
        return self._lookup(self.subscriptions, subscription_id, "subscription")

    def update_subscription(self, subscription_id, **params):
        self._enter("update_subscription", subscription_id, **params)
        sub = self.subscriptions.setdefault(subscription_id, {"id": subscription_id})
        sub.update(params)
        return copy.deepcopy(sub)

    def cancel_subscription(self, subscription_id):
        self._enter("cancel_subscription", subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    def retrieve_invoice(self, invoice_id):
        self._enter("retrieve_invoice", invoice_id)
        return self._lookup(self.invoices, invoice_id, "invoice")

    def retrieve_charge(self, charge_id):
        self._enter("retrieve_charge", charge_id)
        return self._lookup(self.charges, charge_id, "charge")

    def retrieve_price(self, price_id):
        self._enter("retrieve_price", price_id)
        return self._lookup(self.prices, price_id, "price")

    def create_price(self, **params):
        self._enter("create_price", **params)
        price = {"id": self._next_id("price"), **params}
        self.prices[price["id"]] = price
        return copy.deepcopy(price)

    def retrieve_product(self, product_id):
        self._enter("retrieve_product", product_id)
        return self._lookup(self.products, product_id, "product")

    def create_product(self, **params):
        self._enter("create_product", **params)
        product = {"id": self._next_id("prod"), **params}
        self.products[product["id"]] = product
        return copy.deepcopy(product)

    def create_checkout_session(self, **params):
        self._enter("create_checkout_session", **params)
        session_id = self._next_id("cs_test")
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    # ---- canned provider objects ----
    def add_subscription(self, subscription_id="sub_1", customer="cus_1", metadata=None,
                         status="active", cancel_at_period_end=False,
                         start=PERIOD_START, end=PERIOD_END, price_id="price_live"):
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": unix(start),
            "current_period_end": unix(end),
            "metadata": metadata or {},
            "items": {"data": [{"price": {"id": price_id}}]},
        }
        return self.subscriptions[subscription_id]

    def add_invoice(self, invoice_id="in_1", subscription_id="sub_1", customer="cus_1",
                    amount_paid=9900, charge_id="ch_1", paid_at=PERIOD_START):
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "subscription": subscription_id,
            "customer": customer,
            "amount_paid": amount_paid,
            "amount_due": amount_paid,
            "currency": "usd",
            "charge": charge_id,
            "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
            "invoice_pdf": f"https://invoice.stripe.test/{invoice_id}.pdf",
            "number": f"NO-{invoice_id}",
            "status_transitions": {"paid_at": unix(paid_at)},
            "created": unix(paid_at),
        }
        return self.invoices[invoice_id]

    def add_charge(self, charge_id="ch_1", invoice_id="in_1", customer="cus_1",
                   failure_message=None, failure_code=None, amount_refunded=0):
        self.charges[charge_id] = {
            "id": charge_id,
            "invoice": invoice_id,
            "customer": customer,
            "currency": "usd",
            "failure_message": failure_message,
            "failure_code": failure_code,
            "amount_refunded": amount_refunded,
            "payment_method_details": {"card": {"brand": "visa", "last4": "4242"}},
        }
        return self.charges[charge_id]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(gateway):
    app = create_app(TestConfig)
    app.extensions["payment_gateway"] = gateway
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(role="user", email=None, name="Member"):
        counter["n"] += 1
        user = User(name=name, email=email or f"user{counter['n']}@example.com", role=role)
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_plan(app):
    def _make(name="Annual", price="99.00", interval="year", is_active=True):
        plan = Plan(name=name, price=Decimal(price), interval=interval, is_active=is_active)
        db.session.add(plan)
        db.session.commit()
        return plan

    return _make


@pytest.fixture
def make_coupon(app):
    def _make(code="SAVE20", discount_type="percent", amount="20", max_redemptions=None,
              used_count=0, is_active=True, start_date=None, end_date=None):
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            amount=Decimal(amount),
            max_redemptions=max_redemptions,
            used_count=used_count,
            is_active=is_active,
            start_date=start_date,
            end_date=end_date,
        )
        db.session.add(coupon)
        db.session.commit()
        return coupon

    return _make


@pytest.fixture
def login(client):
    def _login(user):
        r = client.post("/api/auth/login", json={"email": user.email, "password": PASSWORD})
        assert r.status_code == 200, r.get_json()
        return r

    return _login


@pytest.fixture
def send_webhook(client):
    def _send(event_type, obj, event_id="evt_1", signature="valid"):
        body = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})
        headers = {"Stripe-Signature": signature} if signature else {}
        return client.post(
            "/api/memberships/stripe/webhook",
            data=body,
            content_type="application/json",
            headers=headers,
        )

    return _send


@pytest.fixture
def yesterday():
    return datetime.utcnow() - timedelta(days=1)


@pytest.fixture
def tomorrow():
    return datetime.utcnow() + timedelta(days=1)
