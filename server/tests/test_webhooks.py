import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
import stripe

from salonhub.errors import SignatureError
from salonhub.models_audit import AuditAction, MembershipLog
from salonhub.models_billing import Membership, STATUS_ACTIVE, STATUS_CANCELED, STATUS_PAST_DUE
from salonhub.services.stripe_service import StripeGateway
from salonhub.services.webhooks import HANDLERS, STRIPE_EVENT_TYPES, BillingEventKind

from conftest import PERIOD_END, PERIOD_START


def _metadata(user, plan, **extra):
    return {"userId": str(user.id), "planId": str(plan.id), **extra}


def _checkout_session(metadata, subscription="sub_1", invoice="in_1"):
    return {"id": "cs_test_1", "mode": "subscription", "subscription": subscription, "invoice": invoice, "metadata": metadata}


def _complete_checkout(gateway, send_webhook, user, plan, event_id="evt_checkout", **extra_metadata):
    metadata = _metadata(user, plan, **extra_metadata)
    gateway.add_subscription(metadata=metadata)
    gateway.add_invoice(amount_paid=int(extra_metadata.get("discountedAmount", plan.price_minor)))
    gateway.add_charge()
    return send_webhook("checkout.session.completed", _checkout_session(metadata), event_id=event_id)


def test_every_kind_has_a_handler_and_a_stripe_type():
    assert set(HANDLERS) == set(BillingEventKind)
    assert set(STRIPE_EVENT_TYPES.values()) == set(BillingEventKind)


@pytest.mark.parametrize("signature", ["forged", None])
def test_unverified_webhook_is_rejected_without_changes(app, gateway, send_webhook, make_user, make_plan, signature):
    user = make_user()
    plan = make_plan()

    r = send_webhook("checkout.session.completed", _checkout_session(_metadata(user, plan)), signature=signature)

    assert r.status_code == 400
    assert r.get_json()["code"] == "INVALID_SIGNATURE"
    assert gateway.calls == []
    assert Membership.query.count() == 0
    assert MembershipLog.query.count() == 0


def test_missing_webhook_secret(app, send_webhook):
    app.config["STRIPE_WEBHOOK_SECRET"] = ""
    r = send_webhook("invoice.paid", {"id": "in_1"})
    assert r.status_code == 400
    assert r.get_json()["success"] is False


def test_checkout_completed_activates(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan(price="99.00")

    r = _complete_checkout(gateway, send_webhook, user, plan)

    assert r.status_code == 200
    assert r.get_json() == {"received": True, "handled": True, "type": "checkout.session.completed"}
    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.status == STATUS_ACTIVE
    assert membership.start_date == PERIOD_START
    assert membership.expiry_date == PERIOD_END
    assert membership.stripe_customer_id == "cus_1"
    assert membership.stripe_subscription_id == "sub_1"
    assert membership.stripe_price_id == "price_live"
    assert membership.invoice_id == "in_1"
    assert membership.invoice_number == "NO-in_1"
    assert membership.payment_method_brand == "visa"
    assert membership.payment_method_last4 == "4242"
    assert membership.last_payment_amount == 9900
    assert user.role == "member"


def test_redelivered_checkout_redeems_coupon_once(app, gateway, send_webhook, make_user, make_plan, make_coupon):
    user = make_user()
    plan = make_plan(price="99.00")
    coupon = make_coupon(code="SAVE20", max_redemptions=10)
    extra = {"couponId": str(coupon.id), "code": "SAVE20", "originalAmount": "9900", "discountedAmount": "7920"}

    _complete_checkout(gateway, send_webhook, user, plan, **extra)
    _complete_checkout(gateway, send_webhook, user, plan, **extra)

    membership = Membership.query.filter_by(user_id=user.id).one()
    assert coupon.used_count == 1
    assert membership.coupon_code == "SAVE20"
    assert membership.original_price == 9900
    assert membership.final_price == 7920
    assert membership.discount_amount == 1980
    assert MembershipLog.query.filter_by(kind=AuditAction.ACTIVATION).count() == 1


def test_non_subscription_checkout_is_ignored(app, gateway, send_webhook):
    r = send_webhook("checkout.session.completed", {"id": "cs_1", "mode": "payment"})
    assert r.status_code == 200
    assert gateway.calls == []
    assert Membership.query.count() == 0


def test_invoice_paid_renews(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    _complete_checkout(gateway, send_webhook, user, plan)

    next_end = PERIOD_END + timedelta(days=365)
    gateway.add_subscription(metadata=_metadata(user, plan), start=PERIOD_END, end=next_end)
    gateway.add_invoice(invoice_id="in_2", charge_id="ch_2", paid_at=PERIOD_END)
    gateway.add_charge(charge_id="ch_2", invoice_id="in_2")

    r = send_webhook("invoice.paid", {"id": "in_2", "subscription": "sub_1"}, event_id="evt_renew")

    assert r.status_code == 200
    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.expiry_date == next_end
    assert membership.invoice_id == "in_2"
    assert MembershipLog.query.filter_by(kind=AuditAction.RENEWAL).count() == 1


def test_invoice_payment_failed_counts(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    _complete_checkout(gateway, send_webhook, user, plan)
    gateway.add_charge(charge_id="ch_fail", failure_message="Your card was declined.", failure_code="card_declined")
    invoice = {"id": "in_f", "subscription": "sub_1", "customer": "cus_1", "charge": "ch_fail", "amount_due": 9900, "currency": "usd"}

    send_webhook("invoice.payment_failed", invoice, event_id="evt_f1")
    send_webhook("invoice.payment_failed", invoice, event_id="evt_f1")

    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.failure_count == 1
    assert membership.failure_reason == "Your card was declined."
    assert membership.failure_code == "card_declined"
    assert membership.payment_status == "failed"
    assert membership.status == STATUS_ACTIVE


def test_subscription_updated_mirrors_renewal_flag(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    _complete_checkout(gateway, send_webhook, user, plan)
    gateway.subscriptions["sub_1"]["cancel_at_period_end"] = True

    send_webhook("customer.subscription.updated", {"id": "sub_1"}, event_id="evt_upd")

    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.auto_renew is False
    assert membership.cancel_at_period_end is True
    assert membership.status == STATUS_ACTIVE


def test_subscription_reported_past_due(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    _complete_checkout(gateway, send_webhook, user, plan)
    gateway.subscriptions["sub_1"]["status"] = "past_due"

    send_webhook("customer.subscription.updated", {"id": "sub_1"}, event_id="evt_pd")

    assert Membership.query.filter_by(user_id=user.id).one().status == STATUS_PAST_DUE
    assert user.role == "user"


def test_subscription_deleted_cancels(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    _complete_checkout(gateway, send_webhook, user, plan)

    r = send_webhook("customer.subscription.deleted", {"id": "sub_1"}, event_id="evt_del")

    assert r.status_code == 200
    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.status == STATUS_CANCELED
    assert user.role == "user"


def test_charge_refunded_is_recorded(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    _complete_checkout(gateway, send_webhook, user, plan)
    gateway.charges["ch_1"]["amount_refunded"] = 9900

    send_webhook("charge.refunded", {"id": "ch_1"}, event_id="evt_refund")

    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.payment_status == "refunded"
    assert membership.status == STATUS_ACTIVE
    entry = MembershipLog.query.filter_by(kind=AuditAction.PAYMENT_REFUNDED).one()
    assert entry.amount == 9900


def test_unknown_event_type_is_acknowledged(app, gateway, send_webhook):
    r = send_webhook("customer.created", {"id": "cus_9"})
    assert r.status_code == 200
    assert r.get_json() == {"received": True, "handled": False, "type": "customer.created"}
    assert gateway.calls == []


def test_handler_failure_is_acknowledged_and_logged(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    # Subscription is unknown to the provider, so the handler raises
    r = send_webhook("checkout.session.completed", _checkout_session(_metadata(user, plan), subscription="sub_missing"), event_id="evt_bad")

    assert r.status_code == 200
    assert r.get_json()["error"] is True
    assert Membership.query.count() == 0
    entry = MembershipLog.query.filter_by(kind=AuditAction.WEBHOOK_ERROR).one()
    assert entry.stripe_event_id == "evt_bad"
    assert entry.payload["type"] == "checkout.session.completed"


def test_invoice_lookup_failure_does_not_block_activation(app, gateway, send_webhook, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    metadata = _metadata(user, plan)
    gateway.add_subscription(metadata=metadata)
    gateway.failing.add("retrieve_invoice")

    r = send_webhook("checkout.session.completed", _checkout_session(metadata), event_id="evt_partial")

    assert r.get_json()["handled"] is True
    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.status == STATUS_ACTIVE
    assert membership.invoice_id is None


def _stripe_signature(payload: bytes, secret: str, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _raw_event(event_type="customer.created", object_id="cus_9"):
    return json.dumps({
        "id": "evt_raw",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": object_id, "object": "customer"}},
    }).encode()


@pytest.fixture
def stripe_gateway():
    return StripeGateway(stripe.StripeClient("sk_test_dummy"))


def test_stripe_gateway_verifies_raw_body(app, stripe_gateway):
    payload = _raw_event()

    event = stripe_gateway.construct_event(payload, _stripe_signature(payload, "whsec_test"), "whsec_test")

    assert type(event) is dict
    assert event["id"] == "evt_raw"
    assert event["type"] == "customer.created"
    assert event["data"]["object"]["id"] == "cus_9"


def test_stripe_gateway_rejects_altered_body(app, stripe_gateway):
    payload = _raw_event()
    header = _stripe_signature(payload, "whsec_test")
    altered = payload.replace(b"cus_9", b"cus_8")

    with pytest.raises(SignatureError):
        stripe_gateway.construct_event(altered, header, "whsec_test")
    with pytest.raises(SignatureError):
        stripe_gateway.construct_event(payload, header, "whsec_other")
    with pytest.raises(SignatureError):
        stripe_gateway.construct_event(payload, None, "whsec_test")


def test_stripe_gateway_rejects_stale_timestamp(app, stripe_gateway):
    payload = _raw_event()
    header = _stripe_signature(payload, "whsec_test", timestamp=int(time.time()) - 3600)

    with pytest.raises(SignatureError):
        stripe_gateway.construct_event(payload, header, "whsec_test")


def test_webhook_route_checks_signature_over_raw_body(app, client, stripe_gateway):
    app.extensions["payment_gateway"] = stripe_gateway
    payload = _raw_event()
    header = _stripe_signature(payload, "whsec_test")

    r = client.post("/api/memberships/stripe/webhook", data=payload,
                    content_type="application/json", headers={"Stripe-Signature": header})
    assert r.status_code == 200
    assert r.get_json() == {"received": True, "handled": False, "type": "customer.created"}

    r = client.post("/api/memberships/stripe/webhook", data=payload.replace(b"cus_9", b"cus_8"),
                    content_type="application/json", headers={"Stripe-Signature": header})
    assert r.status_code == 400
    assert r.get_json()["code"] == "INVALID_SIGNATURE"
