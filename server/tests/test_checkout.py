from decimal import Decimal

import pytest

from salonhub.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from salonhub.models_audit import AuditAction, MembershipLog
from salonhub.models_billing import Membership, STATUS_PENDING
from salonhub.services.checkout import create_checkout, preview_checkout
from salonhub.services.stripe_service import ensure_price_for_plan


def test_checkout_without_coupon_uses_plan_price(app, gateway, make_user, make_plan):
    user = make_user()
    plan = make_plan(price="99.00")

    session = create_checkout(user, plan.id, None, gateway)

    assert session.id.startswith("cs_test_")
    assert session.url
    (_, _, params), = gateway.called("create_checkout_session")
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": plan.stripe_price_id, "quantity": 1}]
    assert params["metadata"] == {"userId": str(user.id), "planId": str(plan.id)}
    assert params["subscription_data"]["metadata"] == params["metadata"]
    assert params["customer_email"] == user.email
    assert params["success_url"] == f"http://localhost:5173/dashboard/membership?status=success&plan={plan.id}"
    assert params["cancel_url"] == "http://localhost:5173/dashboard/membership?status=cancelled"


def test_checkout_provisions_product_and_price_once(app, gateway, make_user, make_plan):
    user = make_user()
    plan = make_plan(price="99.00", interval="year")

    create_checkout(user, plan.id, None, gateway)
    create_checkout(user, plan.id, None, gateway)

    (_, _, product_params), = gateway.called("create_product")
    assert product_params["name"] == plan.name
    assert product_params["metadata"] == {"planId": str(plan.id)}
    (_, _, price_params), = gateway.called("create_price")
    assert price_params["unit_amount"] == 9900
    assert price_params["recurring"] == {"interval": "year"}
    assert plan.stripe_price_id.startswith("price_")
    assert plan.stripe_product_id.startswith("prod_")


def test_checkout_with_coupon_prices_inline(app, gateway, make_user, make_plan, make_coupon):
    user = make_user()
    plan = make_plan(price="99.00")
    coupon = make_coupon(code="SAVE20", discount_type="percent", amount="20")

    create_checkout(user, plan.id, "save20", gateway)

    (_, _, params), = gateway.called("create_checkout_session")
    line_item = params["line_items"][0]
    assert line_item["price_data"]["unit_amount"] == 7920
    assert line_item["price_data"]["product"] == plan.stripe_product_id
    assert line_item["price_data"]["recurring"] == {"interval": "year"}
    metadata = params["metadata"]
    assert metadata["couponId"] == str(coupon.id)
    assert metadata["code"] == "SAVE20"
    assert metadata["discountType"] == "percent"
    assert Decimal(metadata["amount"]) == 20
    assert metadata["originalAmount"] == "9900"
    assert metadata["discountedAmount"] == "7920"
    # Redemption only counts on confirmed payment
    assert coupon.used_count == 0


def test_checkout_creates_pending_membership(app, gateway, make_user, make_plan):
    user = make_user()
    plan = make_plan()

    create_checkout(user, plan.id, None, gateway)

    membership = Membership.query.filter_by(user_id=user.id).one()
    assert membership.status == STATUS_PENDING
    assert MembershipLog.query.filter_by(kind=AuditAction.PURCHASE).count() == 1


def test_rejected_coupon_never_reaches_stripe(app, gateway, make_user, make_plan, make_coupon):
    user = make_user()
    plan = make_plan()
    make_coupon(code="ONCE", max_redemptions=1, used_count=1)

    with pytest.raises(ConflictError):
        create_checkout(user, plan.id, "ONCE", gateway)

    assert gateway.calls == []
    assert Membership.query.count() == 0


def test_checkout_plan_errors(app, gateway, make_user, make_plan):
    user = make_user()
    inactive = make_plan(is_active=False)
    free = make_plan(name="Free", price="0")

    with pytest.raises(ValidationError, match="planId is required"):
        create_checkout(user, None, None, gateway)
    with pytest.raises(NotFoundError):
        create_checkout(user, 999, None, gateway)
    with pytest.raises(NotFoundError):
        create_checkout(user, inactive.id, None, gateway)
    with pytest.raises(ConfigurationError, match="greater than zero"):
        create_checkout(user, free.id, None, gateway)


def test_stale_price_id_is_replaced(app, gateway, make_plan):
    plan = make_plan(price="49.00", interval="month")
    plan.stripe_price_id = "price_gone"

    price_id, product_id = ensure_price_for_plan(plan, gateway)

    assert price_id != "price_gone"
    assert gateway.called("retrieve_price")
    assert gateway.prices[price_id]["product"] == product_id
    assert gateway.prices[price_id]["recurring"] == {"interval": "month"}


def test_matching_stored_price_is_reused(app, gateway, make_plan):
    plan = make_plan(price="49.00", interval="month")
    gateway.prices["price_kept"] = {
        "id": "price_kept", "product": "prod_kept", "currency": "usd",
        "unit_amount": 4900, "recurring": {"interval": "month"}, "active": True,
    }
    plan.stripe_price_id = "price_kept"

    assert ensure_price_for_plan(plan, gateway) == ("price_kept", "prod_kept")
    assert not gateway.called("create_price")


@pytest.mark.parametrize("stored", [
    {"currency": "eur", "unit_amount": 4900, "recurring": {"interval": "month"}},
    {"currency": "usd", "unit_amount": 3900, "recurring": {"interval": "month"}},
    {"currency": "usd", "unit_amount": 4900, "recurring": {"interval": "year"}},
])
def test_mismatched_stored_price_is_replaced(app, gateway, make_plan, stored):
    plan = make_plan(price="49.00", interval="month")
    gateway.products["prod_kept"] = {"id": "prod_kept", "name": plan.name}
    gateway.prices["price_old"] = {"id": "price_old", "product": "prod_kept", **stored}
    plan.stripe_price_id = "price_old"

    price_id, product_id = ensure_price_for_plan(plan, gateway)

    assert price_id != "price_old"
    assert product_id == "prod_kept"
    assert not gateway.called("create_product")
    (_, _, params), = gateway.called("create_price")
    assert params["currency"] == "usd"
    assert params["unit_amount"] == 4900
    assert params["recurring"] == {"interval": "month"}
    assert plan.stripe_price_id == price_id


def test_preview_matches_checkout_pricing(app, gateway, make_user, make_plan, make_coupon):
    user = make_user()
    plan = make_plan(price="99.00")
    make_coupon(code="TENOFF", discount_type="amount", amount="10")

    preview = preview_checkout(plan.id, "TENOFF")
    create_checkout(user, plan.id, "TENOFF", gateway)

    (_, _, params), = gateway.called("create_checkout_session")
    assert preview["originalPrice"] == 99.0
    assert preview["discountedPrice"] == 89.0
    assert preview["isFree"] is False
    assert preview["coupon"]["code"] == "TENOFF"
    assert preview["coupon"]["discountAmount"] == 10.0
    assert params["line_items"][0]["price_data"]["unit_amount"] == 8900


def test_preview_has_no_side_effects(app, gateway, make_plan, make_coupon):
    plan = make_plan()
    coupon = make_coupon(code="SAVE20", max_redemptions=5)

    preview_checkout(plan.id, "SAVE20")

    assert gateway.calls == []
    assert plan.stripe_price_id is None
    assert coupon.used_count == 0
    assert Membership.query.count() == 0


def test_full_discount_rejected_in_preview_and_checkout(app, gateway, make_user, make_plan, make_coupon):
    user = make_user()
    plan = make_plan()
    make_coupon(code="FREE", amount="100")

    with pytest.raises(ValidationError, match="at least"):
        preview_checkout(plan.id, "FREE")
    with pytest.raises(ValidationError, match="at least"):
        create_checkout(user, plan.id, "FREE", gateway)
