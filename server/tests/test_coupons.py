import pytest

from salonhub.errors import ConflictError, ValidationError
from salonhub.services.coupons import compute_discount, normalize_coupon_payload, quote_price, validate_coupon


def test_percent_coupon_floors_discount(app, make_coupon):
    make_coupon(code="SAVE20", discount_type="percent", amount="20")
    quote = validate_coupon("save20", 9900)
    assert quote.discount_minor == 1980
    assert quote.discounted_minor == 7920


def test_percent_discount_rounds_down():
    # 33% of 999 cents is 329.67
    assert compute_discount("percent", "33", 999) == 329


def test_amount_coupon_uses_major_units(app, make_coupon):
    make_coupon(code="TENOFF", discount_type="amount", amount="10")
    quote = validate_coupon(" tenoff ", 9900)
    assert quote.discount_minor == 1000
    assert quote.discounted_minor == 8900


def test_full_discount_is_rejected_by_charge_floor(app, make_coupon):
    make_coupon(code="FREE", discount_type="percent", amount="100")
    with pytest.raises(ValidationError, match="at least \\$0.50"):
        validate_coupon("FREE", 9900)


def test_discount_leaving_exactly_fifty_cents_is_allowed(app, make_coupon):
    make_coupon(code="ALMOST", discount_type="amount", amount="98.50")
    assert validate_coupon("ALMOST", 9900).discounted_minor == 50


def test_unknown_and_blank_codes(app):
    with pytest.raises(ValidationError, match="Invalid coupon code"):
        validate_coupon("NOPE", 9900)
    with pytest.raises(ValidationError, match="Coupon code is required"):
        validate_coupon("   ", 9900)


def test_inactive_coupon(app, make_coupon):
    make_coupon(code="OFF", is_active=False)
    with pytest.raises(ValidationError, match="not active"):
        validate_coupon("OFF", 9900)


def test_coupon_window(app, make_coupon, yesterday, tomorrow):
    make_coupon(code="LATER", start_date=tomorrow)
    make_coupon(code="OVER", end_date=yesterday)
    with pytest.raises(ValidationError, match="not yet valid"):
        validate_coupon("LATER", 9900)
    with pytest.raises(ValidationError, match="expired"):
        validate_coupon("OVER", 9900)


def test_exhausted_coupon_is_a_conflict(app, make_coupon):
    make_coupon(code="ONCE", max_redemptions=1, used_count=1)
    with pytest.raises(ConflictError) as exc:
        validate_coupon("ONCE", 9900)
    assert exc.value.code == "COUPON_EXHAUSTED"
    assert exc.value.to_dict()["couponExhausted"] is True


def test_validation_does_not_consume_redemptions(app, make_coupon):
    coupon = make_coupon(code="CAPPED", max_redemptions=2)
    validate_coupon("CAPPED", 9900)
    validate_coupon("CAPPED", 9900)
    validate_coupon("CAPPED", 9900)
    assert coupon.used_count == 0


def test_quote_without_coupon_is_full_price(app):
    quote = quote_price(9900, None)
    assert quote.discounted_minor == 9900
    assert quote.coupon_quote is None
    assert quote.is_free is False


def test_normalize_coupon_payload(app):
    fields = normalize_coupon_payload({"code": " spring ", "discountType": "amount", "amount": "5", "maxRedemptions": "10"})
    assert fields["code"] == "SPRING"
    assert fields["max_redemptions"] == 10
    assert str(fields["amount"]) == "5"


@pytest.mark.parametrize("payload, message", [
    ({"code": "", "amount": 10}, "Coupon code is required"),
    ({"code": "X", "amount": 150, "discountType": "percent"}, "cannot exceed 100%"),
    ({"code": "X", "amount": -1}, "positive number"),
    ({"code": "X", "amount": 10, "discountType": "bogus"}, "discountType"),
    ({"code": "X", "amount": 10, "startDate": "2026-02-01", "endDate": "2026-01-01"}, "endDate"),
])
def test_normalize_coupon_payload_rejects(app, payload, message):
    with pytest.raises(ValidationError, match=message):
        normalize_coupon_payload(payload)


@pytest.mark.parametrize("code, discount_type, amount", [
    ("PERCENT20", "percent", "20"),
    ("AMOUNT10", "amount", "10"),
])
def test_fifty_dollar_plan_discounts(app, make_coupon, code, discount_type, amount):
    make_coupon(code=code, discount_type=discount_type, amount=amount)
    quote = quote_price(5000, code)
    assert quote.discount_minor == 1000
    assert quote.discounted_minor == 4000
