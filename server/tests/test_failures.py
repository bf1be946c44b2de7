from salonhub.models_audit import AuditAction, MembershipLog
from salonhub.models_billing import STATUS_ACTIVE, STATUS_FAILED, STATUS_PAST_DUE
from salonhub.services import membership_service
from salonhub.services.failures import record_payment_failure

from conftest import confirmation


def _active(user, plan):
    return membership_service.activate(confirmation(user, plan))


def test_third_failure_escalates_to_past_due(app, make_user, make_plan):
    user = make_user()
    membership = _active(user, make_plan())
    membership.failure_count = 2

    record_payment_failure(membership, reason="Card declined", code="card_declined", event_id="evt_f3")

    assert membership.failure_count == 3
    assert membership.status == STATUS_PAST_DUE
    assert membership.payment_status == "failed"
    assert membership.failure_reason == "Card declined"
    assert membership.failure_code == "card_declined"
    assert membership.last_failed_at is not None
    assert user.role == "user"


def test_failures_below_limit_keep_access(app, make_user, make_plan):
    user = make_user()
    membership = _active(user, make_plan())

    record_payment_failure(membership, event_id="evt_f1")
    record_payment_failure(membership, event_id="evt_f2")

    assert membership.failure_count == 2
    assert membership.status == STATUS_ACTIVE
    assert user.role == "member"


def test_redelivered_failure_is_not_counted_twice(app, make_user, make_plan):
    membership = _active(make_user(), make_plan())

    record_payment_failure(membership, event_id="evt_same")
    record_payment_failure(membership, event_id="evt_same")

    assert membership.failure_count == 1
    assert MembershipLog.query.filter_by(kind=AuditAction.PAYMENT_FAILED).count() == 2


def test_first_payment_failure_marks_pending_failed(app, make_user, make_plan):
    membership = membership_service.ensure_membership(make_user(), make_plan())

    record_payment_failure(membership, reason="Insufficient funds", event_id="evt_first")

    assert membership.status == STATUS_FAILED
    assert membership.failure_count == 1


def test_successful_payment_resets_failures(app, make_user, make_plan):
    user = make_user()
    plan = make_plan()
    membership = _active(user, plan)
    for n in range(3):
        record_payment_failure(membership, reason="Card declined", event_id=f"evt_f{n}")
    assert membership.status == STATUS_PAST_DUE

    membership_service.activate(confirmation(user, plan, event_id="evt_paid", invoice_id="in_2"))

    assert membership.status == STATUS_ACTIVE
    assert membership.failure_count == 0
    assert membership.failure_reason is None
    assert membership.last_failed_at is None
    assert membership.payment_status == "paid"
    assert user.role == "member"


def test_out_of_order_redelivery_is_not_counted(app, make_user, make_plan):
    user = make_user()
    membership = _active(user, make_plan())

    record_payment_failure(membership, event_id="evt_a")
    record_payment_failure(membership, event_id="evt_b")
    record_payment_failure(membership, event_id="evt_a")

    assert membership.failure_count == 2
    assert membership.last_failure_event_id == "evt_b"
    assert membership.status == STATUS_ACTIVE
    assert user.role == "member"
