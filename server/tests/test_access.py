import pytest

from salonhub.services.access import role_for_status, sync_access


@pytest.mark.parametrize("role, status, expected", [
    ("user", "active", "member"),
    ("member", "active", "member"),
    ("member", "expired", "user"),
    ("member", "canceled", "user"),
    ("member", "past_due", "user"),
    ("member", "hold", "user"),
    ("member", "failed", "user"),
    ("member", "pending", "member"),
    ("user", "expired", "user"),
    ("admin", "active", "admin"),
    ("admin", "expired", "admin"),
    ("manager", "canceled", "manager"),
    ("pro-member", "past_due", "pro-member"),
    ("pro-member", "active", "pro-member"),
])
def test_role_for_status(role, status, expected):
    assert role_for_status(role, status) == expected


def test_sync_access_reports_change(app, make_user):
    user = make_user()
    assert sync_access(user, "active") is True
    assert user.role == "member"
    assert sync_access(user, "active") is False
    assert sync_access(None, "active") is False
