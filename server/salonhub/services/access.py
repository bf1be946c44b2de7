# salonhub/services/access.py
"""Derives a user's role from membership status."""

from typing import Optional

from flask import current_app

from salonhub.models import User, ROLE_MEMBER, ROLE_USER, ELEVATED_ROLES
from salonhub.models_billing import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_FAILED,
    STATUS_HOLD,
    STATUS_PAST_DUE,
)

REVOKING_STATUSES = frozenset({STATUS_EXPIRED, STATUS_CANCELED, STATUS_PAST_DUE, STATUS_HOLD, STATUS_FAILED})


def role_for_status(current_role: str, status: Optional[str]) -> str:
    """
    Pure mapping from (current role, membership status) to the new role.

    active          -> member, unless the role is elevated
    revoking status -> user, only when the role is exactly member
    anything else   -> unchanged
    """
    if current_role in ELEVATED_ROLES:
        return current_role
    if status == STATUS_ACTIVE:
        return ROLE_MEMBER
    if status in REVOKING_STATUSES and current_role == ROLE_MEMBER:
        return ROLE_USER
    return current_role


def sync_access(user: Optional[User], status: Optional[str]) -> bool:
    """
    Apply role_for_status to a user in the current session.

    Returns True when the role changed.
    """
    if user is None:
        return False
    new_role = role_for_status(user.role, status)
    if new_role == user.role:
        return False
    current_app.logger.info(f"[ACCESS] user {user.id} role {user.role} -> {new_role} (membership {status})")
    user.role = new_role
    return True


def grant_access(user: Optional[User]) -> bool:
    return sync_access(user, STATUS_ACTIVE)


def revoke_access(user: Optional[User]) -> bool:
    # Archive revokes regardless of the status kept on the row
    return sync_access(user, STATUS_EXPIRED)
