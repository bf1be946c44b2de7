# salonhub/services/failures.py
"""
Failed payment tracking.

The counter is reset by membership_service.activate() on the next successful
payment. Escalation to past_due is local and does not wait for the provider
to report the subscription as past due.
"""

from datetime import datetime
from typing import Optional

from flask import current_app

from salonhub.extensions import db
from salonhub.models_audit import AuditAction, MembershipLog
from salonhub.models_billing import Membership, STATUS_ACTIVE, STATUS_PENDING
from salonhub import signals
from salonhub.services import membership_service

FAILED_PAYMENT_LIMIT = 3


def _limit() -> int:
    return int(current_app.config.get("FAILED_PAYMENT_LIMIT", FAILED_PAYMENT_LIMIT))


def _already_counted(membership: Membership, event_id: Optional[str]) -> bool:
    """A failure event is counted once, whatever order redeliveries arrive in."""
    if event_id is None:
        return False
    if event_id == membership.last_failure_event_id:
        return True
    seen = MembershipLog.query.filter_by(
        kind=AuditAction.PAYMENT_FAILED,
        user_id=membership.user_id,
        stripe_event_id=event_id,
    ).exists()
    return db.session.query(seen).scalar()


def record_payment_failure(
    membership: Membership,
    reason: Optional[str] = None,
    code: Optional[str] = None,
    event_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    failed_at: Optional[datetime] = None,
) -> Membership:
    """
    Count one failed payment against a membership.

    Args:
        membership: Membership the failed invoice belongs to
        reason: Provider decline message
        code: Provider decline code
        event_id: Webhook event id; a redelivered event is never counted again
        invoice_id: Failed invoice
        amount: Amount that failed, minor units
        failed_at: When the attempt failed (defaults to now)

    Returns:
        The updated membership
    """
    reason = reason or "Payment failed"
    duplicate = _already_counted(membership, event_id)

    if not duplicate:
        membership.failure_count = (membership.failure_count or 0) + 1
        membership.last_failure_event_id = event_id
        membership.last_failed_at = failed_at or datetime.utcnow()
    membership.failure_reason = reason[:255]
    membership.failure_code = code
    membership.payment_status = "failed"

    MembershipLog.record(
        AuditAction.PAYMENT_FAILED,
        f"Payment failed: {reason}",
        membership=membership,
        event_id=event_id,
        invoice_id=invoice_id,
        amount=amount,
        currency=currency,
        payload={"failureCount": membership.failure_count, "code": code, "duplicate": duplicate},
    )
    db.session.commit()

    current_app.logger.warning(
        f"[MEMBERSHIP] Payment failure #{membership.failure_count} for membership {membership.id} "
        f"(user {membership.user_id}): {reason}"
    )

    if duplicate:
        return membership

    signals.payment_failed.send(
        membership,
        reason=reason,
        failure_count=membership.failure_count,
        amount=amount,
        currency=currency,
    )

    if membership.status == STATUS_PENDING:
        return membership_service.mark_failed(membership, reason, event_id=event_id)
    if membership.status == STATUS_ACTIVE and membership.failure_count >= _limit():
        return membership_service.mark_past_due(
            membership,
            reason=f"{membership.failure_count} consecutive failed payments",
            event_id=event_id,
        )
    return membership
