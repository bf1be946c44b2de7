# salonhub/models_audit.py
"""
Membership audit log.

Append-only record of every membership transition:
- Activations, renewals, expiries, cancellations
- Coupon redemptions
- Payment successes, failures and refunds
- Admin actions (updates, extensions, archive/restore, plan edits)

Used to reconstruct history for support and disputes. Nothing in the
application reads it to make an authorization decision.
"""

from typing import Any, Dict, Optional

from sqlalchemy import func, Index

from salonhub.extensions import db


class AuditAction:
    """Constants for membership log event kinds."""

    PURCHASE = "purchase"
    ACTIVATION = "activation"
    RENEWAL = "renewal"
    EXPIRY = "expiry"
    CANCELLATION = "cancellation"
    STATUS_CHANGE = "status_change"
    COUPON_APPLIED = "coupon_applied"

    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"

    ADMIN_ACTION = "admin_action"
    PLAN_EDIT = "plan_edit"
    ARCHIVE = "archive"
    RESTORE = "restore"
    WEBHOOK_ERROR = "webhook_error"


class MembershipLog(db.Model):
    """
    One audit entry. Rows are inserted through MembershipLog.record() and are
    never updated or deleted in normal operation.
    """
    __tablename__ = "membership_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("membership_plans.id", ondelete="SET NULL"), nullable=True)
    membership_id = db.Column(db.Integer, nullable=True, index=True)
    # If null, it was a system/webhook action
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    kind = db.Column(db.String(32), nullable=False, index=True)
    message = db.Column(db.String(500), nullable=False)
    payload = db.Column(db.JSON, nullable=True)

    stripe_event_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_payment_id = db.Column(db.String(64), nullable=True)
    stripe_invoice_id = db.Column(db.String(64), nullable=True)
    amount = db.Column(db.Integer, nullable=True)  # minor units
    currency = db.Column(db.String(8), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), index=True)

    __table_args__ = (
        Index("idx_membership_log_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<MembershipLog {self.kind} user={self.user_id} at {self.created_at}>"

    @classmethod
    def record(
        cls,
        kind: str,
        message: str,
        membership=None,
        user_id: Optional[int] = None,
        plan_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> "MembershipLog":
        """
        Append an audit entry to the current session.

        The caller owns the transaction, so the entry commits (or rolls back)
        together with the transition it describes.

        Args:
            kind: One of the AuditAction constants
            message: Human readable summary
            membership: Membership the entry is about (fills user/plan/membership refs)
            actor_id: Admin or user that triggered the change (None for webhooks)
            payload: Arbitrary structured context

        Returns:
            The pending MembershipLog instance
        """
        if membership is not None:
            user_id = user_id if user_id is not None else membership.user_id
            plan_id = plan_id if plan_id is not None else membership.plan_id

        entry = cls(
            kind=kind,
            message=message[:500],
            user_id=user_id,
            plan_id=plan_id,
            membership_id=membership.id if membership is not None else None,
            actor_id=actor_id,
            payload=payload,
            stripe_event_id=event_id,
            stripe_payment_id=payment_id,
            stripe_invoice_id=invoice_id,
            amount=amount,
            currency=currency,
        )
        db.session.add(entry)
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "planId": self.plan_id,
            "membershipId": self.membership_id,
            "actorId": self.actor_id,
            "type": self.kind,
            "message": self.message,
            "data": self.payload,
            "stripeEventId": self.stripe_event_id,
            "stripePaymentId": self.stripe_payment_id,
            "stripeInvoiceId": self.stripe_invoice_id,
            "amount": self.amount,
            "currency": self.currency,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def get_membership_history(user_id: int, limit: int = 50, kind_filter: Optional[str] = None):
    """
    Get recent log entries for a user.

    Args:
        user_id: User ID
        limit: Maximum number of entries to return
        kind_filter: Optional event kind to filter by (e.g., 'payment_failed')

    Returns:
        List of MembershipLog instances, newest first
    """
    query = MembershipLog.query.filter_by(user_id=user_id)

    if kind_filter:
        query = query.filter(MembershipLog.kind == kind_filter)

    return query.order_by(MembershipLog.created_at.desc(), MembershipLog.id.desc()).limit(limit).all()


def get_recent_logs(limit: int = 100, kind_filter: Optional[str] = None):
    query = MembershipLog.query
    if kind_filter:
        query = query.filter(MembershipLog.kind == kind_filter)
    return query.order_by(MembershipLog.created_at.desc(), MembershipLog.id.desc()).limit(limit).all()
