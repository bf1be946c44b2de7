# salonhub/services/membership_service.py
"""
Membership state machine.

Every write to a Membership row goes through one of the transition functions
below. Webhook-driven transitions write absolute values taken from the
provider, so applying the same event twice leaves the row unchanged. The one
relative operation is extend(), which only an admin can trigger.

Each transition:
- records MembershipLog entries
- re-derives the user's role via services.access
- commits
- sends a salonhub.signals event (after commit)
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import or_, select

from salonhub.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from salonhub.extensions import db
from salonhub.models import User
from salonhub.models_audit import AuditAction, MembershipLog
from salonhub.models_billing import (
    Coupon,
    Membership,
    Plan,
    MEMBERSHIP_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_FAILED,
    STATUS_HOLD,
    STATUS_PAST_DUE,
    STATUS_PENDING,
)
from salonhub import signals
from salonhub.monitoring import capture_message
from salonhub.services.access import grant_access, revoke_access, sync_access

DEFAULT_ARCHIVE_REASON = "Archived by admin"


@dataclass
class PaymentConfirmation:
    """
    Everything activate() needs, resolved from the provider by the webhook
    reconciler. Coupon fields come from checkout metadata.
    """
    user_id: int
    plan_id: int
    customer_id: Optional[str]
    subscription_id: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    price_id: Optional[str] = None
    auto_renew: bool = True
    paid_at: Optional[datetime] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    invoice_number: Optional[str] = None
    payment_id: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    coupon_id: Optional[int] = None
    original_amount: Optional[int] = None
    discounted_amount: Optional[int] = None
    event_id: Optional[str] = None


# ===== Helpers =====

def _set_renewal(membership: Membership, auto_renew: bool) -> None:
    """The only place auto_renew / cancel_at_period_end are written."""
    membership.auto_renew = bool(auto_renew)
    membership.cancel_at_period_end = not membership.auto_renew


def _price_snapshot(membership: Membership, original: Optional[int], final: Optional[int]) -> None:
    """Store prices so that final == original - discount and discount >= 0."""
    if final is None:
        final = original
    if original is None:
        original = final
    if original is None:
        return
    discount = max(original - final, 0)
    membership.original_price = original
    membership.discount_amount = discount
    membership.final_price = original - discount


def _clear_failures(membership: Membership) -> None:
    membership.failure_count = 0
    membership.failure_reason = None
    membership.failure_code = None
    membership.last_failed_at = None
    membership.last_failure_event_id = None


def _set_status(membership: Membership, status: str) -> bool:
    """Write status and re-derive the owner's role. Returns True if status changed."""
    changed = membership.status != status
    membership.status = status
    if membership.is_archived:
        revoke_access(membership.user)
    else:
        sync_access(membership.user, status)
    return changed


def _commit(signal=None, membership: Optional[Membership] = None, **context) -> None:
    db.session.commit()
    if signal is not None and membership is not None:
        signal.send(membership, **context)


def get_membership(membership_id) -> Membership:
    membership = db.session.get(Membership, membership_id)
    if not membership:
        raise NotFoundError("Membership not found")
    return membership


def find_by_subscription(subscription_id: Optional[str]) -> Optional[Membership]:
    if not subscription_id:
        return None
    return Membership.query.filter_by(stripe_subscription_id=subscription_id).first()


def find_for_user(user_id) -> Optional[Membership]:
    return Membership.query.filter_by(user_id=user_id).first()


# ===== Transitions =====

def ensure_membership(user: User, plan: Plan) -> Membership:
    """
    Get or create the user's membership and point it at plan.

    A new row starts as pending. Flushes so the row has an id; the caller commits.
    """
    membership = find_for_user(user.id)
    if membership is None:
        membership = Membership(user=user, plan=plan, status=STATUS_PENDING)
        _set_renewal(membership, True)
        db.session.add(membership)
        db.session.flush()
        MembershipLog.record(AuditAction.PURCHASE, f"Checkout started for plan {plan.name}", membership=membership)
        current_app.logger.info(f"[MEMBERSHIP] Created pending membership {membership.id} for user {user.id}")
    elif membership.plan_id != plan.id:
        membership.plan = plan
    return membership


def activate(confirmation: PaymentConfirmation) -> Optional[Membership]:
    """
    Apply a confirmed payment.

    All fields are set from the confirmation, never incremented, so a
    redelivered event converges on the same row. The coupon redemption counter
    only moves when the membership does not already carry the coupon.

    Returns:
        The active membership, or None when the user no longer exists
    """
    user = db.session.get(User, confirmation.user_id) if confirmation.user_id else None
    if user is None:
        current_app.logger.warning(f"[MEMBERSHIP] Activation for unknown user {confirmation.user_id}, skipping")
        return None
    plan = db.session.get(Plan, confirmation.plan_id) if confirmation.plan_id else None
    if plan is None:
        existing = find_for_user(user.id)
        plan = existing.plan if existing else None
    if plan is None:
        raise NotFoundError(f"Plan {confirmation.plan_id} not found for activation")

    membership = ensure_membership(user, plan)
    previous_status = membership.status
    previous_expiry = membership.expiry_date

    membership.start_date = confirmation.period_start
    membership.expiry_date = confirmation.period_end
    membership.next_billing_date = confirmation.period_end
    # Archived rows stay non-renewing until restored
    _set_renewal(membership, confirmation.auto_renew and not membership.is_archived)
    if confirmation.customer_id:
        membership.stripe_customer_id = confirmation.customer_id
    if confirmation.subscription_id:
        membership.stripe_subscription_id = confirmation.subscription_id
    if confirmation.price_id:
        membership.stripe_price_id = confirmation.price_id

    paid_at = confirmation.paid_at or confirmation.period_start
    membership.payment_status = "paid"
    membership.last_payment_date = paid_at
    if confirmation.amount_paid is not None:
        membership.last_payment_amount = confirmation.amount_paid
    if confirmation.currency:
        membership.currency = confirmation.currency
    if confirmation.card_brand or confirmation.card_last4:
        membership.payment_method_brand = confirmation.card_brand
        membership.payment_method_last4 = confirmation.card_last4
    if confirmation.invoice_id:
        membership.invoice_id = confirmation.invoice_id
        membership.invoice_url = confirmation.invoice_url
        membership.invoice_pdf = confirmation.invoice_pdf
        membership.invoice_number = confirmation.invoice_number

    original = confirmation.original_amount if confirmation.original_amount is not None else plan.price_minor
    final = confirmation.amount_paid if confirmation.amount_paid is not None else confirmation.discounted_amount
    _price_snapshot(membership, original, final)

    _apply_coupon(membership, confirmation, paid_at)
    _clear_failures(membership)

    status_changed = _set_status(membership, STATUS_ACTIVE)

    MembershipLog.record(
        AuditAction.PAYMENT_SUCCESS,
        f"Payment received for plan {plan.name}",
        membership=membership,
        event_id=confirmation.event_id,
        payment_id=confirmation.payment_id,
        invoice_id=confirmation.invoice_id,
        amount=confirmation.amount_paid,
        currency=confirmation.currency,
    )

    signal = None
    if status_changed:
        MembershipLog.record(
            AuditAction.ACTIVATION,
            f"Membership activated ({previous_status} -> active)",
            membership=membership,
            event_id=confirmation.event_id,
            payload={"previousStatus": previous_status},
        )
        signal = signals.membership_activated
    elif previous_expiry != membership.expiry_date:
        MembershipLog.record(
            AuditAction.RENEWAL,
            "Membership renewed",
            membership=membership,
            event_id=confirmation.event_id,
            payload={
                "previousExpiry": previous_expiry.isoformat() if previous_expiry else None,
                "expiryDate": membership.expiry_date.isoformat() if membership.expiry_date else None,
            },
        )
        signal = signals.membership_renewed

    current_app.logger.info(
        f"[MEMBERSHIP] Activated membership {membership.id} user={user.id} plan={plan.id} "
        f"{previous_status} -> active, expires {membership.expiry_date}"
    )
    _commit(
        signal,
        membership,
        previous_status=previous_status,
        amount_paid=confirmation.amount_paid,
        currency=confirmation.currency,
    )
    return membership


def _apply_coupon(membership: Membership, confirmation: PaymentConfirmation, applied_at: Optional[datetime]) -> None:
    if not confirmation.coupon_id:
        return
    coupon = db.session.get(Coupon, confirmation.coupon_id)
    if coupon is None:
        current_app.logger.warning(f"[MEMBERSHIP] Coupon {confirmation.coupon_id} from checkout no longer exists")
        return
    if membership.coupon_id == coupon.id:
        return

    # Not atomic: two activations racing for the last slot can both pass
    coupon.used_count = (coupon.used_count or 0) + 1
    membership.coupon_id = coupon.id
    membership.coupon_code = coupon.code
    membership.coupon_discount_type = coupon.discount_type
    membership.coupon_amount = coupon.amount
    membership.coupon_applied_at = applied_at

    MembershipLog.record(
        AuditAction.COUPON_APPLIED,
        f"Coupon {coupon.code} redeemed",
        membership=membership,
        event_id=confirmation.event_id,
        payload={
            "couponId": coupon.id,
            "code": coupon.code,
            "discountType": coupon.discount_type,
            "amount": str(coupon.amount),
            "originalAmount": confirmation.original_amount,
            "discountedAmount": confirmation.discounted_amount,
            "usedCount": coupon.used_count,
        },
    )


def mark_past_due(membership: Membership, reason: str = "Payment past due", event_id: Optional[str] = None) -> Membership:
    previous_status = membership.status
    changed = _set_status(membership, STATUS_PAST_DUE)
    MembershipLog.record(
        AuditAction.STATUS_CHANGE,
        f"Membership past due: {reason}",
        membership=membership,
        event_id=event_id,
        payload={"previousStatus": previous_status, "failureCount": membership.failure_count},
    )
    current_app.logger.info(f"[MEMBERSHIP] Membership {membership.id} {previous_status} -> past_due ({reason})")
    _commit(signals.membership_past_due if changed else None, membership, reason=reason)
    return membership


def mark_failed(membership: Membership, reason: str, event_id: Optional[str] = None) -> Membership:
    """First payment of a pending membership failed."""
    previous_status = membership.status
    _set_status(membership, STATUS_FAILED)
    MembershipLog.record(
        AuditAction.STATUS_CHANGE,
        f"Initial payment failed: {reason}",
        membership=membership,
        event_id=event_id,
        payload={"previousStatus": previous_status},
    )
    _commit()
    return membership


def cancel(membership: Membership, reason: str = "Subscription canceled", event_id: Optional[str] = None) -> Membership:
    """Upstream subscription is gone."""
    previous_status = membership.status
    _set_renewal(membership, False)
    changed = _set_status(membership, STATUS_CANCELED)
    MembershipLog.record(
        AuditAction.CANCELLATION,
        f"Membership canceled: {reason}",
        membership=membership,
        event_id=event_id,
        payload={"previousStatus": previous_status},
    )
    current_app.logger.info(f"[MEMBERSHIP] Membership {membership.id} {previous_status} -> canceled")
    _commit(signals.membership_canceled if changed else None, membership, at_period_end=False, reason=reason)
    return membership


def expire(membership: Membership, actor_id: Optional[int] = None, reason: str = "Membership expired") -> Membership:
    previous_status = membership.status
    _set_renewal(membership, False)
    changed = _set_status(membership, STATUS_EXPIRED)
    MembershipLog.record(
        AuditAction.EXPIRY,
        reason,
        membership=membership,
        actor_id=actor_id,
        payload={"previousStatus": previous_status},
    )
    current_app.logger.info(f"[MEMBERSHIP] Membership {membership.id} {previous_status} -> expired")
    _commit(signals.membership_expired if changed else None, membership, reason=reason)
    return membership


def hold(membership: Membership, actor_id: Optional[int] = None, reason: str = "Placed on hold by admin") -> Membership:
    previous_status = membership.status
    _set_renewal(membership, False)
    _set_status(membership, STATUS_HOLD)
    MembershipLog.record(
        AuditAction.STATUS_CHANGE,
        reason,
        membership=membership,
        actor_id=actor_id,
        payload={"previousStatus": previous_status},
    )
    _commit()
    return membership


def disable_auto_renew(membership: Membership, gateway, actor_id: Optional[int] = None) -> Membership:
    """User asked to stop renewing at the end of the current period."""
    if not membership.stripe_subscription_id:
        raise NotFoundError("Membership not found")

    gateway.update_subscription(membership.stripe_subscription_id, cancel_at_period_end=True)

    _set_renewal(membership, False)
    MembershipLog.record(
        AuditAction.CANCELLATION,
        "Auto-renew disabled by user",
        membership=membership,
        actor_id=actor_id,
    )
    _commit(signals.membership_canceled, membership, at_period_end=True, reason="Auto-renew disabled")
    return membership


def record_refund(
    membership: Membership,
    amount: Optional[int],
    currency: Optional[str],
    payment_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Membership:
    """A charge was refunded. Access is left to the subscription events."""
    membership.payment_status = "refunded"
    MembershipLog.record(
        AuditAction.PAYMENT_REFUNDED,
        "Payment refunded",
        membership=membership,
        event_id=event_id,
        payment_id=payment_id,
        amount=amount,
        currency=currency,
    )
    _commit(signals.payment_refunded, membership, amount=amount, currency=currency)
    return membership


def sync_subscription(
    membership: Membership,
    auto_renew: bool,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
    price_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Membership:
    """Mirror provider-side renewal settings and billing period."""
    _set_renewal(membership, auto_renew and not membership.is_archived)
    if period_start:
        membership.start_date = period_start
    if period_end:
        membership.expiry_date = period_end
        membership.next_billing_date = period_end
    if price_id:
        membership.stripe_price_id = price_id
    MembershipLog.record(
        AuditAction.STATUS_CHANGE,
        "Subscription updated by provider",
        membership=membership,
        event_id=event_id,
        payload={"autoRenew": membership.auto_renew, "status": membership.status},
    )
    _commit()
    return membership


# ===== Admin transitions =====

def archive(
    membership: Membership,
    gateway=None,
    actor_id: Optional[int] = None,
    reason: Optional[str] = None,
    force: bool = False,
) -> Membership:
    """
    Soft-delete a membership.

    Raises:
        ValidationError: already archived
        ConflictError: membership is active and force was not given
    """
    if membership.is_archived:
        raise ValidationError("Membership is already archived")
    if membership.status == STATUS_ACTIVE and not force:
        raise ConflictError(
            "This membership is currently active. Confirm to archive it anyway.",
            code="ARCHIVE_REQUIRES_CONFIRMATION",
            details={"requiresConfirmation": True},
        )

    membership.is_archived = True
    membership.archived_at = datetime.utcnow()
    membership.archived_by_id = actor_id
    membership.archived_reason = (reason or "").strip() or DEFAULT_ARCHIVE_REASON
    _set_renewal(membership, False)
    revoke_access(membership.user)

    MembershipLog.record(
        AuditAction.ARCHIVE,
        f"Membership archived: {membership.archived_reason}",
        membership=membership,
        actor_id=actor_id,
        payload={"status": membership.status, "forced": bool(force)},
    )
    _commit(signals.membership_archived, membership, reason=membership.archived_reason)
    current_app.logger.info(f"[MEMBERSHIP] Membership {membership.id} archived by {actor_id}")

    if membership.stripe_subscription_id and gateway is not None:
        try:
            gateway.cancel_subscription(membership.stripe_subscription_id)
        except ProviderError as e:
            current_app.logger.warning(
                f"[MEMBERSHIP] Could not cancel subscription {membership.stripe_subscription_id} "
                f"for archived membership {membership.id}: {e}"
            )
            capture_message(
                "Archived membership kept a live subscription",
                level="warning",
                membership={"id": membership.id, "subscription": membership.stripe_subscription_id},
            )
    return membership


def restore(membership: Membership, actor_id: Optional[int] = None, restore_to_status: Optional[str] = None) -> Membership:
    if not membership.is_archived:
        raise ValidationError("Membership is not archived")
    status = restore_to_status or membership.status
    if status not in MEMBERSHIP_STATUSES:
        raise ValidationError(f"Invalid status: {status}")

    membership.is_archived = False
    membership.archived_at = None
    membership.archived_by_id = None
    membership.archived_reason = None
    previous_status = membership.status
    membership.status = status
    if status == STATUS_ACTIVE:
        grant_access(membership.user)
    else:
        sync_access(membership.user, status)

    MembershipLog.record(
        AuditAction.RESTORE,
        f"Membership restored as {status}",
        membership=membership,
        actor_id=actor_id,
        payload={"previousStatus": previous_status},
    )
    _commit()
    return membership


def extend(membership: Membership, extra_days, actor_id: Optional[int] = None) -> Membership:
    """
    Push the expiry date out by extra_days.

    Relative by design of the operation: calling it twice extends twice.
    """
    try:
        days = float(extra_days)
    except (TypeError, ValueError):
        raise ValidationError("extraDays must be a positive number")
    if math.isnan(days) or days <= 0:
        raise ValidationError("extraDays must be a positive number")
    if membership.is_archived:
        raise ValidationError("Restore the membership before extending it")

    previous_status = membership.status
    previous_expiry = membership.expiry_date
    membership.expiry_date = (previous_expiry or datetime.utcnow()) + timedelta(days=days)
    _set_renewal(membership, False)
    changed = _set_status(membership, STATUS_ACTIVE)

    MembershipLog.record(
        AuditAction.ADMIN_ACTION,
        f"Membership extended by {extra_days} days",
        membership=membership,
        actor_id=actor_id,
        payload={
            "extraDays": extra_days,
            "previousExpiry": previous_expiry.isoformat() if previous_expiry else None,
            "expiryDate": membership.expiry_date.isoformat(),
        },
    )
    _commit(signals.membership_activated if changed else None, membership, previous_status=previous_status)
    return membership


def _parse_date(value, field: str) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"Invalid {field}")


def admin_update(membership: Membership, updates: Dict[str, Any], actor_id: Optional[int] = None) -> Membership:
    """
    Apply an admin edit.

    Status changes go through the named transitions; autoRenew and
    cancelAtPeriodEnd are collapsed into one renewal flag.
    """
    updates = updates or {}
    previous_status = membership.status

    plan_id = updates.get("planId", updates.get("plan"))
    if plan_id not in (None, ""):
        plan = db.session.get(Plan, plan_id)
        if not plan:
            raise NotFoundError("Plan not found")
        membership.plan = plan

    status = updates.get("status")
    if status and status not in MEMBERSHIP_STATUSES:
        raise ValidationError(f"Invalid status: {status}")

    for field, column in (("startDate", "start_date"), ("expiryDate", "expiry_date"), ("nextBillingDate", "next_billing_date")):
        if updates.get(field):
            setattr(membership, column, _parse_date(updates[field], field))

    if isinstance(updates.get("autoRenew"), bool):
        _set_renewal(membership, updates["autoRenew"])
    elif isinstance(updates.get("cancelAtPeriodEnd"), bool):
        _set_renewal(membership, not updates["cancelAtPeriodEnd"])

    if isinstance(updates.get("metadata"), dict):
        membership.extra = {**(membership.extra or {}), **updates["metadata"]}

    MembershipLog.record(
        AuditAction.ADMIN_ACTION,
        "Membership updated by admin",
        membership=membership,
        actor_id=actor_id,
        payload={k: v for k, v in updates.items() if k != "metadata"},
    )

    if not status or status == previous_status:
        _commit()
        return membership
    if status == STATUS_ACTIVE:
        _set_status(membership, STATUS_ACTIVE)
        if membership.is_archived:
            _set_renewal(membership, False)
        _commit(signals.membership_activated, membership, previous_status=previous_status)
        return membership
    if status == STATUS_EXPIRED:
        return expire(membership, actor_id=actor_id, reason="Membership expired by admin")
    if status == STATUS_CANCELED:
        _set_renewal(membership, False)
        _set_status(membership, STATUS_CANCELED)
        MembershipLog.record(AuditAction.CANCELLATION, "Membership canceled by admin", membership=membership, actor_id=actor_id)
        _commit(signals.membership_canceled, membership, at_period_end=False, reason="Canceled by admin")
        return membership
    if status == STATUS_HOLD:
        return hold(membership, actor_id=actor_id)
    if status == STATUS_PAST_DUE:
        return mark_past_due(membership, reason="Set by admin")

    # pending / failed
    _set_status(membership, status)
    MembershipLog.record(
        AuditAction.STATUS_CHANGE,
        f"Status set to {status} by admin",
        membership=membership,
        actor_id=actor_id,
        payload={"previousStatus": previous_status},
    )
    _commit()
    return membership


# ===== Sweeps =====

def cleanup_orphans(actor_id: Optional[int] = None) -> List[int]:
    """Hard-delete memberships whose user no longer exists. Returns deleted ids."""
    orphans = Membership.query.filter(
        or_(Membership.user_id.is_(None), ~Membership.user_id.in_(select(User.id)))
    ).all()
    if not orphans:
        return []

    ids = [m.id for m in orphans]
    for membership in orphans:
        db.session.delete(membership)
    MembershipLog.record(
        AuditAction.STATUS_CHANGE,
        f"Cleaned up {len(ids)} orphaned membership records",
        actor_id=actor_id,
        payload={"orphanedIds": ids},
    )
    db.session.commit()
    current_app.logger.info(f"[MEMBERSHIP] Deleted {len(ids)} orphaned memberships")
    return ids


def expire_lapsed(now: Optional[datetime] = None) -> List[int]:
    """
    Expire active memberships that will not renew and whose period is over.

    Only rows without a live subscription are touched; subscription-backed
    rows are expired by the provider's own events.
    """
    now = now or datetime.utcnow()
    lapsed = Membership.query.filter(
        Membership.status == STATUS_ACTIVE,
        Membership.auto_renew.is_(False),
        Membership.stripe_subscription_id.is_(None),
        Membership.expiry_date.isnot(None),
        Membership.expiry_date < now,
    ).all()

    expired_ids = []
    for membership in lapsed:
        expire(membership, reason="Membership period ended")
        expired_ids.append(membership.id)
    return expired_ids


def list_memberships(include_archived: bool = False, archived_only: bool = False) -> List[Membership]:
    query = Membership.query.join(User, Membership.user_id == User.id)
    if archived_only:
        query = query.filter(Membership.is_archived.is_(True))
    elif not include_archived:
        query = query.filter(Membership.is_archived.is_(False))
    return query.order_by(Membership.updated_at.desc(), Membership.id.desc()).all()


def detach_coupon(coupon: Coupon) -> int:
    """Drop references to a coupon about to be deleted. The snapshot columns stay; the caller commits."""
    memberships = Membership.query.filter_by(coupon_id=coupon.id).all()
    for membership in memberships:
        membership.coupon_id = None
    return len(memberships)
