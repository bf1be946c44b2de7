# salonhub/services/webhooks.py
"""
Stripe webhook reconciliation.

Verified events are mapped onto a closed set of BillingEventKind values and
dispatched to exactly one handler each. Payloads are treated as pointers:
handlers re-fetch subscriptions, invoices and charges through the gateway
before calling the membership state machine.

process_event() never raises. A handler failure is rolled back, logged,
reported to Sentry and written to the audit log; the HTTP layer still
acknowledges the delivery so Stripe does not keep retrying it.
"""

import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from salonhub.errors import ProviderError
from salonhub.extensions import db
from salonhub.models_audit import AuditAction, MembershipLog
from salonhub.models_billing import Membership
from salonhub.monitoring import capture_billing_exception
from salonhub.services import failures, membership_service
from salonhub.services.membership_service import PaymentConfirmation
from salonhub.services.stripe_service import (
    StripeGateway,
    card_summary,
    invoice_amount,
    invoice_subscription_id,
    object_id,
    subscription_period,
    subscription_price_id,
    ts,
)


class BillingEventKind(enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    CHARGE_REFUNDED = "charge_refunded"


STRIPE_EVENT_TYPES = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "invoice.paid": BillingEventKind.INVOICE_PAID,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAID,
    "invoice.payment_failed": BillingEventKind.INVOICE_PAYMENT_FAILED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
    "charge.refunded": BillingEventKind.CHARGE_REFUNDED,
}

PAST_DUE_STATUSES = ("past_due", "unpaid")
ENDED_STATUSES = ("canceled", "incomplete_expired")


@dataclass(frozen=True)
class BillingEvent:
    id: str
    type: str
    kind: BillingEventKind
    obj: Dict[str, Any]

    @classmethod
    def from_stripe(cls, event: Dict[str, Any]) -> Optional["BillingEvent"]:
        kind = STRIPE_EVENT_TYPES.get(event.get("type"))
        if kind is None:
            return None
        return cls(
            id=event.get("id"),
            type=event.get("type"),
            kind=kind,
            obj=((event.get("data") or {}).get("object")) or {},
        )


def _int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _best_effort(fetch: Callable[[str], Dict[str, Any]], object_ref, what: str) -> Dict[str, Any]:
    """Supplementary lookups never fail the event."""
    if isinstance(object_ref, dict):
        return object_ref
    if not object_ref:
        return {}
    try:
        return fetch(object_ref)
    except ProviderError as e:
        current_app.logger.warning(f"[WEBHOOK] Unable to retrieve {what} {object_ref}: {e}")
        return {}


def _membership_for_invoice(invoice: Dict[str, Any]) -> Optional[Membership]:
    membership = membership_service.find_by_subscription(invoice_subscription_id(invoice))
    if membership is None:
        customer_id = object_id(invoice.get("customer"))
        if customer_id:
            membership = Membership.query.filter_by(stripe_customer_id=customer_id).first()
    return membership


def _confirmation(
    event: BillingEvent,
    subscription: Dict[str, Any],
    invoice: Dict[str, Any],
    charge: Dict[str, Any],
    metadata: Dict[str, Any],
    membership: Optional[Membership] = None,
) -> PaymentConfirmation:
    period_start, period_end = subscription_period(subscription)
    card = card_summary(charge)
    paid_at = ts(((invoice.get("status_transitions") or {}).get("paid_at")))
    return PaymentConfirmation(
        user_id=membership.user_id if membership else _int(metadata.get("userId")),
        plan_id=membership.plan_id if membership else _int(metadata.get("planId")),
        customer_id=object_id(subscription.get("customer")),
        subscription_id=subscription.get("id"),
        period_start=period_start,
        period_end=period_end,
        price_id=subscription_price_id(subscription),
        auto_renew=not subscription.get("cancel_at_period_end", False),
        paid_at=paid_at,
        amount_paid=invoice_amount(invoice) if invoice else None,
        currency=invoice.get("currency") or subscription.get("currency"),
        invoice_id=invoice.get("id"),
        invoice_url=invoice.get("hosted_invoice_url"),
        invoice_pdf=invoice.get("invoice_pdf"),
        invoice_number=invoice.get("number"),
        payment_id=charge.get("id") or object_id(invoice.get("payment_intent")),
        card_brand=card["brand"],
        card_last4=card["last4"],
        coupon_id=_int(metadata.get("couponId")),
        original_amount=_int(metadata.get("originalAmount")),
        discounted_amount=_int(metadata.get("discountedAmount")),
        event_id=event.id,
    )


# ===== Handlers =====

def handle_checkout_completed(event: BillingEvent, gateway: StripeGateway) -> None:
    session = event.obj
    subscription_id = object_id(session.get("subscription"))
    if session.get("mode") != "subscription" or not subscription_id:
        current_app.logger.info(f"[WEBHOOK] Checkout session {session.get('id')} is not a subscription, ignoring")
        return

    subscription = gateway.retrieve_subscription(subscription_id)
    metadata = session.get("metadata") or subscription.get("metadata") or {}
    if not metadata.get("userId"):
        current_app.logger.warning(f"[WEBHOOK] Checkout session {session.get('id')} has no userId metadata")
        return

    invoice = _best_effort(gateway.retrieve_invoice, session.get("invoice"), "invoice")
    charge = _best_effort(gateway.retrieve_charge, invoice.get("charge"), "charge")
    membership_service.activate(_confirmation(event, subscription, invoice, charge, metadata))


def handle_invoice_paid(event: BillingEvent, gateway: StripeGateway) -> None:
    invoice = _best_effort(gateway.retrieve_invoice, event.obj.get("id"), "invoice") or event.obj
    subscription_id = invoice_subscription_id(invoice) or invoice_subscription_id(event.obj)
    if not subscription_id:
        current_app.logger.info(f"[WEBHOOK] Invoice {invoice.get('id')} has no subscription, ignoring")
        return

    subscription = gateway.retrieve_subscription(subscription_id)
    metadata = subscription.get("metadata") or {}
    membership = membership_service.find_by_subscription(subscription_id)
    if membership is None and not metadata.get("userId"):
        current_app.logger.warning(f"[WEBHOOK] No membership for subscription {subscription_id}, ignoring")
        return

    charge = _best_effort(gateway.retrieve_charge, invoice.get("charge"), "charge")
    membership_service.activate(_confirmation(event, subscription, invoice, charge, metadata, membership))


def handle_invoice_payment_failed(event: BillingEvent, gateway: StripeGateway) -> None:
    invoice = event.obj
    membership = _membership_for_invoice(invoice)
    if membership is None:
        current_app.logger.warning(f"[WEBHOOK] No membership for failed invoice {invoice.get('id')}, ignoring")
        return

    charge = _best_effort(gateway.retrieve_charge, invoice.get("charge"), "charge")
    reason = charge.get("failure_message") or ((invoice.get("last_finalization_error") or {}).get("message"))
    failures.record_payment_failure(
        membership,
        reason=reason or "Payment failed",
        code=charge.get("failure_code"),
        event_id=event.id,
        invoice_id=invoice.get("id"),
        amount=invoice.get("amount_due"),
        currency=invoice.get("currency"),
        failed_at=ts(invoice.get("created")),
    )


def handle_subscription_updated(event: BillingEvent, gateway: StripeGateway) -> None:
    subscription_id = event.obj.get("id")
    membership = membership_service.find_by_subscription(subscription_id)
    if membership is None:
        current_app.logger.info(f"[WEBHOOK] No membership for subscription {subscription_id}, ignoring update")
        return

    subscription = gateway.retrieve_subscription(subscription_id)
    status = subscription.get("status")
    if status in PAST_DUE_STATUSES:
        membership_service.mark_past_due(membership, reason=f"Provider reported {status}", event_id=event.id)
    elif status in ENDED_STATUSES:
        membership_service.cancel(membership, reason=f"Provider reported {status}", event_id=event.id)
    else:
        period_start, period_end = subscription_period(subscription)
        membership_service.sync_subscription(
            membership,
            auto_renew=not subscription.get("cancel_at_period_end", False),
            period_start=period_start,
            period_end=period_end,
            price_id=subscription_price_id(subscription),
            event_id=event.id,
        )


def handle_subscription_deleted(event: BillingEvent, gateway: StripeGateway) -> None:
    membership = membership_service.find_by_subscription(event.obj.get("id"))
    if membership is None:
        current_app.logger.info(f"[WEBHOOK] No membership for deleted subscription {event.obj.get('id')}")
        return
    membership_service.cancel(membership, reason="Subscription deleted", event_id=event.id)


def handle_charge_refunded(event: BillingEvent, gateway: StripeGateway) -> None:
    charge = _best_effort(gateway.retrieve_charge, event.obj.get("id"), "charge") or event.obj
    invoice = _best_effort(gateway.retrieve_invoice, charge.get("invoice"), "invoice")
    membership = _membership_for_invoice(invoice) if invoice else None
    if membership is None:
        customer_id = object_id(charge.get("customer"))
        if customer_id:
            membership = Membership.query.filter_by(stripe_customer_id=customer_id).first()
    if membership is None:
        current_app.logger.info(f"[WEBHOOK] No membership for refunded charge {charge.get('id')}")
        return

    membership_service.record_refund(
        membership,
        amount=charge.get("amount_refunded"),
        currency=charge.get("currency"),
        payment_id=charge.get("id"),
        event_id=event.id,
    )


HANDLERS: Dict[BillingEventKind, Callable[[BillingEvent, StripeGateway], None]] = {
    BillingEventKind.CHECKOUT_COMPLETED: handle_checkout_completed,
    BillingEventKind.INVOICE_PAID: handle_invoice_paid,
    BillingEventKind.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    BillingEventKind.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    BillingEventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    BillingEventKind.CHARGE_REFUNDED: handle_charge_refunded,
}

_unhandled = set(BillingEventKind) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No webhook handler for: {sorted(k.name for k in _unhandled)}")
_unmapped = set(BillingEventKind) - set(STRIPE_EVENT_TYPES.values())
if _unmapped:
    raise RuntimeError(f"No Stripe event type maps to: {sorted(k.name for k in _unmapped)}")


# ===== Dispatch =====

def _record_failure(event: BillingEvent, error: Exception) -> None:
    try:
        MembershipLog.record(
            AuditAction.WEBHOOK_ERROR,
            f"Failed to process {event.type}: {error}",
            event_id=event.id,
            payload={"type": event.type, "error": str(error), "objectId": event.obj.get("id")},
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[WEBHOOK] Could not write audit entry for {event.id}: {e}")


def process_event(raw_event: Dict[str, Any], gateway: StripeGateway) -> Dict[str, Any]:
    """
    Dispatch a verified Stripe event.

    Args:
        raw_event: Event as returned by StripeGateway.construct_event
        gateway: Payment provider adapter

    Returns:
        Acknowledgement body; always contains received=True
    """
    event_type = raw_event.get("type")
    event_id = raw_event.get("id")
    event = BillingEvent.from_stripe(raw_event)

    if event is None:
        current_app.logger.info(f"[WEBHOOK] Unhandled event type: {event_type} ({event_id})")
        return {"received": True, "handled": False, "type": event_type}

    current_app.logger.info(f"[WEBHOOK] Processing {event_type} ({event_id})")
    try:
        HANDLERS[event.kind](event, gateway)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"[WEBHOOK] Error processing {event_type} ({event_id}): {e}", exc_info=True)
        capture_billing_exception(e, event_id=event_id, event_type=event_type)
        _record_failure(event, e)
        return {"received": True, "handled": False, "type": event_type, "error": True}

    return {"received": True, "handled": True, "type": event_type}
