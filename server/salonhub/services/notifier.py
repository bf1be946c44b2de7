# salonhub/services/notifier.py
"""
Membership email notifications.

Listens to salonhub.signals and queues emails through run_async(), so a slow
or failing mail provider never affects the transition that sent the signal.
Jobs receive the membership id and reload the row in their own context.
"""

from typing import Optional

from flask import Flask, current_app

from salonhub import signals
from salonhub.background_jobs import run_async
from salonhub.extensions import db
from salonhub.models_billing import Membership
from salonhub.services import email_service


def _load(membership_id: int) -> Optional[Membership]:
    membership = db.session.get(Membership, membership_id)
    if membership is None:
        current_app.logger.info(f"Membership {membership_id} gone before notification was sent")
    return membership


# ===== Jobs =====

def send_activated(membership_id: int, amount_paid: Optional[int] = None, currency: Optional[str] = None):
    membership = _load(membership_id)
    if membership:
        email_service.send_membership_activated_email(membership, amount_paid=amount_paid, currency=currency)


def send_payment_failed(membership_id: int, reason: Optional[str] = None, failure_count: int = 1):
    membership = _load(membership_id)
    if membership:
        email_service.send_membership_payment_failed_email(membership, reason=reason, failure_count=failure_count)


def send_canceled(membership_id: int, at_period_end: bool = False):
    membership = _load(membership_id)
    if membership:
        email_service.send_membership_canceled_email(membership, at_period_end=at_period_end)


def send_archived(membership_id: int):
    membership = _load(membership_id)
    if membership:
        email_service.send_membership_archived_email(membership)


# ===== Receivers =====

def on_activated(membership, amount_paid=None, currency=None, **extra):
    run_async(send_activated, membership.id, amount_paid=amount_paid, currency=currency)


def on_payment_failed(membership, reason=None, failure_count=1, **extra):
    run_async(send_payment_failed, membership.id, reason=reason, failure_count=failure_count)


def on_canceled(membership, at_period_end=False, **extra):
    run_async(send_canceled, membership.id, at_period_end=at_period_end)


def on_archived(membership, **extra):
    run_async(send_archived, membership.id)


def init_notifier(app: Flask):
    """Connect email receivers. Receivers are module-level so connecting twice is a no-op."""
    signals.membership_activated.connect(on_activated)
    signals.payment_failed.connect(on_payment_failed)
    signals.membership_canceled.connect(on_canceled)
    signals.membership_archived.connect(on_archived)
    app.logger.debug("Membership notifier connected")
