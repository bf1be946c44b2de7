# salonhub/signals.py
"""
Membership domain events.

The state machine sends these after a transition has been applied to the
session; receivers (the email notifier, monitoring) must not mutate billing
state. Every signal is sent with the Membership as sender plus keyword
context.
"""

from blinker import Namespace

_membership_signals = Namespace()

membership_activated = _membership_signals.signal("membership-activated")
membership_renewed = _membership_signals.signal("membership-renewed")
membership_past_due = _membership_signals.signal("membership-past-due")
membership_canceled = _membership_signals.signal("membership-canceled")
membership_expired = _membership_signals.signal("membership-expired")
membership_archived = _membership_signals.signal("membership-archived")
payment_failed = _membership_signals.signal("payment-failed")
payment_refunded = _membership_signals.signal("payment-refunded")
