# salonhub/models_billing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy import Index

from salonhub.extensions import db


# Membership statuses
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"
STATUS_HOLD = "hold"
STATUS_FAILED = "failed"

MEMBERSHIP_STATUSES = (
    STATUS_PENDING,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_HOLD,
    STATUS_FAILED,
)

INTERVALS = ("month", "year")

DISCOUNT_PERCENT = "percent"
DISCOUNT_AMOUNT = "amount"
DISCOUNT_TYPES = (DISCOUNT_PERCENT, DISCOUNT_AMOUNT)


def to_minor_units(value) -> int:
    """Major currency units (Decimal/str/float) -> integer cents, half-up."""
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Optional[int]) -> Optional[float]:
    if value is None:
        return None
    return float(Decimal(value) / 100)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Plan(db.Model):
    __tablename__ = "membership_plans"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False)  # major units
    interval = db.Column(db.String(8), nullable=False, default="year")
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    stripe_price_id = db.Column(db.String(64), nullable=True)
    stripe_product_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def price_minor(self) -> int:
        return to_minor_units(self.price or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": float(self.price) if self.price is not None else None,
            "interval": self.interval,
            "isActive": self.is_active,
            "stripePriceId": self.stripe_price_id,
            "stripeProductId": self.stripe_product_id,
        }

    def __repr__(self) -> str:
        return f"<Plan id={self.id} name={self.name!r} price={self.price} interval={self.interval}>"


class Coupon(db.Model):
    __tablename__ = "membership_coupons"
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), unique=True, nullable=False)  # stored trimmed + upper-cased
    description = db.Column(db.String(255), nullable=True)
    discount_type = db.Column(db.String(16), nullable=False, default=DISCOUNT_PERCENT)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    max_redemptions = db.Column(db.Integer, nullable=True)
    used_count = db.Column(db.Integer, nullable=False, default=0)
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_coupon_active_window", "is_active", "start_date", "end_date"),
    )

    @staticmethod
    def normalize_code(code: Optional[str]) -> str:
        return (code or "").strip().upper()

    @property
    def is_exhausted(self) -> bool:
        return self.max_redemptions is not None and (self.used_count or 0) >= self.max_redemptions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discountType": self.discount_type,
            "amount": float(self.amount) if self.amount is not None else None,
            "maxRedemptions": self.max_redemptions,
            "usedCount": self.used_count,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "isActive": self.is_active,
        }


class Membership(db.Model):
    """
    One row per user. Columns are only written by the transition functions in
    salonhub.services.membership_service.
    """
    __tablename__ = "memberships"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), unique=True, nullable=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("membership_plans.id"), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    start_date = db.Column(db.DateTime, nullable=True)
    expiry_date = db.Column(db.DateTime, nullable=True)
    next_billing_date = db.Column(db.DateTime, nullable=True)
    auto_renew = db.Column(db.Boolean, nullable=False, default=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_price_id = db.Column(db.String(64), nullable=True)

    # Coupon snapshot
    coupon_id = db.Column(db.Integer, db.ForeignKey("membership_coupons.id", ondelete="SET NULL"), nullable=True)
    coupon_code = db.Column(db.String(64), nullable=True)
    coupon_discount_type = db.Column(db.String(16), nullable=True)
    coupon_amount = db.Column(db.Numeric(10, 2), nullable=True)
    coupon_applied_at = db.Column(db.DateTime, nullable=True)

    # Payment snapshot (amounts in minor units)
    payment_status = db.Column(db.String(16), nullable=True)  # paid|failed|refunded
    last_payment_date = db.Column(db.DateTime, nullable=True)
    last_payment_amount = db.Column(db.Integer, nullable=True)
    original_price = db.Column(db.Integer, nullable=True)
    final_price = db.Column(db.Integer, nullable=True)
    discount_amount = db.Column(db.Integer, nullable=True)
    payment_method_brand = db.Column(db.String(32), nullable=True)
    payment_method_last4 = db.Column(db.String(4), nullable=True)
    currency = db.Column(db.String(8), nullable=True)

    # Invoice snapshot
    invoice_id = db.Column(db.String(64), nullable=True)
    invoice_url = db.Column(db.String(512), nullable=True)
    invoice_pdf = db.Column(db.String(512), nullable=True)
    invoice_number = db.Column(db.String(64), nullable=True)

    # Failure snapshot
    failure_reason = db.Column(db.String(255), nullable=True)
    failure_code = db.Column(db.String(64), nullable=True)
    last_failed_at = db.Column(db.DateTime, nullable=True)
    failure_count = db.Column(db.Integer, nullable=False, default=0)
    last_failure_event_id = db.Column(db.String(64), nullable=True)

    # Archive (soft delete)
    is_archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    archived_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    archived_reason = db.Column(db.String(255), nullable=True)

    extra = db.Column(db.JSON, nullable=True)  # admin notes

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", back_populates="membership", foreign_keys=[user_id])
    plan = db.relationship("Plan", lazy="joined")
    coupon = db.relationship("Coupon")
    archived_by = db.relationship("User", foreign_keys=[archived_by_id])

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE and not self.is_archived

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user": self.user.to_summary() if self.user else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "status": self.status,
            "isActive": self.is_active,
            "startDate": _iso(self.start_date),
            "expiryDate": _iso(self.expiry_date),
            "nextBillingDate": _iso(self.next_billing_date),
            "autoRenew": self.auto_renew,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "stripeCustomerId": self.stripe_customer_id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "stripePriceId": self.stripe_price_id,
            "coupon": {
                "couponId": self.coupon_id,
                "code": self.coupon_code,
                "discountType": self.coupon_discount_type,
                "amount": float(self.coupon_amount) if self.coupon_amount is not None else None,
                "appliedAt": _iso(self.coupon_applied_at),
            } if self.coupon_code else None,
            "payment": {
                "paymentStatus": self.payment_status,
                "lastPaymentDate": _iso(self.last_payment_date),
                "lastPaymentAmount": from_minor_units(self.last_payment_amount),
                "originalPrice": from_minor_units(self.original_price),
                "finalPrice": from_minor_units(self.final_price),
                "discountAmount": from_minor_units(self.discount_amount),
                "methodBrand": self.payment_method_brand,
                "methodLast4": self.payment_method_last4,
                "currency": self.currency,
            },
            "invoice": {
                "id": self.invoice_id,
                "url": self.invoice_url,
                "pdf": self.invoice_pdf,
                "number": self.invoice_number,
            } if self.invoice_id else None,
            "failure": {
                "reason": self.failure_reason,
                "code": self.failure_code,
                "lastFailedAt": _iso(self.last_failed_at),
                "failureCount": self.failure_count,
            },
            "isArchived": self.is_archived,
            "archivedAt": _iso(self.archived_at),
            "archivedBy": self.archived_by.to_summary() if self.archived_by else None,
            "archivedReason": self.archived_reason,
            "metadata": self.extra or {},
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Membership id={self.id} user={self.user_id} status={self.status!r} archived={self.is_archived}>"
