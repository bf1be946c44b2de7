# salonhub/billing/routes.py
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from salonhub.auth.session_utils import login_required
from salonhub.errors import ConfigurationError
from salonhub.extensions import limiter
from salonhub.models_billing import Plan
from salonhub.services import checkout as checkout_service
from salonhub.services import membership_service
from salonhub.services.stripe_service import get_gateway
from salonhub.services.webhooks import process_event

memberships_bp = Blueprint("memberships_bp", __name__, url_prefix="/api/memberships")


def _checkout_limit() -> str:
    return current_app.config.get("CHECKOUT_RATE_LIMIT", "20 per hour")


@memberships_bp.route("/plans", methods=["GET"])
def list_plans():
    plans = Plan.query.filter_by(is_active=True).order_by(Plan.price.asc(), Plan.id.asc()).all()
    return jsonify({"success": True, "plans": [p.to_dict() for p in plans]})


@memberships_bp.route("/me", methods=["GET"])
@login_required
def my_membership():
    membership = membership_service.find_for_user(current_user.id)
    return jsonify({"success": True, "membership": membership.to_dict() if membership else None})


@memberships_bp.route("/checkout", methods=["POST"])
@login_required
@limiter.limit(_checkout_limit)
def create_checkout():
    data = request.get_json(silent=True) or {}
    session = checkout_service.create_checkout(
        current_user._get_current_object(),
        data.get("planId"),
        data.get("couponCode"),
        get_gateway(),
    )
    return jsonify({"success": True, "sessionId": session.id, "url": session.url})


@memberships_bp.route("/checkout/preview", methods=["POST"])
@login_required
def preview_checkout():
    data = request.get_json(silent=True) or {}
    preview = checkout_service.preview_checkout(data.get("planId"), data.get("couponCode"))
    return jsonify({"success": True, **preview})


@memberships_bp.route("/cancel", methods=["POST"])
@login_required
def cancel_auto_renew():
    membership = membership_service.find_for_user(current_user.id)
    if membership is None:
        return jsonify({"success": False, "message": "Membership not found"}), 404
    membership = membership_service.disable_auto_renew(membership, get_gateway(), actor_id=current_user.id)
    return jsonify({"success": True, "membership": membership.to_dict()})


@memberships_bp.route("/stripe/config", methods=["GET"])
def stripe_config():
    publishable_key = current_app.config.get("STRIPE_PUBLISHABLE_KEY")
    if not publishable_key:
        raise ConfigurationError("Stripe publishable key (STRIPE_PUBLISHABLE_KEY) is not configured.")
    return jsonify({"success": True, "publishableKey": publishable_key})


@memberships_bp.route("/stripe/webhook", methods=["POST"], endpoint="stripe_webhook")
@limiter.exempt
def stripe_webhook():
    """
    Stripe webhook ingress.

    The signature is checked over the raw body. Once it verifies, the
    response is always 200; processing failures are reported through the
    audit log and Sentry instead.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
        return jsonify({"success": False, "message": "Webhook secret not configured"}), 400

    gateway = get_gateway()
    payload = request.get_data()
    event = gateway.construct_event(payload, request.headers.get("Stripe-Signature"), secret)

    return jsonify(process_event(event, gateway)), 200
