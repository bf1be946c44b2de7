# salonhub/admin/routes.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from salonhub.auth.session_utils import require_admin
from salonhub.background_jobs import list_all_jobs, run_job_now
from salonhub.errors import NotFoundError, ValidationError
from salonhub.extensions import db
from salonhub.models_audit import AuditAction, MembershipLog, get_membership_history, get_recent_logs
from salonhub.models_billing import Coupon, Plan, INTERVALS
from salonhub.services import membership_service
from salonhub.services.coupons import normalize_coupon_payload

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/memberships/admin")


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").lower() == "true"


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _gateway_or_none():
    """Archive cancels upstream best-effort, so a missing gateway is not fatal."""
    return current_app.extensions.get("payment_gateway")


# ---------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------
def _plan_fields(data: dict, partial: bool = False) -> dict:
    fields = {}
    if "name" in data or not partial:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Plan name is required")
        fields["name"] = name
    if "description" in data:
        fields["description"] = data.get("description")
    if "price" in data or not partial:
        try:
            price = Decimal(str(data.get("price")))
        except (InvalidOperation, TypeError):
            raise ValidationError("Price must be a number")
        if not price.is_finite() or price < 0:
            raise ValidationError("Price must be zero or greater")
        fields["price"] = price
    if "interval" in data or not partial:
        interval = data.get("interval") or "year"
        if interval not in INTERVALS:
            raise ValidationError("interval must be 'month' or 'year'")
        fields["interval"] = interval
    if isinstance(data.get("isActive"), bool):
        fields["is_active"] = data["isActive"]
    return fields


def _get_plan(plan_id: int) -> Plan:
    plan = db.session.get(Plan, plan_id)
    if not plan:
        raise NotFoundError("Plan not found")
    return plan


@admin_bp.route("/plans", methods=["GET"])
@require_admin
def list_plans():
    plans = Plan.query.order_by(Plan.created_at.desc(), Plan.id.desc()).all()
    return jsonify({"success": True, "plans": [p.to_dict() for p in plans]})


@admin_bp.route("/plans", methods=["POST"])
@require_admin
def create_plan():
    plan = Plan(**_plan_fields(_body()))
    db.session.add(plan)
    db.session.flush()
    MembershipLog.record(AuditAction.PLAN_EDIT, f"Plan {plan.name} created", plan_id=plan.id, actor_id=current_user.id)
    db.session.commit()
    return jsonify({"success": True, "plan": plan.to_dict()}), 201


@admin_bp.route("/plans/<int:plan_id>", methods=["PUT"])
@require_admin
def update_plan(plan_id: int):
    plan = _get_plan(plan_id)
    fields = _plan_fields(_body(), partial=True)
    price_changed = ("price" in fields and fields["price"] != plan.price) or (
        "interval" in fields and fields["interval"] != plan.interval
    )
    for key, value in fields.items():
        setattr(plan, key, value)
    if price_changed:
        # Stripe prices are immutable; the next checkout provisions a new one
        plan.stripe_price_id = None
    MembershipLog.record(
        AuditAction.PLAN_EDIT,
        f"Plan {plan.name} updated",
        plan_id=plan.id,
        actor_id=current_user.id,
        payload={k: str(v) for k, v in fields.items()},
    )
    db.session.commit()
    return jsonify({"success": True, "plan": plan.to_dict()})


@admin_bp.route("/plans/<int:plan_id>/toggle", methods=["PATCH"])
@require_admin
def toggle_plan(plan_id: int):
    plan = _get_plan(plan_id)
    plan.is_active = not plan.is_active
    MembershipLog.record(
        AuditAction.PLAN_EDIT,
        f"Plan {plan.name} {'activated' if plan.is_active else 'deactivated'}",
        plan_id=plan.id,
        actor_id=current_user.id,
    )
    db.session.commit()
    return jsonify({"success": True, "plan": plan.to_dict()})


# ---------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------
def _get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if not coupon:
        raise NotFoundError("Coupon not found")
    return coupon


def _ensure_unique_code(code: str, exclude_id=None) -> None:
    query = Coupon.query.filter_by(code=code)
    if exclude_id is not None:
        query = query.filter(Coupon.id != exclude_id)
    if query.first():
        raise ValidationError("Coupon code already exists")


@admin_bp.route("/coupons", methods=["GET"])
@require_admin
def list_coupons():
    coupons = Coupon.query.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()
    return jsonify({"success": True, "coupons": [c.to_dict() for c in coupons]})


@admin_bp.route("/coupons", methods=["POST"])
@require_admin
def create_coupon():
    data = _body()
    fields = normalize_coupon_payload(data)
    _ensure_unique_code(fields["code"])
    coupon = Coupon(**fields, is_active=data.get("isActive", True) is not False, used_count=0)
    db.session.add(coupon)
    db.session.commit()
    current_app.logger.info(f"Coupon {coupon.code} created by admin {current_user.id}")
    return jsonify({"success": True, "coupon": coupon.to_dict()}), 201


@admin_bp.route("/coupons/<int:coupon_id>", methods=["PUT"])
@require_admin
def update_coupon(coupon_id: int):
    coupon = _get_coupon(coupon_id)
    data = _body()
    fields = normalize_coupon_payload({**coupon.to_dict(), **data})
    _ensure_unique_code(fields["code"], exclude_id=coupon.id)
    if fields["max_redemptions"] is not None and fields["max_redemptions"] < (coupon.used_count or 0):
        raise ValidationError("Max redemptions cannot be lower than the number of times the coupon was used")
    for key, value in fields.items():
        setattr(coupon, key, value)
    if isinstance(data.get("isActive"), bool):
        coupon.is_active = data["isActive"]
    db.session.commit()
    return jsonify({"success": True, "coupon": coupon.to_dict()})


@admin_bp.route("/coupons/<int:coupon_id>/toggle", methods=["PATCH"])
@require_admin
def toggle_coupon(coupon_id: int):
    coupon = _get_coupon(coupon_id)
    coupon.is_active = not coupon.is_active
    db.session.commit()
    return jsonify({"success": True, "coupon": coupon.to_dict()})


@admin_bp.route("/coupons/<int:coupon_id>", methods=["DELETE"])
@require_admin
def delete_coupon(coupon_id: int):
    coupon = _get_coupon(coupon_id)
    # Memberships keep their coupon snapshot columns
    membership_service.detach_coupon(coupon)
    db.session.delete(coupon)
    db.session.commit()
    return jsonify({"success": True, "message": "Coupon deleted"})


# ---------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------
@admin_bp.route("/users", methods=["GET"])
@require_admin
def list_memberships():
    memberships = membership_service.list_memberships(
        include_archived=_flag("includeArchived"),
        archived_only=_flag("archivedOnly"),
    )
    return jsonify({"success": True, "memberships": [m.to_dict() for m in memberships]})


@admin_bp.route("/users/<int:membership_id>", methods=["PATCH"])
@require_admin
def update_membership(membership_id: int):
    membership = membership_service.get_membership(membership_id)
    membership = membership_service.admin_update(membership, _body(), actor_id=current_user.id)
    return jsonify({"success": True, "membership": membership.to_dict()})


@admin_bp.route("/users/<int:membership_id>/extend", methods=["POST"])
@require_admin
def extend_membership(membership_id: int):
    membership = membership_service.get_membership(membership_id)
    extra_days = _body().get("extraDays", current_app.config.get("DEFAULT_EXTENSION_DAYS", 30))
    membership = membership_service.extend(membership, extra_days, actor_id=current_user.id)
    return jsonify({"success": True, "membership": membership.to_dict()})


@admin_bp.route("/users/<int:membership_id>/archive", methods=["POST"])
@require_admin
def archive_membership(membership_id: int):
    data = _body()
    membership = membership_service.get_membership(membership_id)
    membership = membership_service.archive(
        membership,
        gateway=_gateway_or_none(),
        actor_id=current_user.id,
        reason=data.get("reason"),
        force=data.get("forceArchive") is True,
    )
    return jsonify({"success": True, "message": "Membership archived", "membership": membership.to_dict()})


@admin_bp.route("/users/<int:membership_id>/restore", methods=["POST"])
@require_admin
def restore_membership(membership_id: int):
    membership = membership_service.get_membership(membership_id)
    membership = membership_service.restore(
        membership,
        actor_id=current_user.id,
        restore_to_status=_body().get("restoreToStatus"),
    )
    return jsonify({"success": True, "message": "Membership restored", "membership": membership.to_dict()})


@admin_bp.route("/users/cleanup-orphans", methods=["POST"])
@require_admin
def cleanup_orphans():
    deleted = membership_service.cleanup_orphans(actor_id=current_user.id)
    message = f"Deleted {len(deleted)} orphaned membership records" if deleted else "No orphaned memberships found"
    return jsonify({"success": True, "message": message, "deletedCount": len(deleted)})


# ---------------------------------------------------------------------
# Logs & jobs
# ---------------------------------------------------------------------
@admin_bp.route("/logs", methods=["GET"])
@require_admin
def list_logs():
    limit = min(request.args.get("limit", 100, type=int) or 100, 500)
    kind = request.args.get("type") or None
    user_id = request.args.get("userId", type=int)
    if user_id:
        logs = get_membership_history(user_id, limit=limit, kind_filter=kind)
    else:
        logs = get_recent_logs(limit=limit, kind_filter=kind)
    return jsonify({"success": True, "logs": [entry.to_dict() for entry in logs]})


@admin_bp.route("/jobs", methods=["GET"])
@require_admin
def list_jobs():
    return jsonify({"success": True, "jobs": list_all_jobs()})


@admin_bp.route("/jobs/<job_id>/run", methods=["POST"])
@require_admin
def run_job(job_id: str):
    if not run_job_now(job_id):
        raise NotFoundError(f"Job not found: {job_id}")
    return jsonify({"success": True, "message": f"Job {job_id} triggered"})
