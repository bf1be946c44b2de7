# salonhub/auth/__init__.py
from __future__ import annotations

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_login import current_user, login_user, logout_user

from salonhub.extensions import db, limiter, login_manager
from salonhub.models import User

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/auth")


def init_auth(app: Flask) -> None:
    """Wire Flask-Login: session-backed users, JSON 401 for anonymous API calls."""
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"success": False, "message": "Authentication required", "code": "AUTH_REQUIRED"}), 401


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------
@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter(db.func.lower(User.email) == email).first() if email else None
    if not user or not user.check_password(password):
        current_app.logger.info(f"Failed login for {email or '<blank>'}")
        return jsonify({"success": False, "message": "Invalid email or password"}), 401

    login_user(user, remember=bool(data.get("remember")))
    current_app.logger.info(f"User {user.id} logged in")
    return jsonify({"success": True, "user": user.to_summary()})


@auth_bp.route("/logout", methods=["POST"])
def logout():
    if current_user.is_authenticated:
        current_app.logger.info(f"User {current_user.id} logged out")
    logout_user()
    return jsonify({"success": True})


@auth_bp.route("/me", methods=["GET"])
def me():
    if not current_user.is_authenticated:
        return jsonify({"success": True, "user": None})
    return jsonify({"success": True, "user": current_user.to_summary()})
