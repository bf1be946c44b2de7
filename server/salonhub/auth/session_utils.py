# salonhub/auth/session_utils.py
from __future__ import annotations

from functools import wraps
from typing import Callable

from flask import current_app, jsonify
from flask_login import current_user

from salonhub.models import ROLE_ADMIN


# ---------------------- Public API ------------------------
# The membership API is JSON only, so gates answer with JSON instead of redirecting.

def login_required(view: Callable) -> Callable:
    """Require a logged-in session. Anonymous callers get JSON 401."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"success": False, "message": "Authentication required", "code": "AUTH_REQUIRED"}), 401
        return view(*args, **kwargs)
    return wrapped


def require_role(*allowed_roles: str):
    """
    Decorator to require specific user role(s). Implies login_required.

    Usage:
        @require_role("admin")
        def admin_settings():
            ...
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({"success": False, "message": "Authentication required", "code": "AUTH_REQUIRED"}), 401

            if current_user.role not in allowed_roles:
                current_app.logger.warning(
                    f"User {current_user.id} (role={current_user.role}) attempted to access {f.__name__} "
                    f"which requires roles: {allowed_roles}"
                )
                return jsonify({"success": False, "message": "Admin access required", "code": "FORBIDDEN"}), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator


require_admin = require_role(ROLE_ADMIN)
