"""Auth blueprint: /auth/*

JSON login, logout, current user and CSRF token for the UI.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from app.extensions import limiter
from app.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_dict(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "is_admin": bool(user.is_admin),
    }


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Standard email + password login."""
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        return jsonify(ok=False, error="Email and password are required."), 422

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify(ok=False, error="Invalid email or password."), 401

    if not user.is_active:
        return jsonify(ok=False, error="Your account has been deactivated."), 403

    login_user(user, remember=remember)
    return jsonify(ok=True, user=_user_dict(user))


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify(ok=True)


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    return jsonify(ok=True, user=_user_dict(current_user))


# ──────────────────────────────────────────────
# GET /auth/csrf
# ──────────────────────────────────────────────

@auth_bp.route("/csrf")
def csrf_token():
    """Token for the X-CSRFToken header on JSON writes."""
    return jsonify(ok=True, csrf_token=generate_csrf())
