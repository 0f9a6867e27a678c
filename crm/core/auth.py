from __future__ import annotations

from flask import Blueprint, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from crm.core.i18n import SUPPORTED_LANGS
from crm.core.models import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


@auth_bp.post("/login")
def login():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "invalid_credentials", "message": "Nieprawidłowe dane logowania"}), 401
    login_user(user)
    return jsonify({"id": user.id, "email": user.email, "role": user.role})


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@auth_bp.get("/me")
@login_required
def me():
    return jsonify({"id": current_user.id, "email": current_user.email, "role": current_user.role})


@auth_bp.post("/lang")
def set_lang():
    lang = (_payload().get("lang") or "pl").strip().lower()
    if lang not in SUPPORTED_LANGS:
        lang = "pl"
    session["lang"] = lang
    return jsonify({"lang": lang})
