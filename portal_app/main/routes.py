from flask import Blueprint, request, session
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from .. import csrf_required, db, issue_csrf_token, limiter
from ..api_utils import api_error, api_success
from ..models import Student, User

main_bp = Blueprint("main", __name__)


def _user_dict(user):
    data = {"user_id": user.user_id, "username": user.username, "role": user.role}
    if (user.role or "").strip().lower() == "student":
        student = db.session.execute(select(Student).filter_by(user_id_fk=user.user_id)).scalars().first()
        data["student_id"] = student.student_id if student else None
    return data


@main_bp.route("/health", methods=["GET"])
def health():
    try:
        db.session.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        db.session.rollback()
        db_ok = False
    status = 200 if db_ok else 503
    return api_success({"status": "ok" if db_ok else "degraded", "database": db_ok}, status=status)


@main_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return api_success({"csrf_token": issue_csrf_token()})


# Authentication routes
@main_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    data = request.get_json(silent=True) or request.form
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    if not username or not password:
        return api_error("invalid_input", "Username and password are required.", 422)

    user = db.session.execute(select(User).filter_by(username=username)).scalars().first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        return api_error("invalid_credentials", "Invalid credentials.", 401)
    if not user.is_active:
        return api_error("account_disabled", "This account is disabled.", 403)

    login_user(user)
    session.permanent = True
    token = issue_csrf_token()
    return api_success({"user": _user_dict(user), "csrf_token": token})


@main_bp.route("/logout", methods=["POST"])
@login_required
@csrf_required
def logout():
    logout_user()
    session.pop("csrf_token", None)
    session.pop("csrf_token_issued_at", None)
    return api_success({"logged_out": True})


@main_bp.route("/me", methods=["GET"])
@login_required
def me():
    return api_success(_user_dict(current_user))
