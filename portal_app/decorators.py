from functools import wraps
from flask import current_app
from flask_login import current_user
from sqlalchemy import select

from .api_utils import api_error


def role_required(*roles):
    """
    Decorator to ensure the current user has one of the allowed roles.
    Must be placed *after* @login_required.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()

            user_role = (getattr(current_user, "role", "") or "").strip().lower()
            allowed = {r.strip().lower() for r in roles}

            if user_role not in allowed:
                return api_error("forbidden", "You do not have permission to access this resource.", 403)

            return func(*args, **kwargs)
        return wrapper
    return decorator


def current_role():
    return (getattr(current_user, "role", "") or "").strip().lower()


def can_view_student(student_id):
    """Staff see every student; a student only sees their own record."""
    from . import db
    from .models import Student

    role = current_role()
    if role in ("admin", "teacher"):
        return True
    if role != "student":
        return False
    me = db.session.execute(select(Student).filter_by(user_id_fk=current_user.user_id)).scalars().first()
    return bool(me and me.student_id == student_id)
