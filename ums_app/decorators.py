from functools import wraps
from flask import current_app
from flask_login import current_user

from .api_utils import api_error

FINANCE_ROLES = ("finance_department", "finance_officer", "head_admin", "admin")
ADMIN_ROLES = ("head_admin", "admin")
STAFF_ROLES = ("head_admin", "admin", "student_management", "finance_department", "finance_officer", "faculty")


def user_role(user):
    return (getattr(user, "role", "") or "").strip().lower()


def role_required(*roles):
    """
    Decorator to ensure the current user has one of the allowed roles.
    Anonymous users get a 401, everyone else outside ``roles`` a 403.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()

            role = user_role(current_user)
            allowed = {r.strip().lower() for r in roles}

            if role not in allowed:
                current_app.logger.info("Role %s denied on %s", role, func.__name__)
                return api_error("forbidden", "You do not have permission to access this resource.", 403)

            return func(*args, **kwargs)
        return wrapper
    return decorator
