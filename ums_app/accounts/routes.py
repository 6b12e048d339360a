from flask import current_app
from flask_login import login_user, logout_user, login_required, current_user

from . import accounts_bp
from .services import authenticate, account_for, student_for_user
from .. import limiter
from ..api_utils import api_success, api_error, json_body
from ..decorators import role_required, ADMIN_ROLES


def _user_dict(user):
    data = {"id": user.user_id, "username": user.username, "email": user.email, "role": user.role}
    student = student_for_user(user)
    if student is not None:
        data["studentId"] = student.regd_no
    return data


@accounts_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    payload = json_body()
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        return api_error("validation_error", "Username and password are required.", 400)
    user = authenticate(username, password)
    if user is None:
        current_app.logger.info("Failed login for %s", username)
        return api_error("invalid_credentials", "Invalid credentials.", 401)
    login_user(user)
    return api_success(_user_dict(user))


@accounts_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return api_success({"loggedOut": True})


@accounts_bp.route("/me", methods=["GET"])
@login_required
def me():
    return api_success(_user_dict(current_user))


@accounts_bp.route("/admin/accounts/change-password", methods=["POST"])
@login_required
@role_required(*ADMIN_ROLES)
def change_password():
    payload = json_body()
    account = account_for(payload.get("userType"), payload.get("userId"))
    account.change_password(payload.get("newPassword"), actor=current_user)
    current_app.logger.info("Password changed for %s %s by %s", account.kind, account.user.user_id, current_user.user_id)
    return api_success({"message": "Password updated successfully"})


@accounts_bp.route("/admin/accounts/change-username", methods=["POST"])
@login_required
@role_required(*ADMIN_ROLES)
def change_username():
    payload = json_body()
    account = account_for(payload.get("userType"), payload.get("userId"))
    user = account.change_username(payload.get("newUsername"), actor=current_user)
    current_app.logger.info("Username changed for %s %s by %s", account.kind, user.user_id, current_user.user_id)
    return api_success({"message": "Username updated successfully", "username": user.username})
