from flask import request
from flask_login import login_required, current_user

from . import notifications_bp
from .services import notifications_for, mark_read
from ..api_utils import api_success


@notifications_bp.route("", methods=["GET"])
@login_required
def list_notifications():
    unread_only = (request.args.get("unread") or "").lower() in ("1", "true", "yes")
    rows = notifications_for(current_user, unread_only=unread_only)
    return api_success([n.to_dict() for n in rows], meta={"count": len(rows)})


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@login_required
def read_notification(notification_id):
    note = mark_read(current_user, notification_id)
    return api_success(note.to_dict())
