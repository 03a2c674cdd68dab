from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.docportal.db import db_session
from app.docportal.rbac import require_permission

from .service import list_for_user, mark_read, notification_to_dict, unread_count

bp = Blueprint("notifications", __name__)


@bp.get("/notifications")
@require_permission("portal.view")
def my_notifications():
    s = db_session()
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    items = list_for_user(s, g.current_user.id, unread_only=unread_only)
    return jsonify(
        {
            "notifications": [notification_to_dict(n) for n in items],
            "unread_count": unread_count(s, g.current_user.id),
        }
    )


@bp.post("/notifications/<int:notification_id>/read")
@require_permission("portal.view")
def my_notification_read(notification_id: int):
    s = db_session()
    n = mark_read(s, g.current_user.id, notification_id)
    s.commit()
    return jsonify({"notification": notification_to_dict(n)})
