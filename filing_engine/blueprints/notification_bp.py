"""
Regulatory Filing Platform
Notification Blueprint.

Provides:
    - Inbox listing per recipient (user name or role), unread count
    - Mark one / all notifications read

Reminders and filing outcomes write notifications through
NotificationService; this blueprint is the read side.
"""

import logging

from flask import Blueprint, jsonify, request

from filing_engine.blueprints import int_arg, register_error_handlers, request_data, tenant_id_from_request
from filing_engine.core.exceptions import NotFoundError, ValidationError
from filing_engine.services.notification import NotificationService

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


def _recipient():
    recipient = request.args.get("recipient") or request_data().get("recipient")
    if not recipient:
        raise ValidationError("recipient is required", details={"recipient": None})
    return recipient


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Inbox for ``recipient`` (plus broadcasts to 'all'), newest first."""
    items, total = NotificationService.list_for_recipient(
        recipient=_recipient(),
        tenant_id=tenant_id_from_request(required=False),
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=min(int_arg("limit", 50), 200),
        offset=int_arg("offset", 0),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    count = NotificationService.unread_count(
        recipient=_recipient(), tenant_id=tenant_id_from_request(required=False))
    return jsonify({"unread_count": count})


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["PATCH"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    if notif is None:
        raise NotFoundError(resource="Notification", resource_id=notification_id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(
        recipient=_recipient(), tenant_id=tenant_id_from_request(required=False))
    logger.info("Marked %d notification(s) read", count)
    return jsonify({"marked_read": count})
