"""
Regulatory Filing Platform
Notification Service.

In-app notifications are rows addressed to a user name, a role name, or
"all". A recipient's inbox is everything addressed to them plus every "all"
broadcast in the same tenant.

Writers:
    - InAppNotificationChannel (due reminders, category "deadline")
    - notify_stakeholders step executor (category "workflow")
    - event subscribers in create_app: notify_filing_outcome on filed/rejected,
      notify_execution_failed on workflow.failed
"""

import logging

from filing_engine.core.exceptions import ValidationError
from filing_engine.models import db
from filing_engine.models.base import _utcnow
from filing_engine.models.notification import (
    BROADCAST,
    NOTIFICATION_CATEGORIES,
    NOTIFICATION_SEVERITIES,
    Notification,
)

logger = logging.getLogger(__name__)


def _inbox(recipient, tenant_id=None, unread_only=False):
    q = Notification.query.filter(Notification.recipient.in_([recipient, BROADCAST]))
    if tenant_id:
        q = q.filter(Notification.tenant_id == tenant_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q


class NotificationService:
    """Stateless; every method works on the current app's db.session."""

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  tenant_id=None, entity_type="", entity_id=None,
                  recipients=None, commit=True):
        """
        One Notification per recipient (``["all"]`` when none given).

        ``commit=False`` leaves the rows in the caller's transaction, which is
        how step executors write alongside the execution they belong to.

        Raises:
            ValidationError: unknown category or severity.
        """
        if category not in NOTIFICATION_CATEGORIES:
            raise ValidationError(f"Unknown notification category {category!r}",
                                  details={"allowed": sorted(NOTIFICATION_CATEGORIES)})
        if severity not in NOTIFICATION_SEVERITIES:
            raise ValidationError(f"Unknown notification severity {severity!r}",
                                  details={"allowed": sorted(NOTIFICATION_SEVERITIES)})

        created = [
            Notification(tenant_id=tenant_id, recipient=recipient, title=title[:300],
                         message=message, category=category, severity=severity,
                         entity_type=entity_type, entity_id=entity_id)
            for recipient in dict.fromkeys(recipients or [BROADCAST])
        ]
        db.session.add_all(created)
        if commit:
            db.session.commit()
        logger.debug("Notification '%s' → %s", title, [n.recipient for n in created],
                     extra={"tenant_id": tenant_id})
        return created

    @staticmethod
    def create(*, recipient=BROADCAST, **fields):
        return NotificationService.broadcast(recipients=[recipient], **fields)[0]

    # ── Inbox ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient=BROADCAST, tenant_id=None, unread_only=False,
                           limit=50, offset=0):
        """(items newest first, total) for ``recipient``'s inbox."""
        q = _inbox(recipient, tenant_id, unread_only)
        items = (q.order_by(Notification.created_at.desc(), Notification.id.desc())
                 .offset(offset).limit(limit).all())
        return items, q.count()

    @staticmethod
    def unread_count(recipient=BROADCAST, tenant_id=None):
        return _inbox(recipient, tenant_id, unread_only=True).count()

    @staticmethod
    def mark_read(notification_id):
        """Returns the notification, or None if it does not exist."""
        notif = db.session.get(Notification, notification_id)
        if notif is not None and not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient=BROADCAST, tenant_id=None):
        count = _inbox(recipient, tenant_id, unread_only=True).update(
            {"is_read": True, "read_at": _utcnow()}, synchronize_session="fetch")
        db.session.commit()
        return count

    # ── Event-driven notices ──────────────────────────────────────────────

    @staticmethod
    def notify_filing_outcome(filing):
        """Tell the preparer their filing was filed or rejected; other statuses are ignored."""
        label = f"{filing.form_type} for {filing.reporting_period_end}"
        if filing.status == "filed":
            number = (filing.confirmation or {}).get("confirmation_number")
            title, message, severity = f"{label} filed", f"Confirmation number {number}.", "success"
        elif filing.status == "rejected":
            checks = [c for c in filing.compliance_checks or []
                      if c.get("check_type") == "regulator_submission"]
            title, severity = f"{label} rejected", "error"
            message = checks[-1]["message"] if checks else "Submission was rejected."
        else:
            return None

        return NotificationService.create(
            title=title, message=message, category="filing", severity=severity,
            recipient=filing.prepared_by or BROADCAST, tenant_id=filing.tenant_id,
            entity_type="filing", entity_id=filing.id,
        )

    @staticmethod
    def notify_execution_failed(execution, failed_step_id=None, reason=None):
        """Tell whoever initiated the execution that it failed and where."""
        where = f" at step '{failed_step_id}'" if failed_step_id else ""
        return NotificationService.create(
            title=f"Workflow execution failed{where}",
            message=reason or "",
            category="workflow",
            severity="error",
            recipient=execution.initiated_by or BROADCAST,
            tenant_id=execution.tenant_id,
            entity_type="workflow_execution",
            entity_id=execution.id,
        )
