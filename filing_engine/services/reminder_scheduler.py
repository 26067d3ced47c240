"""
Regulatory Filing Platform
Reminder Scheduler.

schedule(workflow, due_date)
    One FilingReminder per reminder_schedule entry:
        reminder_date = due_date − days_before_due
        reminder_type = "urgent" if days_before_due ≤ 7 else "initial"
    Creation is idempotent on (workflow_id, reminder_date, recipient roles);
    a unique constraint backs the lookup so re-initiation never duplicates.

dispatch_due(now)
    Periodic sweep. Each due reminder is claimed with a conditional UPDATE
    (sent false → true) before delivery, so concurrent or repeated sweeps
    send it at most once. A delivery that raises releases the claim and the
    next sweep retries it.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from filing_engine.models import db
from filing_engine.models.scheduling import (
    NOTIFICATION_METHODS,
    URGENT_REMINDER_DAYS,
    FilingReminder,
    recipient_key,
)
from filing_engine.models.workflow import FilingWorkflow
from filing_engine.repositories import SqlAlchemyReminderRepository
from filing_engine.services import event_publisher as events
from filing_engine.services.notification import NotificationService

logger = logging.getLogger(__name__)


def reminder_type_for(days_before_due):
    return "urgent" if days_before_due <= URGENT_REMINDER_DAYS else "initial"


# ── Channels ────────────────────────────────────────────────────────────────


class NotificationChannel(ABC):
    """Outbound delivery for reminders. Raise to signal a failed delivery."""

    @abstractmethod
    def send(self, reminder: FilingReminder) -> None:
        ...


class InAppNotificationChannel(NotificationChannel):
    """Writes one in-app notification per recipient role."""

    def send(self, reminder):
        workflow = db.session.get(FilingWorkflow, reminder.workflow_id)
        name = workflow.name if workflow else reminder.workflow_id
        days_left = (reminder.due_date - reminder.reminder_date).days
        NotificationService.broadcast(
            title=f"{'URGENT: ' if reminder.reminder_type == 'urgent' else ''}{name} due {reminder.due_date}",
            message=f"Workflow '{name}' is due on {reminder.due_date} ({days_left} days).",
            category="deadline",
            severity="warning" if reminder.reminder_type == "urgent" else "info",
            tenant_id=reminder.tenant_id,
            entity_type="workflow",
            entity_id=reminder.workflow_id,
            recipients=list(reminder.recipients or []),
        )


# ── Scheduler ───────────────────────────────────────────────────────────────


class ReminderScheduler:
    def __init__(self, repository=None, channel=None, publisher=None):
        self.repository = repository or SqlAlchemyReminderRepository()
        self.channel = channel or InAppNotificationChannel()
        self._publisher = publisher

    @property
    def publisher(self):
        return self._publisher or events.get_publisher()

    def schedule(self, workflow, due_date):
        """Create (or reuse) the reminders of ``workflow`` for ``due_date``."""
        reminders = []
        for entry in (workflow.schedule or {}).get("reminder_schedule") or []:
            days = int(entry.get("days_before_due", 0))
            roles = list(dict.fromkeys(entry.get("recipient_roles") or []))
            key = recipient_key(roles)
            reminder_date = due_date - timedelta(days=days)

            existing = self.repository.find_by_key(workflow.id, reminder_date, key)
            if existing is not None:
                reminders.append(existing)
                continue

            method = entry.get("notification_method") or "in_app"
            reminder = FilingReminder(
                tenant_id=workflow.tenant_id,
                workflow_id=workflow.id,
                due_date=due_date,
                reminder_date=reminder_date,
                reminder_type=reminder_type_for(days),
                recipients=roles,
                recipient_key=key,
                notification_method=method if method in NOTIFICATION_METHODS else "in_app",
            )
            try:
                self.repository.save(reminder)
            except IntegrityError:
                # Another initiator inserted the same key first
                db.session.rollback()
                reminder = self.repository.find_by_key(workflow.id, reminder_date, key)
            reminders.append(reminder)

        logger.info("Scheduled %d reminder(s) for workflow %s due %s",
                    len(reminders), workflow.id, due_date, extra={"workflow_id": workflow.id})
        return reminders

    def dispatch_due(self, now=None):
        """Send every due, unsent reminder at most once. Returns sweep counters."""
        now = now or datetime.now(timezone.utc)
        due = self.repository.list_due(now)
        summary = {"due": len(due), "sent": 0, "skipped": 0, "failed": 0}

        for reminder_id in [r.id for r in due]:
            if not self.repository.claim(reminder_id, now):
                summary["skipped"] += 1
                continue
            reminder = self.repository.get(reminder_id)
            try:
                self.channel.send(reminder)
            except Exception:
                logger.exception("Reminder %s delivery failed; releasing claim", reminder_id,
                                 extra={"workflow_id": reminder.workflow_id})
                db.session.rollback()
                self.repository.release(reminder_id)
                summary["failed"] += 1
                continue
            summary["sent"] += 1
            self.publisher.publish(events.REMINDER_SENT, {
                "reminder_id": reminder_id,
                "workflow_id": reminder.workflow_id,
                "reminder_type": reminder.reminder_type,
                "recipients": list(reminder.recipients or []),
            })

        if summary["due"]:
            logger.info("Reminder sweep: %(due)d due, %(sent)d sent, %(skipped)d skipped, "
                        "%(failed)d failed", summary)
        return summary
