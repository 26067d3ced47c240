"""
Regulatory Filing Platform
Scheduled Jobs.

    - filing_reminder_sweep: dispatch FilingReminders whose reminder_date
      has arrived (interval: REMINDER_SWEEP_INTERVAL_SECONDS)
"""

from __future__ import annotations

from datetime import datetime, timezone

from filing_engine.services.reminder_scheduler import ReminderScheduler
from filing_engine.services.scheduler_service import register_job


@register_job("filing_reminder_sweep", interval_key="REMINDER_SWEEP_INTERVAL_SECONDS")
def sweep_filing_reminders(app) -> dict:
    """Send due filing reminders (each reminder at most once)."""
    return ReminderScheduler().dispatch_due(datetime.now(timezone.utc))
