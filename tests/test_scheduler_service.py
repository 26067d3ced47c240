"""
Regulatory Filing Platform
Tests — scheduler service and the reminder sweep job.

Covers:
    - job registry and DB record creation
    - run_job success/failure bookkeeping, overlap skip, unknown job
    - due_jobs / tick interval handling, next_run_at
    - toggle_job
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from filing_engine.core.exceptions import NotFoundError
from filing_engine.models import db
from filing_engine.models.base import as_utc
from filing_engine.models.scheduling import FilingReminder, ScheduledJob
from filing_engine.services import scheduler_service
from filing_engine.services.reminder_scheduler import ReminderScheduler
from filing_engine.services.scheduler_service import (
    SchedulerService,
    get_registered_jobs,
    register_job,
)
from filing_engine.services.workflow_templates import WorkflowTemplateRegistry


@pytest.fixture()
def failing_job():
    @register_job("test_failing_job")
    def _fail(app):
        """Always fails."""
        raise RuntimeError("boom")

    yield "test_failing_job"
    scheduler_service._job_registry.pop("test_failing_job", None)


def _job(name):
    db.session.expire_all()
    return ScheduledJob.query.filter_by(job_name=name).first()


class TestRegistry:
    def test_reminder_sweep_registered(self):
        assert "filing_reminder_sweep" in get_registered_jobs()

    def test_ensure_jobs_registered_is_idempotent(self):
        assert len(SchedulerService.ensure_jobs_registered()) == 1
        assert SchedulerService.ensure_jobs_registered() == []

        job = _job("filing_reminder_sweep")
        assert job.interval_seconds == 3600
        assert job.description == "Send due filing reminders (each reminder at most once)."
        assert job.is_enabled is True

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        jobs = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert jobs["filing_reminder_sweep"]["db_record"]["run_count"] == 0
        assert jobs["filing_reminder_sweep"]["description"].startswith("Send due filing reminders")


class TestRunJob:
    def test_unknown_job(self):
        with pytest.raises(NotFoundError):
            SchedulerService.run_job("no_such_job")

    def test_job_already_running_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        with scheduler_service._running.hold("filing_reminder_sweep"):
            result = SchedulerService.run_job("filing_reminder_sweep")
        assert result["status"] == "skipped"
        assert _job("filing_reminder_sweep").run_count == 0

    def test_reminder_sweep_sends_due_reminders(self, default_tenant):
        SchedulerService.ensure_jobs_registered()
        workflow = WorkflowTemplateRegistry().register_workflow(default_tenant.id, {
            "name": "Annual ADV",
            "form_type": "form_adv",
            "steps": [{"step_id": "a", "step_name": "Collect", "step_type": "data_collection",
                       "estimated_duration": 2, "dependencies": []}],
            "schedule": {"reminder_schedule": [
                {"days_before_due": 7, "recipient_roles": ["compliance_officer"]}]},
        })
        ReminderScheduler().schedule(workflow, date.today() + timedelta(days=3))

        result = SchedulerService.run_job("filing_reminder_sweep")
        assert result["status"] == "success"
        assert result["result"]["sent"] == 1

        job = _job("filing_reminder_sweep")
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert job.last_run_result["sent"] == 1
        assert FilingReminder.query.filter_by(sent=True).count() == 1

    def test_failure_recorded(self, failing_job):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job(failing_job)
        assert result["status"] == "failed"
        assert result["error"] == "boom"

        job = _job(failing_job)
        assert job.error_count == 1
        assert job.last_error == "boom"


class TestDueJobs:
    def test_interval_respected(self):
        SchedulerService.ensure_jobs_registered()
        assert "filing_reminder_sweep" in SchedulerService.due_jobs()

        SchedulerService.run_job("filing_reminder_sweep")
        db.session.expire_all()
        now = datetime.now(timezone.utc)
        assert "filing_reminder_sweep" not in SchedulerService.due_jobs(now)
        assert "filing_reminder_sweep" in SchedulerService.due_jobs(now + timedelta(hours=2))

    def test_next_run_at_follows_last_run(self):
        SchedulerService.ensure_jobs_registered()
        job = _job("filing_reminder_sweep")
        assert job.to_dict()["next_run_at"] is None

        SchedulerService.run_job("filing_reminder_sweep")
        db.session.expire_all()
        job = _job("filing_reminder_sweep")
        assert job.next_run_at() - as_utc(job.last_run_at) == timedelta(seconds=job.interval_seconds)

    def test_disabled_job_never_due(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("filing_reminder_sweep", False)
        assert SchedulerService.due_jobs() == []
        assert _job("filing_reminder_sweep").status == "paused"

    def test_tick_runs_each_due_job_once(self):
        SchedulerService.ensure_jobs_registered()
        results = SchedulerService.tick()
        assert [r["job_name"] for r in results] == ["filing_reminder_sweep"]
        db.session.expire_all()
        assert SchedulerService.tick() == []

    def test_toggle_unknown_job(self):
        assert SchedulerService.toggle_job("no_such_job", True) is None
