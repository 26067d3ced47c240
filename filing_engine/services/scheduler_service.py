"""
Regulatory Filing Platform
Scheduler Service.

In-process periodic jobs for the filing platform. The only production job
today is the reminder sweep; the registry is open so further sweeps
(e.g. overdue-deadline escalation) plug in with ``@register_job``.

    @register_job("filing_reminder_sweep", interval_key="REMINDER_SWEEP_INTERVAL_SECONDS")
    def sweep_filing_reminders(app): ...

Each job has a ScheduledJob row holding its interval, enabled flag and run
history. ``tick()`` runs every enabled job whose interval has elapsed; the
background thread started by ``start()`` simply calls ``tick()`` every
SCHEDULER_POLL_SECONDS. A job never overlaps itself inside one process: a
manual trigger that arrives while the loop is running the same job returns
status "skipped". Across processes the reminder claim is what keeps
delivery at-most-once.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from flask import Flask

from filing_engine.core.exceptions import NotFoundError
from filing_engine.models import db
from filing_engine.models.scheduling import ScheduledJob
from filing_engine.utils.helpers import KeyedLocks

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
DEFAULT_POLL_SECONDS = 30


@dataclass
class JobSpec:
    name: str
    fn: Callable[[Flask], Any]
    interval_key: str | None = None
    default_interval: int = DEFAULT_INTERVAL_SECONDS

    @property
    def description(self) -> str:
        doc = (self.fn.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else f"Scheduled job: {self.name}"

    def interval_for(self, config) -> int:
        if self.interval_key:
            return int(config.get(self.interval_key, self.default_interval))
        return self.default_interval


_job_registry: dict[str, JobSpec] = {}
_running = KeyedLocks()


def register_job(name: str, interval_key: str | None = None,
                 default_interval: int = DEFAULT_INTERVAL_SECONDS):
    """Register ``fn(app)`` as job ``name``; its interval comes from ``app.config[interval_key]``."""
    def decorator(fn):
        _job_registry[name] = JobSpec(name, fn, interval_key, default_interval)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobSpec]:
    return dict(_job_registry)


def _job_record(name):
    return ScheduledJob.query.filter_by(job_name=name).first()


class SchedulerService:
    """Class-level singleton bound to one Flask app by ``init_app``."""

    _app: Flask | None = None
    _stop: threading.Event | None = None
    _thread: threading.Thread | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        # Importing the module registers its jobs
        from filing_engine.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler bound to app: %d job(s) registered (%s)",
                    len(_job_registry), ", ".join(sorted(_job_registry)))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []
        with cls._app.app_context():
            created = [
                ScheduledJob(job_name=spec.name, description=spec.description,
                             interval_seconds=spec.interval_for(cls._app.config),
                             status="active", is_enabled=True)
                for spec in _job_registry.values()
                if _job_record(spec.name) is None
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Created scheduled job record(s): %s",
                            ", ".join(j.job_name for j in created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Run one job now and record the outcome on its ScheduledJob row.

        Returns ``{job_name, status, duration_ms, result, error}`` where status
        is "success", "failed" or "skipped" (already running in this process).

        Raises:
            NotFoundError: no job registered under ``job_name``.
        """
        spec = _job_registry.get(job_name)
        if spec is None:
            raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() has not been called")

        with _running.try_hold(job_name) as acquired:
            if not acquired:
                logger.info("Job %s already running; trigger skipped", job_name)
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}
            return cls._execute(spec)

    @classmethod
    def _execute(cls, spec: JobSpec) -> dict:
        started = time.monotonic()
        status, result, error = "success", None, None
        with cls._app.app_context():
            try:
                result = spec.fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status, error = "failed", str(exc) or exc.__class__.__name__
                logger.exception("Job %s failed", spec.name)
            duration_ms = int((time.monotonic() - started) * 1000)

            record = _job_record(spec.name)
            if record is not None:
                record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) or result is None else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        logger.info("Job %s finished: %s in %dms", spec.name, status, duration_ms)
        return {"job_name": spec.name, "status": status, "duration_ms": duration_ms,
                "result": result, "error": error}

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name, spec in _job_registry.items():
            record = _job_record(name)
            jobs.append({
                "job_name": name,
                "description": spec.description,
                "registered": True,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        record = _job_record(job_name)
        if record is None:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s %s", job_name, "enabled" if enabled else "paused")
        return record.to_dict()

    # ── Periodic loop ─────────────────────────────────────────────────────

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        """Enabled, registered jobs whose interval has elapsed since their last run."""
        now = now or datetime.now(timezone.utc)
        due = []
        for record in ScheduledJob.query.filter_by(is_enabled=True).order_by(ScheduledJob.job_name):
            if record.job_name not in _job_registry:
                continue
            if record.is_due(now):
                due.append(record.job_name)
        return due

    @classmethod
    def tick(cls) -> list[dict]:
        if not cls._app:
            return []
        with cls._app.app_context():
            names = cls.due_jobs()
        return [cls.run_job(name) for name in names]

    @classmethod
    def start(cls, poll_seconds: int | None = None) -> None:
        if cls._thread and cls._thread.is_alive():
            return
        if poll_seconds is None:
            poll_seconds = int(cls._app.config.get("SCHEDULER_POLL_SECONDS", DEFAULT_POLL_SECONDS))
        cls.ensure_jobs_registered()
        cls._stop = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, args=(poll_seconds,),
                                       name="filing-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler loop started (poll every %ds)", poll_seconds)

    @classmethod
    def stop(cls) -> None:
        if cls._stop:
            cls._stop.set()
        if cls._thread:
            cls._thread.join(timeout=5)
            cls._thread = None

    @classmethod
    def _loop(cls, poll_seconds: int) -> None:
        while not cls._stop.is_set():
            try:
                cls.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            cls._stop.wait(poll_seconds)
