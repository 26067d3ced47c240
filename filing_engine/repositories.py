"""
Regulatory Filing Platform
Repository interfaces and their SQLAlchemy implementations.

Services depend on the abstract interfaces; the SQLAlchemy classes are the
default system of record. Lookups accept an optional tenant scope. A record
owned by another tenant is reported exactly like a missing one
(NotFoundError), never as a permission error.

Usage:
    repo = SqlAlchemyFilingRepository()
    filing = repo.get(filing_id, tenant_id=tenant_id)
    repo.save(filing)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime

from sqlalchemy import select, update

from filing_engine.core.exceptions import NotFoundError
from filing_engine.models import db
from filing_engine.models.base import _utcnow
from filing_engine.models.filing import Filing, FilingAuditEntry
from filing_engine.models.scheduling import FilingReminder
from filing_engine.models.workflow import (
    ACTIVE_EXECUTION_STATUSES,
    FilingWorkflow,
    WorkflowExecution,
)

logger = logging.getLogger(__name__)


def _get_scoped(model, pk, tenant_id=None):
    stmt = select(model).where(model.id == pk)
    if tenant_id is not None:
        stmt = stmt.where(model.tenant_id == tenant_id)
    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("%s id=%s not found (tenant=%s)", model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id)
    return result


def _persist(entity):
    db.session.add(entity)
    db.session.commit()
    return entity


# ═════════════════════════════════════════════════════════════════════════════
#  Interfaces
# ═════════════════════════════════════════════════════════════════════════════


class FilingRepository(ABC):
    @abstractmethod
    def get(self, filing_id: str, tenant_id: int | None = None) -> Filing:
        """Return the filing or raise NotFoundError."""

    @abstractmethod
    def save(self, filing: Filing) -> Filing:
        """Persist the filing and any pending audit entries."""

    @abstractmethod
    def list_by_tenant(self, tenant_id: int, *, form_type: str | None = None,
                       status: str | None = None) -> list[Filing]:
        """Return the tenant's filings, newest period first."""

    @abstractmethod
    def append_audit(self, filing_id: str, action: str, actor: str | None,
                     details: dict | None = None) -> FilingAuditEntry:
        """Stage an audit entry; written on the next save."""


class WorkflowRepository(ABC):
    @abstractmethod
    def get(self, workflow_id: str, tenant_id: int | None = None) -> FilingWorkflow:
        """Return the workflow or raise NotFoundError."""

    @abstractmethod
    def save(self, workflow: FilingWorkflow) -> FilingWorkflow:
        """Persist the workflow."""

    @abstractmethod
    def list_by_tenant(self, tenant_id: int, *, active_only: bool = False) -> list[FilingWorkflow]:
        """Return the tenant's workflows."""


class ExecutionRepository(ABC):
    @abstractmethod
    def get(self, execution_id: str, tenant_id: int | None = None) -> WorkflowExecution:
        """Return the execution or raise NotFoundError."""

    @abstractmethod
    def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist the execution."""

    @abstractmethod
    def find_active_for_filing(self, filing_id: str) -> WorkflowExecution | None:
        """Return the non-terminal execution targeting filing_id, if any."""

    @abstractmethod
    def list_for_workflow(self, workflow_id: str) -> list[WorkflowExecution]:
        """Return every execution of a workflow, newest first."""


class ReminderRepository(ABC):
    @abstractmethod
    def get(self, reminder_id: int) -> FilingReminder:
        """Return the reminder or raise NotFoundError."""

    @abstractmethod
    def save(self, reminder: FilingReminder) -> FilingReminder:
        """Persist the reminder."""

    @abstractmethod
    def find_by_key(self, workflow_id: str, reminder_date: date,
                    recipient_key: str) -> FilingReminder | None:
        """Look up a reminder by its dedupe key."""

    @abstractmethod
    def list_due(self, now: datetime) -> list[FilingReminder]:
        """Unsent reminders whose reminder_date is on or before now."""

    @abstractmethod
    def claim(self, reminder_id: int, now: datetime) -> bool:
        """Atomically flip sent false → true. True only for the caller that flipped it."""

    @abstractmethod
    def release(self, reminder_id: int) -> None:
        """Undo a claim after a failed delivery so the next sweep retries."""


# ═════════════════════════════════════════════════════════════════════════════
#  SQLAlchemy implementations
# ═════════════════════════════════════════════════════════════════════════════


class SqlAlchemyFilingRepository(FilingRepository):
    def get(self, filing_id, tenant_id=None):
        return _get_scoped(Filing, filing_id, tenant_id)

    def save(self, filing):
        return _persist(filing)

    def list_by_tenant(self, tenant_id, *, form_type=None, status=None):
        stmt = select(Filing).where(Filing.tenant_id == tenant_id)
        if form_type:
            stmt = stmt.where(Filing.form_type == form_type)
        if status:
            stmt = stmt.where(Filing.status == status)
        stmt = stmt.order_by(Filing.reporting_period_end.desc(), Filing.created_at.desc())
        return list(db.session.execute(stmt).scalars().all())

    def append_audit(self, filing_id, action, actor, details=None):
        entry = FilingAuditEntry(filing_id=filing_id, action=action, actor=actor,
                                 details=details or {})
        db.session.add(entry)
        return entry


class SqlAlchemyWorkflowRepository(WorkflowRepository):
    def get(self, workflow_id, tenant_id=None):
        return _get_scoped(FilingWorkflow, workflow_id, tenant_id)

    def save(self, workflow):
        return _persist(workflow)

    def list_by_tenant(self, tenant_id, *, active_only=False):
        stmt = select(FilingWorkflow).where(FilingWorkflow.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(FilingWorkflow.is_active.is_(True))
        return list(db.session.execute(stmt.order_by(FilingWorkflow.name)).scalars().all())


class SqlAlchemyExecutionRepository(ExecutionRepository):
    def get(self, execution_id, tenant_id=None):
        return _get_scoped(WorkflowExecution, execution_id, tenant_id)

    def save(self, execution):
        return _persist(execution)

    def find_active_for_filing(self, filing_id):
        stmt = select(WorkflowExecution).where(
            WorkflowExecution.filing_id == filing_id,
            WorkflowExecution.status.in_(ACTIVE_EXECUTION_STATUSES),
        )
        return db.session.execute(stmt).scalars().first()

    def list_for_workflow(self, workflow_id):
        stmt = (
            select(WorkflowExecution)
            .where(WorkflowExecution.workflow_id == workflow_id)
            .order_by(WorkflowExecution.initiated_at.desc())
        )
        return list(db.session.execute(stmt).scalars().all())


class SqlAlchemyReminderRepository(ReminderRepository):
    def get(self, reminder_id):
        reminder = db.session.get(FilingReminder, reminder_id)
        if reminder is None:
            raise NotFoundError(resource="FilingReminder", resource_id=reminder_id)
        return reminder

    def save(self, reminder):
        return _persist(reminder)

    def find_by_key(self, workflow_id, reminder_date, recipient_key):
        stmt = select(FilingReminder).where(
            FilingReminder.workflow_id == workflow_id,
            FilingReminder.reminder_date == reminder_date,
            FilingReminder.recipient_key == recipient_key,
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def list_due(self, now):
        stmt = (
            select(FilingReminder)
            .where(FilingReminder.sent.is_(False), FilingReminder.reminder_date <= now.date())
            .order_by(FilingReminder.reminder_date, FilingReminder.id)
        )
        return list(db.session.execute(stmt).scalars().all())

    def claim(self, reminder_id, now):
        # Conditional UPDATE: only one concurrent sweeper can match sent = false.
        result = db.session.execute(
            update(FilingReminder)
            .where(FilingReminder.id == reminder_id, FilingReminder.sent.is_(False))
            .values(sent=True, sent_at=now or _utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def release(self, reminder_id):
        db.session.execute(
            update(FilingReminder)
            .where(FilingReminder.id == reminder_id)
            .values(sent=False, sent_at=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
