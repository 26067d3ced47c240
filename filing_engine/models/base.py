"""
Regulatory Filing Platform
Shared model base.

Filings, workflows, executions and reminders carry a non-null ``tenant_id``
through TenantModel; repositories add the tenant predicate to every lookup.
Primary keys are UUID strings from ``new_id()``; timestamps are UTC.
"""

import uuid
from datetime import datetime, timezone

from filing_engine.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def new_id():
    """Opaque UUID string for primary keys."""
    return str(uuid.uuid4())


def iso(value):
    return value.isoformat() if value else None


def as_utc(value):
    """SQLite hands back naive datetimes even for timezone=True columns."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def one_of(column, values, name):
    """CHECK constraint limiting ``column`` to ``values`` (NULL passes)."""
    allowed = ",".join(f"'{v}'" for v in sorted(values))
    return db.CheckConstraint(f"{column} IN ({allowed})", name=name)


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def tenant_composite_index(cls, table_name, *extra_cols):
        """Build a (tenant_id, ...) composite index for ``__table_args__``."""
        name = f"ix_{table_name}_tenant_{'_'.join(extra_cols)}"
        return db.Index(name, "tenant_id", *extra_cols)


class Tenant(db.Model):
    """Owning organisation. Tenant CRUD lives outside this service."""

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Tenant {self.slug}>"
