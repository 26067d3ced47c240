"""
Regulatory Filing Platform
In-app notification model.

A row is addressed to one recipient: a user name (e.g. the filing's
preparer), a role (e.g. "compliance_officer") or BROADCAST. Rows are
written once and only their read flag changes afterwards.
"""

from filing_engine.models import db
from filing_engine.models.base import _utcnow, iso, one_of

BROADCAST = "all"

NOTIFICATION_CATEGORIES = {"deadline", "filing", "workflow", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_inbox", "tenant_id", "recipient", "is_read"),
        one_of("category", NOTIFICATION_CATEGORIES, "ck_notifications_category"),
        one_of("severity", NOTIFICATION_SEVERITIES, "ck_notifications_severity"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Nullable: platform-wide notices are not tied to a tenant
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True)
    recipient = db.Column(db.String(150), nullable=False, default=BROADCAST)

    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="info")

    entity_type = db.Column(db.String(30), default="",
                            comment="filing | workflow | workflow_execution")
    entity_id = db.Column(db.String(36), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_broadcast(self):
        return self.recipient == BROADCAST

    def mark_read(self):
        self.is_read = True
        self.read_at = _utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "recipient": self.recipient,
            "broadcast": self.is_broadcast,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id} → {self.recipient}: {self.title[:40]}>"
