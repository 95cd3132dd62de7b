"""Activity model: append-only audit trail.

One row per state-changing action, linked to every entity it touches
(lead, property, contact). Rows are never updated or deleted; the
entity store refuses both for this table.
"""

import uuid

from app.extensions import db


class Activity(db.Model):
    __tablename__ = "activities"

    TYPES = [
        "call",
        "email",
        "meeting",
        "note",
        "follow_up",
        "whatsapp",
        "status_change",
        "contact_status_change",
        "system",
        "task_created",
        "task_completed",
        "task_rescheduled",
        "upload",
        "assignment",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    type = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text, nullable=False)
    lead_id = db.Column(
        db.String(36), db.ForeignKey("leads.id"), nullable=True, index=True
    )
    property_id = db.Column(
        db.String(36), db.ForeignKey("properties.id"), nullable=True, index=True
    )
    contact_id = db.Column(db.String(36), nullable=True)
    created_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<Activity {self.type}: {self.description[:40]}>"
