"""CalendarEvent model: scheduled calls, meetings, viewings and tasks.

Created by users or by the automation engine; moves to "completed" by
explicit action or by the property closure cascade.
"""

import uuid

from app.extensions import db


class CalendarEvent(db.Model):
    __tablename__ = "calendar_events"

    TYPES = [
        "property_viewing",
        "lead_call",
        "contact_meeting",
        "follow_up",
        "task",
        "lead_followup",
        "general",
    ]

    STATUSES = ["scheduled", "completed", "cancelled", "rescheduled"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    event_type = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(50), default="scheduled", nullable=False)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    location = db.Column(db.String(500), nullable=True)
    lead_id = db.Column(
        db.String(36), db.ForeignKey("leads.id"), nullable=True, index=True
    )
    property_id = db.Column(
        db.String(36), db.ForeignKey("properties.id"), nullable=True, index=True
    )
    contact_id = db.Column(db.String(36), nullable=True)
    agent_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    created_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    reminder_offset_min = db.Column(db.Integer, default=15)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<CalendarEvent {self.title} ({self.event_type}, {self.status})>"
