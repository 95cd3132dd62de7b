"""Notification model: in-app messages addressed to one agent.

Only the is_read flag changes after creation.
"""

import uuid

from app.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    TYPES = ["info", "warning", "error", "success", "reminder"]
    PRIORITIES = ["low", "medium", "high", "urgent"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), default="info", nullable=False)
    priority = db.Column(db.String(20), default="medium", nullable=False)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    lead_id = db.Column(
        db.String(36), db.ForeignKey("leads.id"), nullable=True
    )
    property_id = db.Column(
        db.String(36), db.ForeignKey("properties.id"), nullable=True
    )
    event_id = db.Column(
        db.String(36), db.ForeignKey("calendar_events.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="notifications")

    def __repr__(self):
        return f"<Notification {self.title} -> {self.user_id}>"
