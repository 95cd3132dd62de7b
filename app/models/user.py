"""User model.

An agent account. Agents own the leads and properties they create;
admins can see and act on every record.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from app.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    phone = db.Column(db.String(50), nullable=True)
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    leads = db.relationship(
        "Lead", back_populates="agent", lazy="dynamic"
    )
    properties = db.relationship(
        "Property", back_populates="agent", lazy="dynamic"
    )
    notifications = db.relationship(
        "Notification",
        back_populates="user",
        lazy="dynamic",
        order_by="Notification.created_at.desc()",
    )

    def __repr__(self):
        return f"<User {self.email}>"
