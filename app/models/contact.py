"""Contact model: the person view of a lead.

A contact shares its primary key with the lead it was synced from, so
contacts.id == leads.id for every synced pair. Rows are written only by
contact_sync_service (upsert keyed by id).
"""

from app.extensions import db


class Contact(db.Model):
    __tablename__ = "contacts"

    STATUSES = ["active", "past"]

    id = db.Column(db.String(36), primary_key=True)  # same id as the lead
    full_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(50), nullable=True)
    marketing_source = db.Column(db.String(50), nullable=True)
    interest_tags = db.Column(db.JSON, default=list)
    status_effective = db.Column(
        db.String(20), default="active", nullable=False
    )  # active | past
    budget_min = db.Column(db.BigInteger, nullable=True)
    budget_max = db.Column(db.BigInteger, nullable=True)
    buyer_preferences = db.Column(db.JSON, nullable=True)
    tenant_preferences = db.Column(db.JSON, nullable=True)
    created_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<Contact {self.full_name} ({self.status_effective})>"
