"""Lead model (sales pipeline).

Pipeline: new -> contacted -> qualified -> negotiating -> won | lost

contact_status is never set directly; it is derived from status by
contact_sync_service.contact_status_for() on every write.
"""

import uuid

from app.extensions import db


class Lead(db.Model):
    __tablename__ = "leads"

    # -- Valid pipeline statuses --
    STATUSES = ["new", "contacted", "qualified", "negotiating", "won", "lost"]

    # -- Derived contact lifecycle --
    CONTACT_STATUSES = ["lead", "contacted", "active_client", "past_client"]

    PRIORITIES = ["low", "medium", "high"]

    SOURCES = [
        "referral",
        "website",
        "social_media",
        "advertisement",
        "cold_call",
        "email",
        "other",
    ]

    SEGMENTS = ["residential", "commercial"]
    CATEGORIES = ["property", "requirement"]

    # Role labels used in interest_tags
    INTEREST_TAGS = ["Buyer", "Seller", "Landlord", "Tenant", "Investor"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(50), nullable=True, index=True)
    status = db.Column(db.String(50), default="new", nullable=False)
    priority = db.Column(db.String(20), default="medium", nullable=False)
    contact_status = db.Column(db.String(50), default="lead", nullable=False)
    source = db.Column(db.String(50), default="referral", nullable=False)
    agent_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True, index=True
    )

    # --- Requirement fields ---
    category = db.Column(db.String(50), nullable=True)  # property | requirement
    segment = db.Column(db.String(50), nullable=True)  # residential | commercial
    subtype = db.Column(db.String(100), nullable=True)
    bedrooms = db.Column(db.String(20), nullable=True)
    budget_sale_band = db.Column(db.String(100), nullable=True)  # e.g. "AED1M – AED2M"
    budget_rent_band = db.Column(db.String(100), nullable=True)
    size_band = db.Column(db.String(100), nullable=True)
    location_address = db.Column(db.String(500), nullable=True)

    interest_tags = db.Column(db.JSON, default=list)
    notes = db.Column(db.Text, nullable=True)
    score = db.Column(db.Integer, default=0)
    follow_up_date = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    agent = db.relationship("User", back_populates="leads")
    property_links = db.relationship(
        "ContactPropertyLink", back_populates="contact", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Lead {self.name} ({self.status})>"
