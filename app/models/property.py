"""Property models.

- Property: a listing, owned by one agent, optionally linked to an owner lead.
- ContactPropertyLink: many-to-many between leads/contacts and properties,
  tagged with the person's role on the listing.
"""

import uuid

from app.extensions import db


class Property(db.Model):
    __tablename__ = "properties"

    # -- Valid statuses --
    STATUSES = [
        "available",
        "pending",
        "sold",
        "rented",
        "off_market",
        "in_development",
        "vacant",
    ]

    # -- Statuses that close a listing --
    CLOSED_STATUSES = ["sold", "rented"]

    OFFER_TYPES = ["sale", "rent"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(50), default="available", nullable=False)
    offer_type = db.Column(db.String(10), nullable=False)  # sale | rent
    segment = db.Column(db.String(50), nullable=True)
    subtype = db.Column(db.String(100), nullable=True)
    bedrooms = db.Column(db.Integer, nullable=True)
    bathrooms = db.Column(db.Integer, nullable=True)
    area_sqft = db.Column(db.Integer, nullable=True)
    address = db.Column(db.String(500), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    agent_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    owner_contact_id = db.Column(
        db.String(36), db.ForeignKey("leads.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    agent = db.relationship("User", back_populates="properties")
    owner = db.relationship("Lead", foreign_keys=[owner_contact_id])
    contact_links = db.relationship(
        "ContactPropertyLink", back_populates="property", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Property {self.title} ({self.status})>"


class ContactPropertyLink(db.Model):
    __tablename__ = "contact_properties"

    ROLES = ["owner", "buyer_interest", "tenant", "investor"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    contact_id = db.Column(
        db.String(36), db.ForeignKey("leads.id"), nullable=False, index=True
    )
    property_id = db.Column(
        db.String(36),
        db.ForeignKey("properties.id"),
        nullable=False,
        index=True,
    )
    role = db.Column(db.String(50), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint(
            "contact_id", "property_id", "role", name="uq_contact_property_role"
        ),
    )

    # --- Relationships ---
    contact = db.relationship("Lead", back_populates="property_links")
    property = db.relationship("Property", back_populates="contact_links")

    def __repr__(self):
        return f"<ContactPropertyLink {self.role} contact={self.contact_id} property={self.property_id}>"
