"""Owner-tag assigner.

A property's owner carries a role tag derived from the offer type:
sale -> "seller", rent -> "landlord". Tagging is idempotent. Membership
is checked case-insensitively, so an owner already tagged "Seller" is
left alone.
"""

import logging

from app.models.property import Property
from app.services import event_bus
from app.services.auth_context import ensure_can_modify
from app.services.contact_sync_service import sync_lead_to_contact
from app.services.errors import NotFoundError, ValidationError
from app.services.saga import ABORT, Saga

logger = logging.getLogger(__name__)

OWNER_ROLE = "owner"


def tag_for_offer_type(offer_type):
    if offer_type not in Property.OFFER_TYPES:
        raise ValidationError(
            f"Invalid offer type '{offer_type}'. Must be one of: {', '.join(Property.OFFER_TYPES)}"
        )
    return "seller" if offer_type == "sale" else "landlord"


def has_tag(tags, tag):
    return any(str(t).lower() == tag.lower() for t in (tags or []))


def ensure_owner_tag(ctx, owner_lead_id, offer_type):
    """Append the owner tag when missing.

    Only the owner lead's agent (or an admin) may tag it.

    Returns:
        True if the tag was added, False if it was already there.
    """
    tag = tag_for_offer_type(offer_type)
    owner = ctx.store.get("leads", owner_lead_id)
    if owner is None:
        raise NotFoundError("Owner not found.")
    ensure_can_modify(owner, ctx.actor_id, ctx.is_admin)

    tags = list(owner.interest_tags or [])
    if has_tag(tags, tag):
        return False

    ctx.store.update("leads", owner_lead_id, {"interest_tags": tags + [tag]})
    ctx.activities.record(
        "note",
        f"Auto-tagged as {tag} (property owner)",
        {"lead_id": owner_lead_id},
        ctx.actor_id,
    )
    logger.info(f"Lead {owner_lead_id} tagged '{tag}'")
    return True


def link_property_to_owner(ctx, property_id, owner_lead_id, offer_type=None):
    """Set the property's owner, tag the owner and record one combined activity.

    The actor must be able to modify both the property and the owner lead.
    """
    prop = ctx.store.get("properties", property_id)
    if prop is None:
        raise NotFoundError("Property not found.")
    ensure_can_modify(prop, ctx.actor_id, ctx.is_admin)
    offer_type = offer_type or prop.offer_type
    tag = tag_for_offer_type(offer_type)
    owner = ctx.store.get("leads", owner_lead_id)
    if owner is None:
        raise NotFoundError("Owner not found.")
    ensure_can_modify(owner, ctx.actor_id, ctx.is_admin)

    def ensure_owner_link():
        existing = ctx.store.query(
            "contact_properties",
            {"contact_id": owner_lead_id, "property_id": property_id, "role": OWNER_ROLE},
            limit=1,
        )
        if existing:
            return existing[0]
        return ctx.store.insert(
            "contact_properties",
            {"contact_id": owner_lead_id, "property_id": property_id, "role": OWNER_ROLE},
        )

    saga = Saga("link property owner")
    saga.step(
        "write owner",
        lambda: ctx.store.update("properties", property_id, {"owner_contact_id": owner_lead_id}),
        on_error=ABORT,
    )
    saga.step("owner link", ensure_owner_link)
    saga.step("owner tag", lambda: ensure_owner_tag(ctx, owner_lead_id, offer_type))
    saga.step("sync contact", lambda: sync_lead_to_contact(ctx, owner))
    saga.step(
        "log link",
        lambda: ctx.activities.record(
            "note",
            f"Linked as owner of {prop.title} and tagged {tag}",
            {"lead_id": owner_lead_id, "property_id": property_id},
            ctx.actor_id,
        ),
    )
    result = saga.run()

    ctx.bus.publish(event_bus.PROPERTIES_REFRESH, {"property_id": property_id})
    ctx.bus.publish_entity_change(event_bus.LEADS_CHANGED, {"lead_id": owner_lead_id})
    return result
