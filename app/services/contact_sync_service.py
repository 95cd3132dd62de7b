"""Lead <-> Contact synchronizer.

Every lead has exactly one contact sharing its id. The contact's lifecycle
and the lead's contact_status are both derived from lead.status:

    lead.status                        contact_status   status_effective
    new                                lead             active
    contacted / qualified / negotiating contacted        active
    won                                active_client    past
    lost                               past_client      past

All functions take ``ctx`` (an AutomationEngine) for the store, bus,
activity logger, notifier, actor and clock.
"""

import logging

from app.models.lead import Lead
from app.services import event_bus
from app.services.auth_context import ensure_can_modify
from app.services.budget_bands import parse_budget_band
from app.services.errors import NotFoundError, OwnershipError, StoreError, ValidationError
from app.services.saga import ABORT, Saga

logger = logging.getLogger(__name__)

CONTACT_STATUS_BY_STATUS = {
    "new": "lead",
    "contacted": "contacted",
    "qualified": "contacted",
    "negotiating": "contacted",
    "won": "active_client",
    "lost": "past_client",
}

STATUS_EFFECTIVE_BY_STATUS = {
    "new": "active",
    "contacted": "active",
    "qualified": "active",
    "negotiating": "active",
    "won": "past",
    "lost": "past",
}

CONVERSION_ACTIVITIES = {
    "won": "Lead converted to Active Client - Won",
    "lost": "Lead converted to Past Client - Lost",
}

# Contact field -> lead field for the edits a contact accepts.
LEAD_FIELD_FOR = {
    "full_name": "name",
    "email": "email",
    "phone": "phone",
    "marketing_source": "source",
    "interest_tags": "interest_tags",
}
CONTACT_EDITABLE_FIELDS = list(LEAD_FIELD_FOR)


def _check_status(status):
    if not isinstance(status, str) or status not in CONTACT_STATUS_BY_STATUS:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(Lead.STATUSES)}"
        )


def contact_status_for(status):
    """Map a pipeline status to the lead's contact_status."""
    _check_status(status)
    return CONTACT_STATUS_BY_STATUS[status]


def status_effective_for(status):
    _check_status(status)
    return STATUS_EFFECTIVE_BY_STATUS[status]


def _has_tag(tags, tag):
    return any(str(t).lower() == tag.lower() for t in (tags or []))


def _preferences(lead):
    """Structured search preferences for residential buyer / tenant leads."""
    buyer = tenant = None
    if lead.segment != "residential":
        return buyer, tenant

    base = {
        "subtype": lead.subtype,
        "bedrooms": lead.bedrooms,
        "size_band": lead.size_band,
        "location": lead.location_address,
    }
    if _has_tag(lead.interest_tags, "Buyer"):
        sale = parse_budget_band(lead.budget_sale_band)
        buyer = dict(base, budget_min=sale.min, budget_max=sale.max)
    if _has_tag(lead.interest_tags, "Tenant"):
        rent = parse_budget_band(lead.budget_rent_band)
        tenant = dict(base, budget_min=rent.min, budget_max=rent.max)
    return buyer, tenant


def contact_fields_for(lead):
    """Contact column values derived from the current lead state."""
    band = parse_budget_band(lead.budget_sale_band or lead.budget_rent_band)
    buyer, tenant = _preferences(lead)
    return {
        "full_name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "marketing_source": lead.source,
        "interest_tags": list(lead.interest_tags or []),
        "status_effective": status_effective_for(lead.status),
        "budget_min": band.min,
        "budget_max": band.max,
        "buyer_preferences": buyer,
        "tenant_preferences": tenant,
    }


def sync_lead_to_contact(ctx, lead):
    """Upsert the contact with the same id as ``lead``.

    Idempotent: syncing the same lead state twice leaves one contact with
    the same field values.
    """
    fields = contact_fields_for(lead)
    contact = ctx.store.get("contacts", lead.id)
    if contact is None:
        fields.update(id=lead.id, created_by=ctx.actor_id or lead.agent_id)
        contact = ctx.store.insert("contacts", fields)
        logger.info(f"Contact created for lead {lead.id}")
    else:
        changed = {k: v for k, v in fields.items() if getattr(contact, k) != v}
        if changed:
            contact = ctx.store.update("contacts", lead.id, changed)
    return contact


def on_lead_status_change(ctx, lead_id, new_status):
    """Move a lead to ``new_status`` and run the follow-on writes.

    The status, the derived contact_status and (for won/lost) the
    conversion activity are one atomic write. The contact upsert, the
    generic status activity and the agent notification are best-effort.

    Returns:
        (lead, SagaResult) -- result is None when the status did not change.

    Raises:
        ValidationError, NotFoundError, OwnershipError, PrimaryWriteError.
    """
    contact_status = contact_status_for(new_status)

    lead = ctx.store.get("leads", lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    ensure_can_modify(lead, ctx.actor_id, ctx.is_admin)

    old_status = lead.status
    if old_status == new_status:
        return lead, None

    def write_status():
        with ctx.store.atomic():
            updated = ctx.store.update(
                "leads", lead_id, {"status": new_status, "contact_status": contact_status}
            )
            if new_status in CONVERSION_ACTIVITIES:
                ctx.activities.record(
                    "status_change",
                    CONVERSION_ACTIVITIES[new_status],
                    {"lead_id": lead_id},
                    ctx.actor_id,
                    required=True,
                )
        return updated

    def log_transition():
        if new_status in CONVERSION_ACTIVITIES:
            return None
        return ctx.activities.record(
            "status_change",
            f"Status changed from {old_status} to {new_status}",
            {"lead_id": lead_id},
            ctx.actor_id,
        )

    def notify_agent():
        if not lead.agent_id or lead.agent_id == ctx.actor_id:
            return None
        return ctx.notifier.notify(
            lead.agent_id,
            "Lead status updated",
            f"{lead.name} moved from {old_status} to {new_status}",
            priority="medium",
            links={"lead_id": lead_id},
        )

    saga = Saga("update lead status")
    saga.step("write status", write_status, on_error=ABORT)
    saga.step("sync contact", lambda: sync_lead_to_contact(ctx, lead))
    saga.step("log transition", log_transition)
    saga.step("notify agent", notify_agent)
    result = saga.run()

    logger.info(f"Lead {lead_id} status {old_status} -> {new_status}")
    ctx.bus.publish_entity_change(
        event_bus.LEADS_CHANGED, {"lead_id": lead_id, "status": new_status}
    )
    return result["write status"], result


def update_contact(ctx, contact_id, patch):
    """Edit a contact and mirror it onto the lead, then re-derive the contact.

    The edit is cleaned with the lead rules first, so both rows receive the
    same values.
    """
    from app.services.lead_service import validate_lead_data

    unknown = set(patch) - set(CONTACT_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Field(s) cannot be edited: {', '.join(sorted(unknown))}"
        )

    contact = ctx.store.get("contacts", contact_id)
    if contact is None:
        raise NotFoundError("Contact not found.")
    lead = ctx.store.get("leads", contact_id)
    if lead is not None:
        ensure_can_modify(lead, ctx.actor_id, ctx.is_admin)
    elif not ctx.is_admin and contact.created_by != ctx.actor_id:
        raise OwnershipError("You can only modify your own records.")

    lead_patch = validate_lead_data(
        {LEAD_FIELD_FOR[field]: value for field, value in patch.items()}, partial=True
    )
    contact_patch = {
        field: lead_patch[lead_field]
        for field, lead_field in LEAD_FIELD_FOR.items()
        if lead_field in lead_patch
    }
    if not contact_patch:
        return contact

    def write_contact():
        with ctx.store.atomic():
            updated = ctx.store.update("contacts", contact_id, contact_patch)
            if lead is not None:
                ctx.store.update("leads", contact_id, lead_patch)
        return updated

    def resync():
        if lead is None:
            return None
        return sync_lead_to_contact(ctx, ctx.store.get("leads", contact_id))

    saga = Saga("update contact")
    saga.step("write contact", write_contact, on_error=ABORT)
    saga.step("sync contact", resync)
    result = saga.run()

    ctx.bus.publish_entity_change(event_bus.CONTACTS_UPDATED, {"contact_id": contact_id})
    return result["write contact"]


def bulk_sync(ctx):
    """Re-sync every lead to its contact. Returns processed / error counts."""
    processed = errors = 0
    for lead in ctx.store.query("leads"):
        try:
            sync_lead_to_contact(ctx, lead)
            processed += 1
        except (StoreError, ValidationError) as e:
            errors += 1
            logger.error(f"Contact sync failed for lead {lead.id}: {e}")
    logger.info(f"Bulk contact sync: {processed} synced, {errors} failed")
    if processed:
        ctx.bus.publish_entity_change(event_bus.CONTACTS_UPDATED, {"bulk": True})
    return {"processed": processed, "errors": errors}
