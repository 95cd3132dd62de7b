"""Lead service: validation, deduplication, edits and reassignment.

Free-text input is sanitized with bleach.clean() before it is stored.
agent_id is never taken from input: new leads belong to the current
actor, and only reassign_lead() (admins) moves a lead to another agent.

All functions take ``ctx`` (an AutomationEngine).
"""

import logging
import re
from datetime import datetime

import bleach

from app.models.lead import Lead
from app.services import event_bus
from app.services.auth_context import ensure_can_modify, visible_scope
from app.services.budget_bands import parse_budget_band
from app.services.contact_sync_service import contact_status_for, sync_lead_to_contact
from app.services.errors import NotFoundError, OwnershipError, ValidationError
from app.services.saga import ABORT, Saga

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fields a caller may set on create / update. status only moves through
# change_lead_status (new leads start as "new"); agent_id and
# contact_status are never client input.
EDITABLE_FIELDS = [
    "name",
    "email",
    "phone",
    "priority",
    "source",
    "category",
    "segment",
    "subtype",
    "bedrooms",
    "budget_sale_band",
    "budget_rent_band",
    "size_band",
    "location_address",
    "interest_tags",
    "notes",
    "score",
    "follow_up_date",
]

IGNORED_FIELDS = {
    "id", "agent_id", "status", "contact_status", "created_at", "updated_at", "created_by",
}

CHOICES = {
    "priority": Lead.PRIORITIES,
    "source": Lead.SOURCES,
    "category": Lead.CATEGORIES,
    "segment": Lead.SEGMENTS,
}

DUPLICATE_NOTE = "Duplicate lead attempt merged"


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def normalize_email(email):
    if not email:
        return None
    return email.strip().lower() or None


def normalize_phone(phone):
    if not phone:
        return None
    return str(phone).strip() or None


def _clean_tags(tags):
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("interest_tags must be a list.")
    cleaned = []
    for tag in tags:
        tag = _sanitize(tag)
        if tag and tag.lower() not in (t.lower() for t in cleaned):
            cleaned.append(tag)
    return cleaned


def _parse_datetime(value, field):
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date/time.") from None


def validate_lead_data(data, partial=False):
    """Check and clean lead input.

    Args:
        data: dict of submitted fields. Unknown fields are rejected; id /
            status / agent_id / contact_status are dropped silently.
        partial: True for updates (name not required).

    Returns:
        A cleaned dict containing only EDITABLE_FIELDS.

    Raises:
        ValidationError: On the first invalid field.
    """
    unknown = set(data) - set(EDITABLE_FIELDS) - IGNORED_FIELDS
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

    cleaned = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}

    for field in ("name", "subtype", "bedrooms", "size_band", "location_address", "notes"):
        if field in cleaned:
            cleaned[field] = _sanitize(cleaned[field]) or None

    if not partial and not cleaned.get("name"):
        raise ValidationError("Name is required.")
    if partial and "name" in cleaned and not cleaned["name"]:
        raise ValidationError("Name is required.")

    if "email" in cleaned:
        cleaned["email"] = normalize_email(cleaned["email"])
        if cleaned["email"] and not EMAIL_RE.match(cleaned["email"]):
            raise ValidationError("Enter a valid email address.")
    if "phone" in cleaned:
        cleaned["phone"] = normalize_phone(cleaned["phone"])

    for field, allowed in CHOICES.items():
        value = cleaned.get(field)
        if value is not None and value not in allowed:
            raise ValidationError(
                f"Invalid {field} '{value}'. Must be one of: {', '.join(allowed)}"
            )

    for field in ("budget_sale_band", "budget_rent_band"):
        if field in cleaned:
            band = (cleaned[field] or "").strip() or None
            if band and not parse_budget_band(band).recognized:
                raise ValidationError(f"Unrecognized budget band '{band}'.")
            cleaned[field] = band

    if "interest_tags" in cleaned:
        cleaned["interest_tags"] = _clean_tags(cleaned["interest_tags"])

    if "score" in cleaned:
        try:
            score = int(cleaned["score"] or 0)
        except (TypeError, ValueError):
            raise ValidationError("Score must be a number.") from None
        if not 0 <= score <= 100:
            raise ValidationError("Score must be between 0 and 100.")
        cleaned["score"] = score

    if "follow_up_date" in cleaned:
        cleaned["follow_up_date"] = _parse_datetime(cleaned["follow_up_date"], "follow_up_date")

    return cleaned


def find_duplicate(ctx, email=None, phone=None):
    """First visible lead matching ``email`` OR ``phone``, oldest first."""
    any_of = []
    if email:
        any_of.append({"email": normalize_email(email)})
    if phone:
        any_of.append({"phone": normalize_phone(phone)})
    if not any_of:
        return None
    matches = ctx.store.query(
        "leads",
        visible_scope(ctx.actor_id, ctx.is_admin),
        any_of=any_of,
        limit=1,
    )
    return matches[0] if matches else None


def resolve_or_create_lead(ctx, candidate):
    """Return the existing lead for this identity, or insert a new one.

    A duplicate is returned unmodified; the submission's data is not
    merged into it. One note activity records the attempt.

    Returns:
        (lead, was_duplicate)

    Raises:
        ValidationError: Bad input (nothing written).
        PrimaryWriteError: The insert failed (nothing written).
    """
    data = validate_lead_data(candidate)

    existing = find_duplicate(ctx, data.get("email"), data.get("phone"))
    if existing is not None:
        ctx.activities.record("note", DUPLICATE_NOTE, {"lead_id": existing.id}, ctx.actor_id)
        logger.info(f"Duplicate lead submission merged into {existing.id}")
        return existing, True

    if ctx.actor_id is None:
        raise ValidationError("A signed-in agent is required to create leads.")

    data.update(agent_id=ctx.actor_id, status="new", contact_status=contact_status_for("new"))
    data.setdefault("interest_tags", [])

    saga = Saga("create lead")
    saga.step("insert lead", lambda: ctx.store.insert("leads", data), on_error=ABORT)
    lead = saga.run()["insert lead"]
    logger.info(f"Lead {lead.id} created by {ctx.actor_id}")
    return lead, False


def get_lead(ctx, lead_id):
    lead = ctx.store.get("leads", lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    if not ctx.is_admin and lead.agent_id != ctx.actor_id:
        raise NotFoundError("Lead not found.")
    return lead


def list_leads(ctx, status=None, search=None, tag=None, limit=None):
    """Visible leads, newest first."""
    filters = visible_scope(ctx.actor_id, ctx.is_admin)
    if status:
        filters["status"] = status
    if tag:
        filters["interest_tags__contains"] = tag
    any_of = None
    if search:
        any_of = [
            {"name__ilike": search},
            {"email__ilike": search},
            {"phone__ilike": search},
        ]
    return ctx.store.query(
        "leads",
        filters,
        any_of=any_of,
        order_by=["-created_at", "id"],
        limit=limit or ctx.setting("LEAD_LIST_LIMIT", 200),
    )


def update_lead(ctx, lead_id, patch):
    """Apply field edits to a lead, then re-sync its contact.

    A ``status`` in the patch is applied through on_lead_status_change by
    the caller; it is not written here.
    """
    data = validate_lead_data(patch, partial=True)
    lead = ctx.store.get("leads", lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    ensure_can_modify(lead, ctx.actor_id, ctx.is_admin)

    if not data:
        return lead

    saga = Saga("update lead")
    saga.step("write lead", lambda: ctx.store.update("leads", lead_id, data), on_error=ABORT)
    saga.step("sync contact", lambda: sync_lead_to_contact(ctx, lead))
    result = saga.run()

    ctx.bus.publish_entity_change(event_bus.LEADS_CHANGED, {"lead_id": lead_id})
    return result["write lead"]


def reassign_lead(ctx, lead_id, new_agent_id):
    """Move a lead (and its open tasks) to another agent. Admins only."""
    if not ctx.is_admin:
        raise OwnershipError("Only admins can reassign leads.")
    if not new_agent_id:
        raise ValidationError("Agent is required.")

    lead = ctx.store.get("leads", lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    if not ctx.user_exists(new_agent_id):
        raise NotFoundError("Agent not found.")
    old_agent_id = lead.agent_id
    if old_agent_id == new_agent_id:
        return lead

    def write_assignment():
        with ctx.store.atomic():
            updated = ctx.store.update("leads", lead_id, {"agent_id": new_agent_id})
            ctx.activities.record(
                "assignment",
                "Lead reassigned to a new agent",
                {"lead_id": lead_id},
                ctx.actor_id,
                required=True,
            )
        return updated

    def move_open_tasks():
        moved = 0
        events = ctx.store.query(
            "calendar_events", {"lead_id": lead_id, "status": "scheduled"}
        )
        for event in events:
            ctx.store.update("calendar_events", event.id, {"agent_id": new_agent_id})
            moved += 1
        return moved

    saga = Saga("reassign lead")
    saga.step("write assignment", write_assignment, on_error=ABORT)
    saga.step("move open tasks", move_open_tasks)
    saga.step(
        "notify new agent",
        lambda: ctx.notifier.notify(
            new_agent_id,
            "Lead assigned to you",
            f"{lead.name} has been assigned to you",
            priority="high",
            links={"lead_id": lead_id},
        ),
    )
    result = saga.run()

    logger.info(f"Lead {lead_id} reassigned {old_agent_id} -> {new_agent_id}")
    ctx.bus.publish_entity_change(event_bus.LEADS_CHANGED, {"lead_id": lead_id})
    if result.get("move open tasks"):
        ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"lead_id": lead_id})
    return result["write assignment"]

