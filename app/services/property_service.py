"""Property service: listings and the status rule engine.

Status transitions and their cascades:

    * -> pending               one follow-up task PENDING_CHECK_DAYS out
    * -> sold | rented         linked leads -> won (unless already won),
                               open events on the property -> completed,
                               one closure notification to the agent
    sold | rented -> available availability notification, linked lost
                               leads reopened as contacted

The status write and its "Status changed from X to Y" activity are one
atomic write. Each cascade item runs on its own; failures are logged and
collected in the CascadeReport instead of stopping the rest.
"""

import logging
from decimal import Decimal, InvalidOperation

import bleach

from app.models.property import Property
from app.services import event_bus
from app.services.auth_context import ensure_can_modify
from app.services.contact_sync_service import on_lead_status_change
from app.services.errors import NotFoundError, PrimaryWriteError, StoreError, ValidationError
from app.services.owner_tag_service import link_property_to_owner
from app.services.saga import ABORT, Saga
from app.services.scheduler_service import schedule_pending_check

logger = logging.getLogger(__name__)

REOPEN_FROM = set(Property.CLOSED_STATUSES)

EDITABLE_FIELDS = [
    "title",
    "description",
    "price",
    "status",
    "offer_type",
    "segment",
    "subtype",
    "bedrooms",
    "bathrooms",
    "area_sqft",
    "address",
    "city",
    "owner_contact_id",
]


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


class CascadeReport:
    """What a status transition did, step by step."""

    def __init__(self, property_id, old_status, new_status):
        self.property_id = property_id
        self.old_status = old_status
        self.new_status = new_status
        self.completed = []
        self.failures = []  # list of (step, error message)

    @property
    def ok(self):
        return not self.failures

    def run(self, step, fn, expect_result=False):
        """Run one cascade item; log and collect any failure.

        With ``expect_result`` a None return counts as a failure too, for
        steps whose callee logs its own errors and returns None.
        """
        try:
            value = fn()
            if expect_result and value is None:
                raise StoreError(f"{step} was not recorded")
        except Exception as e:
            logger.warning(
                f"Property {self.property_id} {self.old_status}->{self.new_status}: "
                f"'{step}' failed: {e}"
            )
            self.failures.append((step, str(e)))
            return None
        self.completed.append(step)
        return value

    def as_dict(self):
        return {
            "property_id": self.property_id,
            "from": self.old_status,
            "to": self.new_status,
            "completed": list(self.completed),
            "failures": [{"step": s, "error": e} for s, e in self.failures],
        }


def _validate_status(status):
    if status not in Property.STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(Property.STATUSES)}"
        )


def _linked_leads(ctx, property_id):
    """Leads linked to the property through contact_properties, oldest link first."""
    seen = set()
    leads = []
    for link in ctx.store.query("contact_properties", {"property_id": property_id}):
        if link.contact_id in seen:
            continue
        seen.add(link.contact_id)
        lead = ctx.store.get("leads", link.contact_id)
        if lead is not None:
            leads.append(lead)
    return leads


def on_property_status_change(ctx, property_id, old_status, new_status, agent_id,
                              record_transition=True):
    """Run the cascade for one property status transition.

    Args:
        record_transition: Write the "Status changed" activity here. The
            caller passes False when it already wrote it atomically with
            the status.

    Returns:
        CascadeReport.
    """
    report = CascadeReport(property_id, old_status, new_status)
    if old_status == new_status:
        return report

    prop = ctx.store.get("properties", property_id)
    if prop is None:
        raise NotFoundError("Property not found.")
    agent_id = agent_id or prop.agent_id

    if record_transition:
        report.run(
            "log transition",
            lambda: ctx.activities.record(
                "status_change",
                f"Status changed from {old_status} to {new_status}",
                {"property_id": property_id},
                ctx.actor_id,
                required=True,
            ),
        )

    if new_status == "pending":
        report.run("pending check", lambda: schedule_pending_check(ctx, prop))

    elif new_status in Property.CLOSED_STATUSES:
        won = 0
        for lead in _linked_leads(ctx, property_id):
            if lead.status == "won":
                continue
            if report.run(
                f"lead {lead.id} won",
                lambda lead=lead: on_lead_status_change(ctx, lead.id, "won"),
            ) is not None:
                won += 1

        closed = 0
        open_events = ctx.store.query(
            "calendar_events", {"property_id": property_id, "status": "scheduled"}
        )
        for event in open_events:
            if report.run(
                f"event {event.id} completed",
                lambda event=event: ctx.store.update(
                    "calendar_events", event.id, {"status": "completed"}
                ),
            ) is not None:
                closed += 1

        report.run(
            "closure notification",
            lambda: ctx.notifier.notify(
                agent_id,
                f"Property {new_status}",
                f"{prop.title} was marked {new_status}. "
                f"{won} lead(s) marked won, {closed} open task(s) completed.",
                priority="high",
                links={"property_id": property_id},
                type="success",
            ),
            expect_result=True,
        )

    elif new_status == "available" and old_status in REOPEN_FROM:
        report.run(
            "availability notification",
            lambda: ctx.notifier.notify(
                agent_id,
                "Property available again",
                f"{prop.title} is back on the market (was {old_status}).",
                priority="medium",
                links={"property_id": property_id},
            ),
            expect_result=True,
        )
        for lead in _linked_leads(ctx, property_id):
            if lead.status != "lost":
                continue
            report.run(
                f"lead {lead.id} reopened",
                lambda lead=lead: on_lead_status_change(ctx, lead.id, "contacted"),
            )

    logger.info(
        f"Property {property_id} {old_status} -> {new_status}: "
        f"{len(report.completed)} step(s) done, {len(report.failures)} failed"
    )
    return report


def change_property_status(ctx, property_id, new_status):
    """Write a property's new status and run its cascade.

    Returns:
        (property, CascadeReport)
    """
    _validate_status(new_status)
    prop = ctx.store.get("properties", property_id)
    if prop is None:
        raise NotFoundError("Property not found.")
    ensure_can_modify(prop, ctx.actor_id, ctx.is_admin)

    old_status = prop.status
    if old_status == new_status:
        return prop, CascadeReport(property_id, old_status, new_status)

    def write_status():
        with ctx.store.atomic():
            updated = ctx.store.update("properties", property_id, {"status": new_status})
            ctx.activities.record(
                "status_change",
                f"Status changed from {old_status} to {new_status}",
                {"property_id": property_id},
                ctx.actor_id,
                required=True,
            )
        return updated

    saga = Saga("update property status")
    saga.step("write status", write_status, on_error=ABORT)
    prop = saga.run()["write status"]

    report = on_property_status_change(
        ctx, property_id, old_status, new_status, prop.agent_id, record_transition=False
    )

    ctx.bus.publish(event_bus.PROPERTIES_REFRESH, {"property_id": property_id})
    ctx.bus.publish(event_bus.ACTIVITIES_REFRESH, {"property_id": property_id})
    if new_status == "pending" or new_status in Property.CLOSED_STATUSES:
        ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"property_id": property_id})
    return prop, report


def validate_property_data(data, partial=False):
    unknown = set(data) - set(EDITABLE_FIELDS) - {"id", "agent_id", "created_at", "updated_at"}
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    cleaned = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}

    for field in ("title", "description", "subtype", "address", "city", "segment"):
        if field in cleaned:
            cleaned[field] = _sanitize(cleaned[field]) or None

    if not partial and not cleaned.get("title"):
        raise ValidationError("Title is required.")
    if not partial and not cleaned.get("offer_type"):
        raise ValidationError("Offer type is required.")
    if "offer_type" in cleaned and cleaned["offer_type"] not in Property.OFFER_TYPES:
        raise ValidationError(
            f"Invalid offer type '{cleaned['offer_type']}'. Must be one of: {', '.join(Property.OFFER_TYPES)}"
        )
    if "status" in cleaned:
        _validate_status(cleaned["status"])

    if "price" in cleaned:
        try:
            price = Decimal(str(cleaned["price"] or 0))
        except InvalidOperation:
            raise ValidationError("Price must be a number.") from None
        if price < 0:
            raise ValidationError("Price cannot be negative.")
        cleaned["price"] = price

    for field in ("bedrooms", "bathrooms", "area_sqft"):
        if cleaned.get(field) is not None:
            try:
                cleaned[field] = int(cleaned[field])
            except (TypeError, ValueError):
                raise ValidationError(f"{field} must be a whole number.") from None
            if cleaned[field] < 0:
                raise ValidationError(f"{field} cannot be negative.")
    return cleaned


def create_property(ctx, data):
    """Insert a listing owned by the current actor, then link its owner."""
    cleaned = validate_property_data(data)
    if ctx.actor_id is None:
        raise ValidationError("A signed-in agent is required to create properties.")

    owner_id = cleaned.pop("owner_contact_id", None)
    if owner_id:
        owner = ctx.store.get("leads", owner_id)
        if owner is None:
            raise NotFoundError("Owner not found.")
        ensure_can_modify(owner, ctx.actor_id, ctx.is_admin)
    cleaned["agent_id"] = ctx.actor_id
    cleaned.setdefault("status", "available")

    def insert_property():
        with ctx.store.atomic():
            prop = ctx.store.insert("properties", cleaned)
            ctx.activities.record(
                "note",
                f"Property listed: {prop.title}",
                {"property_id": prop.id},
                ctx.actor_id,
                required=True,
            )
        return prop

    saga = Saga("create property")
    saga.step("insert property", insert_property, on_error=ABORT)
    prop = saga.run()["insert property"]

    if owner_id:
        try:
            link_property_to_owner(ctx, prop.id, owner_id, prop.offer_type)
        except (StoreError, PrimaryWriteError) as e:
            logger.warning(f"Owner link for property {prop.id} failed: {e}")

    logger.info(f"Property {prop.id} created by {ctx.actor_id}")
    ctx.bus.publish(event_bus.PROPERTIES_REFRESH, {"property_id": prop.id})
    return prop


def register_upload(ctx, property_id, file_name, kind="document"):
    """Record that a file was uploaded for a property (metadata only)."""
    file_name = _sanitize(file_name)
    if not file_name:
        raise ValidationError("File name is required.")
    prop = ctx.store.get("properties", property_id)
    if prop is None:
        raise NotFoundError("Property not found.")
    ensure_can_modify(prop, ctx.actor_id, ctx.is_admin)

    saga = Saga("register upload")
    saga.step(
        "log upload",
        lambda: ctx.activities.record(
            "upload",
            f"Uploaded {kind}: {file_name}",
            {"property_id": property_id},
            ctx.actor_id,
            required=True,
        ),
        on_error=ABORT,
    )
    saga.step(
        "notify agent",
        lambda: ctx.notifier.notify(
            prop.agent_id,
            "New upload",
            f"{file_name} was uploaded to {prop.title}",
            priority="low",
            links={"property_id": property_id},
        ),
    )
    result = saga.run()

    ctx.bus.publish(event_bus.ACTIVITIES_REFRESH, {"property_id": property_id})
    return result["log upload"]
