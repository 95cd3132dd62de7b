"""Task / event scheduler.

Creates calendar events with fixed offsets from a trigger time. The offsets
come from config (FOLLOW_UP_PLAN, PENDING_CHECK_DAYS), so the same trigger
time always yields the same due dates.

Event creation is a derived write: a failure is logged and skipped and
never undoes the lead/property write that triggered it.
"""

import logging
from datetime import datetime, timedelta

import bleach

from app.models.calendar_event import CalendarEvent
from app.services import event_bus
from app.services.auth_context import ensure_can_modify
from app.services.errors import NotFoundError, StoreError, ValidationError
from app.services.saga import ABORT, Saga

logger = logging.getLogger(__name__)

VIEWING_ROLE = "buyer_interest"


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def follow_up_times(trigger, plan):
    """[(title, event_type, start, reminder_offset_min)] for ``plan`` at ``trigger``."""
    return [
        (title, event_type, trigger + timedelta(minutes=offset), reminder)
        for title, event_type, offset, reminder in plan
    ]


def _coerce_start(value):
    if isinstance(value, datetime):
        return value
    if not value:
        raise ValidationError("Start time is required.")
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("Start time must be an ISO date/time.") from None


def create_event(ctx, title, event_type, start, agent_id, links=None,
                 reminder_offset_min=15, description=None, location=None):
    """Insert one scheduled calendar event. Raises StoreError on failure."""
    if event_type not in CalendarEvent.TYPES:
        raise ValidationError(
            f"Invalid event type '{event_type}'. Must be one of: {', '.join(CalendarEvent.TYPES)}"
        )
    duration = timedelta(minutes=ctx.setting("DEFAULT_EVENT_DURATION_MIN", 60))
    row = {
        "title": _sanitize(title),
        "description": _sanitize(description),
        "event_type": event_type,
        "status": "scheduled",
        "start_date": start,
        "end_date": start + duration,
        "location": location,
        "agent_id": agent_id,
        "created_by": ctx.actor_id or agent_id,
        "reminder_offset_min": reminder_offset_min,
    }
    for field in ("lead_id", "property_id", "contact_id"):
        value = (links or {}).get(field)
        if value is not None:
            row[field] = value
    if row.get("lead_id") and not row.get("contact_id"):
        row["contact_id"] = row["lead_id"]
    return ctx.store.insert("calendar_events", row)


def schedule_follow_ups(ctx, lead, trigger=None, plan=None):
    """Create the new-lead follow-up tasks.

    Each task is inserted on its own; one that fails is logged and the
    rest are still attempted. A single system activity summarizes what
    was created.

    Returns:
        The list of created CalendarEvents (possibly shorter than the plan).
    """
    trigger = trigger or ctx.now()
    plan = plan if plan is not None else ctx.setting("FOLLOW_UP_PLAN", [])
    agent_id = lead.agent_id or ctx.actor_id

    created = []
    for title, event_type, start, reminder in follow_up_times(trigger, plan):
        try:
            event = create_event(
                ctx,
                title,
                event_type,
                start,
                agent_id,
                links={"lead_id": lead.id},
                reminder_offset_min=reminder,
                description=f"Automatic follow-up for new lead {lead.name}",
            )
            created.append(event)
        except (StoreError, ValidationError) as e:
            logger.warning(f"Follow-up '{title}' for lead {lead.id} not created: {e}")

    if created:
        ctx.activities.record(
            "system",
            f"Auto-created {len(created)} follow-up tasks",
            {"lead_id": lead.id},
            ctx.actor_id,
        )
        ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"lead_id": lead.id})
    return created


def schedule_pending_check(ctx, prop, trigger=None):
    """Single follow-up task PENDING_CHECK_DAYS after a property goes pending."""
    trigger = trigger or ctx.now()
    days = ctx.setting("PENDING_CHECK_DAYS", 3)
    event = create_event(
        ctx,
        "Check on pending property",
        "follow_up",
        trigger + timedelta(days=days),
        prop.agent_id,
        links={"property_id": prop.id},
        description=f"{prop.title} has been pending for {days} days",
    )
    ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"property_id": prop.id})
    return event


def _get_event(ctx, event_id):
    event = ctx.store.get("calendar_events", event_id)
    if event is None:
        raise NotFoundError("Event not found.")
    if not ctx.is_admin and ctx.actor_id not in (event.agent_id, event.created_by):
        raise NotFoundError("Event not found.")
    return event


def schedule_viewing(ctx, property_id, lead_id, start, notes=None):
    """Book a property viewing for a lead.

    The event is the primary write. The buyer-interest link, the activity
    and the notification to the listing agent follow as best-effort steps.
    """
    start = _coerce_start(start)
    prop = ctx.store.get("properties", property_id)
    if prop is None:
        raise NotFoundError("Property not found.")
    lead = ctx.store.get("leads", lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    ensure_can_modify(lead, ctx.actor_id, ctx.is_admin)

    title = f"Property viewing: {prop.title}"

    def ensure_interest_link():
        existing = ctx.store.query(
            "contact_properties",
            {"contact_id": lead_id, "property_id": property_id, "role": VIEWING_ROLE},
            limit=1,
        )
        if existing:
            return existing[0]
        return ctx.store.insert(
            "contact_properties",
            {"contact_id": lead_id, "property_id": property_id, "role": VIEWING_ROLE},
        )

    saga = Saga("schedule viewing")
    saga.step(
        "insert event",
        lambda: create_event(
            ctx,
            title,
            "property_viewing",
            start,
            lead.agent_id or ctx.actor_id,
            links={"lead_id": lead_id, "property_id": property_id},
            reminder_offset_min=30,
            description=notes,
            location=prop.address,
        ),
        on_error=ABORT,
    )
    saga.step("link interest", ensure_interest_link)
    saga.step(
        "log viewing",
        lambda: ctx.activities.record(
            "meeting",
            f"Viewing scheduled for {prop.title}",
            {"lead_id": lead_id, "property_id": property_id},
            ctx.actor_id,
        ),
    )
    saga.step(
        "notify agent",
        lambda: ctx.notifier.notify(
            prop.agent_id,
            "Viewing scheduled",
            f"{lead.name} is booked to view {prop.title}",
            priority="medium",
            links={"lead_id": lead_id, "property_id": property_id},
            type="reminder",
        ),
    )
    result = saga.run()
    event = result["insert event"]

    ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"event_id": event.id})
    ctx.bus.publish(event_bus.ACTIVITIES_REFRESH, {"lead_id": lead_id})
    return event


def complete_event(ctx, event_id):
    """Mark an event completed and log it. Completing twice is a no-op."""
    event = _get_event(ctx, event_id)
    if event.status == "completed":
        return event

    if event.event_type == "property_viewing":
        activity_type = "meeting"
        description = f"Completed property viewing: {event.title}"
    else:
        activity_type = "task_completed"
        description = f"Task completed: {event.title}"

    links = {
        "lead_id": event.lead_id,
        "property_id": event.property_id,
        "contact_id": event.contact_id,
    }

    saga = Saga("complete event")
    saga.step(
        "write status",
        lambda: ctx.store.update("calendar_events", event_id, {"status": "completed"}),
        on_error=ABORT,
    )
    saga.step(
        "log completion",
        lambda: ctx.activities.record(activity_type, description, links, ctx.actor_id),
    )
    result = saga.run()

    ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"event_id": event_id})
    ctx.bus.publish(event_bus.ACTIVITIES_REFRESH, {"event_id": event_id})
    return result["write status"]


def reschedule_event(ctx, event_id, start):
    """Move an event to ``start``, keeping its duration."""
    start = _coerce_start(start)
    event = _get_event(ctx, event_id)
    if event.status in ("completed", "cancelled"):
        raise ValidationError(f"Cannot reschedule a {event.status} event.")

    if event.end_date and event.start_date:
        duration = event.end_date - event.start_date
    else:
        duration = timedelta(minutes=ctx.setting("DEFAULT_EVENT_DURATION_MIN", 60))

    saga = Saga("reschedule event")
    saga.step(
        "write dates",
        lambda: ctx.store.update(
            "calendar_events",
            event_id,
            {"start_date": start, "end_date": start + duration},
        ),
        on_error=ABORT,
    )
    saga.step(
        "log reschedule",
        lambda: ctx.activities.record(
            "task_rescheduled",
            f"Task rescheduled: {event.title} to {start:%Y-%m-%d %H:%M}",
            {
                "lead_id": event.lead_id,
                "property_id": event.property_id,
                "contact_id": event.contact_id,
            },
            ctx.actor_id,
        ),
    )
    result = saga.run()

    ctx.bus.publish(event_bus.CALENDAR_REFRESH, {"event_id": event_id})
    return result["write dates"]
