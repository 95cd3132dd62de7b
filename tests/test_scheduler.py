"""Tests for the task / event scheduler.

Covers:
- New-lead follow-ups land at fixed offsets from the trigger time
- A failed follow-up insert does not stop the others
- Property viewings: event, interest link, activity, agent reminder
- Completing and rescheduling events
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from app.models.activity import Activity
from app.models.calendar_event import CalendarEvent
from app.models.notification import Notification
from app.models.property import ContactPropertyLink
from app.services.errors import NotFoundError, StoreError, ValidationError
from app.services.event_bus import CALENDAR_REFRESH
from app.services.scheduler_service import follow_up_times, schedule_follow_ups


def _property(engine, **kwargs):
    data = {
        "title": "Marina Flat",
        "offer_type": "sale",
        "price": 1500000,
        "address": "Dubai Marina",
    }
    data.update(kwargs)
    return engine.create_property(data)


class TestFollowUps:

    def test_offsets_from_trigger(self, engine, db_session, fixed_now):
        lead, _ = engine.create_lead({"name": "Layla"})

        db_session.expire_all()
        events = (
            CalendarEvent.query.filter_by(lead_id=lead.id)
            .order_by(CalendarEvent.start_date)
            .all()
        )

        trigger = fixed_now.replace(tzinfo=None)
        assert [(e.title, e.event_type, e.start_date, e.reminder_offset_min) for e in events] == [
            ("Initial Call Back", "lead_call", trigger + timedelta(minutes=15), 5),
            ("Follow-up New Lead", "task", trigger + timedelta(hours=2), 15),
            ("Follow Up Call", "lead_call", trigger + timedelta(hours=24), 15),
            ("Schedule Meeting", "contact_meeting", trigger + timedelta(days=3), 30),
        ]

    def test_events_last_default_duration(self, engine, db_session):
        lead, _ = engine.create_lead({"name": "Layla"})
        db_session.expire_all()
        for event in CalendarEvent.query.filter_by(lead_id=lead.id):
            assert event.end_date - event.start_date == timedelta(minutes=60)
            assert event.status == "scheduled"
            assert event.agent_id == engine.actor_id
            assert event.contact_id == lead.id

    def test_same_trigger_same_times(self):
        plan = [("Call", "lead_call", 15, 5), ("Meet", "contact_meeting", 60, 30)]
        trigger = datetime(2026, 1, 1, 12, 0)
        assert follow_up_times(trigger, plan) == follow_up_times(trigger, plan)
        assert [start for _, _, start, _ in follow_up_times(trigger, plan)] == [
            datetime(2026, 1, 1, 12, 15),
            datetime(2026, 1, 1, 13, 0),
        ]

    def test_one_failed_insert_skips_only_that_task(self, engine):
        lead, _ = engine.create_lead({"name": "Layla"})
        CalendarEvent.query.delete()
        real_insert = engine.store.insert

        def failing_insert(collection, row):
            if collection == "calendar_events" and row["title"] == "Follow Up Call":
                raise StoreError("calendar write timed out")
            return real_insert(collection, row)

        with patch.object(engine.store, "insert", side_effect=failing_insert):
            created = schedule_follow_ups(engine, lead)

        assert [e.title for e in created] == [
            "Initial Call Back",
            "Follow-up New Lead",
            "Schedule Meeting",
        ]
        summaries = Activity.query.filter_by(lead_id=lead.id, type="system").all()
        assert summaries[-1].description == "Auto-created 3 follow-up tasks"

    def test_custom_plan(self, engine, fixed_now):
        lead, _ = engine.create_lead({"name": "Layla"})
        created = schedule_follow_ups(
            engine, lead, plan=[("Send brochure", "task", 30, 10)]
        )
        assert len(created) == 1
        assert created[0].start_date == fixed_now.replace(tzinfo=None) + timedelta(minutes=30)

    def test_publishes_calendar_refresh(self, engine, events):
        engine.create_lead({"name": "Layla"})
        assert CALENDAR_REFRESH in [topic for topic, _ in events]


class TestViewings:

    def test_schedule_viewing(self, engine, db_session, seed_data):
        prop = _property(engine)
        lead, _ = engine.create_lead({"name": "Layla"})

        event = engine.schedule_viewing(prop.id, lead.id, "2026-03-05T10:00:00", notes="Bring ID")

        assert event.event_type == "property_viewing"
        assert event.title == "Property viewing: Marina Flat"
        assert event.location == "Dubai Marina"
        assert event.reminder_offset_min == 30
        assert event.property_id == prop.id
        assert event.lead_id == lead.id

        link = ContactPropertyLink.query.filter_by(contact_id=lead.id, property_id=prop.id).one()
        assert link.role == "buyer_interest"

        logged = Activity.query.filter_by(lead_id=lead.id, type="meeting").all()
        assert [a.description for a in logged] == ["Viewing scheduled for Marina Flat"]

        reminder = Notification.query.filter_by(type="reminder").one()
        assert reminder.user_id == seed_data["agent_id"]
        assert reminder.property_id == prop.id

    def test_second_viewing_reuses_interest_link(self, engine):
        prop = _property(engine)
        lead, _ = engine.create_lead({"name": "Layla"})

        engine.schedule_viewing(prop.id, lead.id, "2026-03-05T10:00:00")
        engine.schedule_viewing(prop.id, lead.id, "2026-03-06T10:00:00")

        assert ContactPropertyLink.query.filter_by(role="buyer_interest").count() == 1
        assert CalendarEvent.query.filter_by(event_type="property_viewing").count() == 2

    def test_bad_start_rejected(self, engine):
        prop = _property(engine)
        lead, _ = engine.create_lead({"name": "Layla"})
        with pytest.raises(ValidationError, match="ISO date"):
            engine.schedule_viewing(prop.id, lead.id, "next tuesday")
        assert CalendarEvent.query.filter_by(event_type="property_viewing").count() == 0

    def test_unknown_property(self, engine):
        lead, _ = engine.create_lead({"name": "Layla"})
        with pytest.raises(NotFoundError, match="Property not found"):
            engine.schedule_viewing("missing", lead.id, "2026-03-05T10:00:00")


class TestCompleteEvent:

    def test_completing_viewing_logs_meeting(self, engine):
        prop = _property(engine)
        lead, _ = engine.create_lead({"name": "Layla"})
        event = engine.schedule_viewing(prop.id, lead.id, "2026-03-05T10:00:00")

        done = engine.complete_event(event.id)

        assert done.status == "completed"
        meetings = [a.description for a in Activity.query.filter_by(type="meeting")]
        assert "Completed property viewing: Property viewing: Marina Flat" in meetings

    def test_completing_task_logs_task_completed(self, engine):
        lead, _ = engine.create_lead({"name": "Layla"})
        task = CalendarEvent.query.filter_by(title="Initial Call Back").one()

        engine.complete_event(task.id)

        logged = Activity.query.filter_by(lead_id=lead.id, type="task_completed").all()
        assert [a.description for a in logged] == ["Task completed: Initial Call Back"]

    def test_completing_twice_is_a_no_op(self, engine):
        engine.create_lead({"name": "Layla"})
        task = CalendarEvent.query.filter_by(title="Initial Call Back").one()

        engine.complete_event(task.id)
        engine.complete_event(task.id)

        assert Activity.query.filter_by(type="task_completed").count() == 1

    def test_other_agents_event_is_hidden(self, engine, make_engine, seed_data):
        engine.create_lead({"name": "Layla"})
        task = CalendarEvent.query.filter_by(title="Initial Call Back").one()
        with pytest.raises(NotFoundError):
            make_engine(seed_data["other_id"]).complete_event(task.id)


class TestRescheduleEvent:

    def test_keeps_duration(self, engine, db_session):
        lead, _ = engine.create_lead({"name": "Layla"})
        task = CalendarEvent.query.filter_by(title="Schedule Meeting").one()

        engine.reschedule_event(task.id, "2026-03-10T14:00:00")

        db_session.expire_all()
        moved = db_session.get(CalendarEvent, task.id)
        assert moved.start_date == datetime(2026, 3, 10, 14, 0)
        assert moved.end_date == datetime(2026, 3, 10, 15, 0)
        logged = Activity.query.filter_by(lead_id=lead.id, type="task_rescheduled").all()
        assert [a.description for a in logged] == [
            "Task rescheduled: Schedule Meeting to 2026-03-10 14:00"
        ]

    def test_completed_event_cannot_move(self, engine):
        engine.create_lead({"name": "Layla"})
        task = CalendarEvent.query.filter_by(title="Initial Call Back").one()
        engine.complete_event(task.id)

        with pytest.raises(ValidationError, match="completed"):
            engine.reschedule_event(task.id, "2026-03-10T14:00:00")
