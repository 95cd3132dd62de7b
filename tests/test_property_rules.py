"""Tests for property listings and the status rule engine.

Covers:
- pending -> one follow-up task three days out
- sold / rented -> linked leads won, open tasks completed, one notification
- sold / rented -> available reopens lost leads
- Status write and its activity are atomic; cascade items fail alone
- Listing creation and upload records
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from app.models.activity import Activity
from app.models.calendar_event import CalendarEvent
from app.models.lead import Lead
from app.models.notification import Notification
from app.models.property import ContactPropertyLink, Property
from app.services.errors import (
    NotFoundError,
    OwnershipError,
    PrimaryWriteError,
    StoreError,
    ValidationError,
)
from app.services.event_bus import CALENDAR_REFRESH, PROPERTIES_REFRESH


def _listing(engine, **kwargs):
    data = {"title": "Palm Villa", "offer_type": "sale", "price": 9500000}
    data.update(kwargs)
    return engine.create_property(data)


def _link(engine, lead_id, property_id, role="buyer_interest"):
    return engine.store.insert(
        "contact_properties",
        {"contact_id": lead_id, "property_id": property_id, "role": role},
    )


def _property_transitions(property_id):
    return [
        a.description
        for a in Activity.query.filter_by(property_id=property_id, type="status_change")
    ]


class TestPending:

    def test_pending_creates_check_task(self, engine, db_session, fixed_now):
        prop = _listing(engine)

        engine.change_property_status(prop.id, "pending")

        db_session.expire_all()
        task = CalendarEvent.query.filter_by(property_id=prop.id).one()
        assert task.title == "Check on pending property"
        assert task.event_type == "follow_up"
        assert task.start_date == fixed_now.replace(tzinfo=None) + timedelta(days=3)
        assert task.agent_id == engine.actor_id

    def test_pending_does_not_touch_leads(self, engine, db_session):
        prop = _listing(engine)
        lead, _ = engine.create_lead({"name": "Lost Buyer"})
        engine.change_lead_status(lead.id, "lost")
        _link(engine, lead.id, prop.id)

        engine.change_property_status(prop.id, "pending")

        db_session.expire_all()
        assert db_session.get(Lead, lead.id).status == "lost"


class TestClosure:

    def test_sold_converts_linked_leads(self, engine, db_session):
        prop = _listing(engine)
        buyer, _ = engine.create_lead({"name": "Buyer", "email": "buyer@x.com"})
        already, _ = engine.create_lead({"name": "Already Won", "email": "won@x.com"})
        engine.change_lead_status(already.id, "won")
        _link(engine, buyer.id, prop.id)
        _link(engine, already.id, prop.id)

        _, report = engine.change_property_status(prop.id, "sold")

        assert report.ok
        db_session.expire_all()
        assert db_session.get(Lead, buyer.id).status == "won"
        assert db_session.get(Lead, buyer.id).contact_status == "active_client"
        conversions = Activity.query.filter_by(
            lead_id=already.id, description="Lead converted to Active Client - Won"
        ).count()
        assert conversions == 1

    def test_sold_completes_open_property_tasks(self, engine, db_session):
        prop = _listing(engine)
        engine.change_property_status(prop.id, "pending")

        engine.change_property_status(prop.id, "sold")

        db_session.expire_all()
        statuses = {e.status for e in CalendarEvent.query.filter_by(property_id=prop.id)}
        assert statuses == {"completed"}

    def test_one_transition_activity_and_one_notification(self, engine):
        prop = _listing(engine)
        lead, _ = engine.create_lead({"name": "Buyer"})
        _link(engine, lead.id, prop.id)

        engine.change_property_status(prop.id, "sold")

        assert _property_transitions(prop.id) == ["Status changed from available to sold"]
        closure = Notification.query.filter_by(property_id=prop.id).all()
        assert [(n.title, n.type, n.priority) for n in closure] == [
            ("Property sold", "success", "high")
        ]

    def test_rented_also_closes(self, engine, db_session):
        prop = _listing(engine, title="Marina Flat", offer_type="rent", price=120000)
        tenant, _ = engine.create_lead({"name": "Tenant"})
        _link(engine, tenant.id, prop.id, role="tenant")

        engine.change_property_status(prop.id, "rented")

        db_session.expire_all()
        assert db_session.get(Lead, tenant.id).status == "won"

    def test_failed_lead_does_not_stop_the_rest(self, engine, make_engine, seed_data, db_session):
        prop = _listing(engine)
        mine, _ = engine.create_lead({"name": "Mine"})
        theirs, _ = make_engine(seed_data["other_id"]).create_lead({"name": "Theirs"})
        _link(engine, theirs.id, prop.id)
        _link(engine, mine.id, prop.id)

        _, report = engine.change_property_status(prop.id, "sold")

        assert not report.ok
        assert [step for step, _ in report.failures] == [f"lead {theirs.id} won"]
        assert "closure notification" in report.completed
        db_session.expire_all()
        assert db_session.get(Lead, mine.id).status == "won"
        assert db_session.get(Lead, theirs.id).status == "new"
        assert db_session.get(Property, prop.id).status == "sold"

    def test_failed_notification_is_reported(self, engine, db_session):
        prop = _listing(engine)
        real_insert = engine.store.insert

        def failing_insert(collection, row):
            if collection == "notifications":
                raise StoreError("notifications offline")
            return real_insert(collection, row)

        with patch.object(engine.store, "insert", side_effect=failing_insert):
            _, report = engine.change_property_status(prop.id, "sold")

        assert "closure notification" not in report.completed
        assert report.as_dict()["failures"] == [
            {"step": "closure notification", "error": "closure notification was not recorded"}
        ]
        db_session.expire_all()
        assert db_session.get(Property, prop.id).status == "sold"
        assert Notification.query.count() == 0

    def test_failed_availability_notification_is_reported(self, engine, db_session):
        prop = _listing(engine)
        engine.change_property_status(prop.id, "rented")
        real_insert = engine.store.insert

        def failing_insert(collection, row):
            if collection == "notifications":
                raise StoreError("notifications offline")
            return real_insert(collection, row)

        with patch.object(engine.store, "insert", side_effect=failing_insert):
            _, report = engine.change_property_status(prop.id, "available")

        assert [step for step, _ in report.failures] == ["availability notification"]


class TestReopen:

    def test_available_again_reopens_lost_leads(self, engine, db_session):
        prop = _listing(engine)
        engine.change_property_status(prop.id, "sold")
        lost, _ = engine.create_lead({"name": "Lost Buyer", "email": "lost@x.com"})
        engine.change_lead_status(lost.id, "lost")
        _link(engine, lost.id, prop.id)

        engine.change_property_status(prop.id, "available")

        db_session.expire_all()
        assert db_session.get(Lead, lost.id).status == "contacted"
        titles = [n.title for n in Notification.query.filter_by(property_id=prop.id)]
        assert "Property available again" in titles

    def test_won_leads_stay_won(self, engine, db_session):
        prop = _listing(engine)
        lead, _ = engine.create_lead({"name": "Buyer"})
        _link(engine, lead.id, prop.id)
        engine.change_property_status(prop.id, "sold")

        engine.change_property_status(prop.id, "available")

        db_session.expire_all()
        assert db_session.get(Lead, lead.id).status == "won"

    def test_available_from_pending_has_no_cascade(self, engine):
        prop = _listing(engine)
        engine.change_property_status(prop.id, "pending")

        _, report = engine.change_property_status(prop.id, "available")

        assert report.completed == []
        assert Notification.query.filter_by(title="Property available again").count() == 0


class TestStatusWrite:

    def test_same_status_is_a_no_op(self, engine, events):
        prop = _listing(engine)
        events.clear()

        _, report = engine.change_property_status(prop.id, "available")

        assert report.ok and report.completed == []
        assert _property_transitions(prop.id) == []
        assert events == []

    def test_invalid_status(self, engine):
        prop = _listing(engine)
        with pytest.raises(ValidationError, match="Invalid status"):
            engine.change_property_status(prop.id, "demolished")

    def test_other_agent_cannot_change(self, engine, make_engine, seed_data):
        prop = _listing(engine)
        with pytest.raises(OwnershipError):
            make_engine(seed_data["other_id"]).change_property_status(prop.id, "sold")

    def test_admin_can_change(self, engine, admin_engine, db_session):
        prop = _listing(engine)
        admin_engine.change_property_status(prop.id, "off_market")
        db_session.expire_all()
        assert db_session.get(Property, prop.id).status == "off_market"

    def test_failed_activity_rolls_back_status(self, engine, db_session):
        prop = _listing(engine)
        real_insert = engine.store.insert

        def failing_insert(collection, row):
            if collection == "activities":
                raise StoreError("activity table locked")
            return real_insert(collection, row)

        with patch.object(engine.store, "insert", side_effect=failing_insert):
            with pytest.raises(PrimaryWriteError, match="Failed to update property status"):
                engine.change_property_status(prop.id, "sold")

        db_session.expire_all()
        assert db_session.get(Property, prop.id).status == "available"
        assert _property_transitions(prop.id) == []

    def test_publishes_refreshes(self, engine, events):
        prop = _listing(engine)
        events.clear()

        engine.change_property_status(prop.id, "pending")

        topics = [topic for topic, _ in events]
        assert PROPERTIES_REFRESH in topics
        assert CALENDAR_REFRESH in topics


class TestListings:

    def test_create_logs_listing(self, engine):
        prop = _listing(engine, title="<i>Palm</i> Villa")
        assert prop.title == "Palm Villa"
        assert prop.status == "available"
        logged = Activity.query.filter_by(property_id=prop.id, type="note").all()
        assert [a.description for a in logged] == ["Property listed: Palm Villa"]

    def test_create_with_owner_links_and_tags(self, engine, db_session):
        owner, _ = engine.create_lead({"name": "Owner"})

        prop = _listing(engine, owner_contact_id=owner.id)

        db_session.expire_all()
        assert db_session.get(Property, prop.id).owner_contact_id == owner.id
        assert ContactPropertyLink.query.filter_by(role="owner").count() == 1
        assert db_session.get(Lead, owner.id).interest_tags == ["seller"]

    def test_create_with_other_agents_owner_is_refused(self, engine, make_engine, seed_data, db_session):
        theirs, _ = make_engine(seed_data["other_id"]).create_lead({"name": "Their Owner"})

        with pytest.raises(OwnershipError):
            _listing(engine, owner_contact_id=theirs.id)

        db_session.expire_all()
        assert Property.query.count() == 0
        assert db_session.get(Lead, theirs.id).interest_tags == []

    def test_title_and_offer_type_required(self, engine):
        with pytest.raises(ValidationError, match="Title is required"):
            engine.create_property({"offer_type": "sale"})
        with pytest.raises(ValidationError, match="Invalid offer type"):
            engine.create_property({"title": "X", "offer_type": "lease"})

    def test_negative_price(self, engine):
        with pytest.raises(ValidationError, match="negative"):
            _listing(engine, price=-1)

    def test_register_upload(self, engine, seed_data):
        prop = _listing(engine)

        activity = engine.register_upload(prop.id, "floorplan.pdf", kind="floor plan")

        assert activity.type == "upload"
        assert activity.description == "Uploaded floor plan: floorplan.pdf"
        note = Notification.query.filter_by(title="New upload").one()
        assert note.user_id == seed_data["agent_id"]

    def test_upload_for_missing_property(self, engine):
        with pytest.raises(NotFoundError):
            engine.register_upload("missing", "floorplan.pdf")
