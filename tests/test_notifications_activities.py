"""Tests for the activity logger and notification dispatcher."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from app.models.activity import Activity
from app.models.notification import Notification
from app.services.activity_service import ActivityLogger
from app.services.entity_store import EntityStore
from app.services.errors import NotFoundError, OwnershipError, StoreError, ValidationError
from app.services.notification_service import NotificationDispatcher


class TestActivityLogger:

    def test_lead_link_is_cross_posted_to_contact(self, db_session, seed_data):
        activities = ActivityLogger(EntityStore(db_session))
        lead = activities.store.insert("leads", {
            "name": "Layla", "agent_id": seed_data["agent_id"], "interest_tags": [],
        })

        activity = activities.record("call", "Left a voicemail", {"lead_id": lead.id},
                                     seed_data["agent_id"])

        assert activity.lead_id == lead.id
        assert activity.contact_id == lead.id
        assert activity.created_by == seed_data["agent_id"]

    def test_description_is_sanitized(self, db_session):
        activities = ActivityLogger(EntityStore(db_session))
        activity = activities.record("note", "<script>x()</script>Called back")
        assert "<script>" not in activity.description
        assert activity.description.endswith("Called back")

    def test_unknown_type(self, db_session):
        activities = ActivityLogger(EntityStore(db_session))
        with pytest.raises(ValidationError, match="Invalid activity type"):
            activities.record("telepathy", "hi")

    def test_store_failure_is_swallowed(self, db_session):
        store = EntityStore(db_session)
        activities = ActivityLogger(store)
        with patch.object(store, "insert", side_effect=StoreError("down")):
            assert activities.record("note", "hello") is None

    def test_required_failure_raises(self, db_session):
        store = EntityStore(db_session)
        activities = ActivityLogger(store)
        with patch.object(store, "insert", side_effect=StoreError("down")):
            with pytest.raises(StoreError):
                activities.record("status_change", "won", required=True)

    def test_feed_is_newest_first(self, db_session, seed_data, fixed_now):
        store = EntityStore(db_session)
        activities = ActivityLogger(store)
        lead = store.insert("leads", {
            "name": "Layla", "agent_id": seed_data["agent_id"], "interest_tags": [],
        })
        for hours, text in ((2, "older"), (1, "newer")):
            store.insert("activities", {
                "type": "note", "description": text, "lead_id": lead.id,
                "created_at": fixed_now - timedelta(hours=hours),
            })

        feed = activities.for_entity(lead_id=lead.id)

        assert [a.description for a in feed] == ["newer", "older"]
        assert activities.for_entity() == []


class TestNotificationDispatcher:

    def test_notify_stores_and_delivers(self, db_session, seed_data):
        channel = MagicMock()
        notifier = NotificationDispatcher(EntityStore(db_session), channel=channel)

        notification = notifier.notify(
            seed_data["agent_id"], "Viewing scheduled", "Tomorrow 10am",
            priority="high", links={"lead_id": None}, type="reminder",
        )

        assert notification.priority == "high"
        assert notification.type == "reminder"
        assert notification.lead_id is None
        assert notification.is_read is False
        channel.deliver.assert_called_once()
        user_id, payload = channel.deliver.call_args.args
        assert user_id == seed_data["agent_id"]
        assert payload["id"] == notification.id

    def test_unknown_priority_and_type_fall_back(self, db_session, seed_data):
        notifier = NotificationDispatcher(EntityStore(db_session))
        notification = notifier.notify(
            seed_data["agent_id"], "Hi", "There", priority="critical", type="shout",
        )
        assert notification.priority == "medium"
        assert notification.type == "info"

    def test_no_recipient_is_dropped(self, db_session):
        notifier = NotificationDispatcher(EntityStore(db_session))
        assert notifier.notify(None, "Hi", "There") is None
        assert Notification.query.count() == 0

    def test_store_failure_returns_none(self, db_session, seed_data):
        store = EntityStore(db_session)
        notifier = NotificationDispatcher(store)
        with patch.object(store, "insert", side_effect=StoreError("down")):
            assert notifier.notify(seed_data["agent_id"], "Hi", "There") is None

    def test_delivery_failure_keeps_notification(self, db_session, seed_data):
        channel = MagicMock()
        channel.deliver.side_effect = ConnectionError("gateway unreachable")
        notifier = NotificationDispatcher(EntityStore(db_session), channel=channel)

        notification = notifier.notify(seed_data["agent_id"], "Hi", "There")

        assert notification is not None
        assert Notification.query.count() == 1

    def test_mark_read_by_recipient(self, db_session, seed_data):
        notifier = NotificationDispatcher(EntityStore(db_session))
        notification = notifier.notify(seed_data["agent_id"], "Hi", "There")

        notifier.mark_read(notification.id, seed_data["agent_id"])
        notifier.mark_read(notification.id, seed_data["agent_id"])

        assert db_session.get(Notification, notification.id).is_read is True
        assert notifier.unread_for(seed_data["agent_id"]) == []

    def test_mark_read_by_someone_else(self, db_session, seed_data):
        notifier = NotificationDispatcher(EntityStore(db_session))
        notification = notifier.notify(seed_data["agent_id"], "Hi", "There")

        with pytest.raises(OwnershipError):
            notifier.mark_read(notification.id, seed_data["other_id"])
        with pytest.raises(NotFoundError):
            notifier.mark_read("missing", seed_data["agent_id"])

    def test_engine_uses_actor(self, engine, seed_data):
        notification = engine.notifier.notify(seed_data["agent_id"], "Hi", "There")

        assert [n.id for n in engine.unread_notifications()] == [notification.id]
        engine.mark_notification_read(notification.id)
        assert engine.unread_notifications() == []

    def test_notification_failure_does_not_fail_caller(self, engine, admin_engine, db_session):
        lead, _ = engine.create_lead({"name": "Layla"})
        real_insert = admin_engine.store.insert

        def failing_insert(collection, row):
            if collection == "notifications":
                raise StoreError("notifications offline")
            return real_insert(collection, row)

        with patch.object(admin_engine.store, "insert", side_effect=failing_insert):
            admin_engine.change_lead_status(lead.id, "qualified")

        db_session.expire_all()
        assert Notification.query.count() == 0
        assert Activity.query.filter_by(lead_id=lead.id, type="status_change").count() == 1
