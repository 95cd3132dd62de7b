"""Automation engine: the entry points the UI calls.

One engine per request, composed from the store, the app's sync bus, the
activity logger and the notification dispatcher. The rule modules
(lead_service, contact_sync_service, scheduler_service, property_service,
owner_tag_service) take the engine as their ``ctx``.

Each entry point follows the same order: validate, authoritative write
(atomic), derived writes (best-effort), activity, notification, bus
broadcast. It returns the canonical written record.
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from app.models.user import User
from app.services import (
    contact_sync_service,
    event_bus,
    lead_service,
    owner_tag_service,
    property_service,
    scheduler_service,
)
from app.services.activity_service import ActivityLogger
from app.services.auth_context import current_actor_id, current_actor_is_admin
from app.services.entity_store import EntityStore
from app.services.notification_service import NotificationDispatcher
from app.services.saga import Saga

logger = logging.getLogger(__name__)


def utcnow():
    return datetime.now(timezone.utc)


def _flask_actor():
    return current_actor_id(), current_actor_is_admin()


class AutomationEngine:
    def __init__(self, store=None, bus=None, activities=None, notifier=None,
                 actor_provider=None, clock=None, config=None):
        self.store = store or EntityStore()
        self.bus = bus or event_bus.SyncEventBus()
        self.activities = activities or ActivityLogger(self.store)
        self.notifier = notifier or NotificationDispatcher(self.store)
        self.actor_provider = actor_provider or _flask_actor
        self.clock = clock or utcnow
        self.config = config if config is not None else {}

    # ── Context used by the rule modules ─────────────────────

    @property
    def actor_id(self):
        return self.actor_provider()[0]

    @property
    def is_admin(self):
        return bool(self.actor_provider()[1])

    def now(self):
        return self.clock()

    def setting(self, key, default=None):
        return self.config.get(key, default)

    def user_exists(self, user_id):
        return self.store.session.get(User, user_id) is not None

    # ── Leads ────────────────────────────────────────────────

    def create_lead(self, data):
        """Dedup-or-insert a lead, then sync its contact and schedule follow-ups.

        Returns:
            (lead, was_duplicate)
        """
        lead, was_duplicate = lead_service.resolve_or_create_lead(self, data)
        if was_duplicate:
            self.bus.publish(event_bus.ACTIVITIES_REFRESH, {"lead_id": lead.id})
            return lead, True

        saga = Saga("create lead follow-ups")
        saga.step("sync contact", lambda: contact_sync_service.sync_lead_to_contact(self, lead))
        saga.step("follow-ups", lambda: scheduler_service.schedule_follow_ups(self, lead))
        result = saga.run()
        if not result.ok:
            logger.warning(f"Lead {lead.id} created with failed steps: {result.failed_steps}")

        self.bus.publish_entity_change(event_bus.LEADS_CHANGED, {"lead_id": lead.id})
        return lead, False

    def update_lead(self, lead_id, patch):
        patch = dict(patch)
        status = patch.pop("status", None)
        if status:
            contact_sync_service.contact_status_for(status)
        lead = lead_service.update_lead(self, lead_id, patch)
        if status and status != lead.status:
            lead, _ = contact_sync_service.on_lead_status_change(self, lead_id, status)
        return lead

    def change_lead_status(self, lead_id, new_status):
        lead, _ = contact_sync_service.on_lead_status_change(self, lead_id, new_status)
        return lead

    def reassign_lead(self, lead_id, agent_id):
        return lead_service.reassign_lead(self, lead_id, agent_id)

    def list_leads(self, **filters):
        return lead_service.list_leads(self, **filters)

    # ── Contacts ─────────────────────────────────────────────

    def update_contact(self, contact_id, patch):
        return contact_sync_service.update_contact(self, contact_id, patch)

    def bulk_sync_contacts(self):
        return contact_sync_service.bulk_sync(self)

    # ── Properties ───────────────────────────────────────────

    def create_property(self, data):
        return property_service.create_property(self, data)

    def change_property_status(self, property_id, new_status):
        return property_service.change_property_status(self, property_id, new_status)

    def link_property_to_owner(self, property_id, owner_lead_id, offer_type=None):
        return owner_tag_service.link_property_to_owner(self, property_id, owner_lead_id, offer_type)

    def register_upload(self, property_id, file_name, kind="document"):
        return property_service.register_upload(self, property_id, file_name, kind)

    # ── Calendar ─────────────────────────────────────────────

    def schedule_viewing(self, property_id, lead_id, start, notes=None):
        return scheduler_service.schedule_viewing(self, property_id, lead_id, start, notes)

    def complete_event(self, event_id):
        return scheduler_service.complete_event(self, event_id)

    def reschedule_event(self, event_id, start):
        return scheduler_service.reschedule_event(self, event_id, start)

    # ── Notifications ────────────────────────────────────────

    def mark_notification_read(self, notification_id):
        return self.notifier.mark_read(notification_id, self.actor_id)

    def unread_notifications(self):
        return self.notifier.unread_for(self.actor_id)


def get_engine():
    """Engine for the current request, using the app's sync bus and config."""
    app = current_app._get_current_object()
    return AutomationEngine(bus=app.extensions["sync_bus"], config=app.config)
