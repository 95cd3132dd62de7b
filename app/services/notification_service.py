"""Notification dispatcher: in-app messages for agents.

notify() stores a Notification row for the agent and then hands the
payload to a delivery channel. Both steps are non-fatal: a failure is
logged and the caller carries on.

Outbound email / WhatsApp are not wired in; the default LogChannel only
logs the delivery. A real channel implements deliver(user_id, payload).
"""

import logging

from app.models.notification import Notification
from app.services.errors import NotFoundError, OwnershipError, StoreError, ValidationError

logger = logging.getLogger(__name__)

LINK_FIELDS = ("lead_id", "property_id", "event_id")


class LogChannel:
    """Delivery channel that only writes a log line."""

    def deliver(self, user_id, payload):
        logger.info(f"Notification for {user_id}: {payload.get('title')}")


class NotificationDispatcher:
    def __init__(self, store, channel=None):
        self.store = store
        self.channel = channel or LogChannel()

    def notify(self, user_id, title, message, priority="medium", links=None, type="info"):
        """Create a notification for ``user_id``. Returns it, or None on failure."""
        if not user_id:
            logger.debug(f"Notification '{title}' dropped: no recipient")
            return None
        if priority not in Notification.PRIORITIES:
            priority = "medium"
        if type not in Notification.TYPES:
            type = "info"

        row = {
            "user_id": user_id,
            "title": title,
            "message": message,
            "priority": priority,
            "type": type,
        }
        for field in LINK_FIELDS:
            value = (links or {}).get(field)
            if value is not None:
                row[field] = value

        try:
            notification = self.store.insert("notifications", row)
        except StoreError as e:
            logger.warning(f"Notification '{title}' for {user_id} not stored: {e}")
            return None

        try:
            self.channel.deliver(user_id, dict(row, id=notification.id))
        except Exception as e:
            logger.warning(f"Notification delivery to {user_id} failed: {e}")

        return notification

    def mark_read(self, notification_id, actor_id):
        """Flip the read flag. Only the recipient may do this."""
        notification = self.store.get("notifications", notification_id)
        if notification is None:
            raise NotFoundError("Notification not found.")
        if notification.user_id != actor_id:
            raise OwnershipError("You can only update your own notifications.")
        if notification.is_read:
            return notification
        return self.store.update("notifications", notification_id, {"is_read": True})

    def unread_for(self, user_id, limit=50):
        if not user_id:
            raise ValidationError("User is required.")
        return self.store.query(
            "notifications",
            {"user_id": user_id, "is_read": False},
            order_by=["-created_at", "id"],
            limit=limit,
        )
