"""Sync event bus: in-process publish/subscribe between UI views.

Built on blinker signals. One bus is created per application in
create_app() and handed to whatever needs it; there is no module-level
global bus.

Delivery is best-effort and at-most-once to the handlers subscribed at
publish time. Events are invalidation hints: handlers should re-query,
never trust the payload as the new state.

Usage:
    bus = SyncEventBus()
    bus.subscribe(LEADS_CHANGED, lambda payload: refresh())
    bus.publish(LEADS_CHANGED, {"lead_id": lead.id})
"""

import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

LEADS_CHANGED = "leads:changed"
CONTACTS_UPDATED = "contacts:updated"
CALENDAR_REFRESH = "calendar:refresh"
PROPERTIES_REFRESH = "properties:refresh"
ACTIVITIES_REFRESH = "activities:refresh"

TOPICS = [
    LEADS_CHANGED,
    CONTACTS_UPDATED,
    CALENDAR_REFRESH,
    PROPERTIES_REFRESH,
    ACTIVITIES_REFRESH,
]

# A write to one side of the lead/contact pair refreshes both views.
CROSS_SYNC = {
    LEADS_CHANGED: CONTACTS_UPDATED,
    CONTACTS_UPDATED: LEADS_CHANGED,
}


class SyncEventBus:
    """Typed-topic pub/sub. Handlers receive a single ``payload`` dict."""

    def __init__(self):
        self._signals = Namespace()

    def _signal(self, topic):
        if topic not in TOPICS:
            raise ValueError(
                f"Unknown topic '{topic}'. Must be one of: {', '.join(TOPICS)}"
            )
        return self._signals.signal(topic)

    def subscribe(self, topic, handler):
        # weak=False so lambdas and bound methods stay subscribed
        self._signal(topic).connect(handler, weak=False)
        return handler

    def unsubscribe(self, topic, handler):
        self._signal(topic).disconnect(handler)

    def publish(self, topic, payload=None):
        """Call every current subscriber once. Handler errors are logged, not raised.

        Returns the number of handlers that ran without error.
        """
        signal = self._signal(topic)
        delivered = 0
        for receiver in list(signal.receivers_for(self)):
            try:
                receiver(payload or {})
                delivered += 1
            except Exception as e:
                logger.warning(f"Sync handler for {topic} failed: {e}", exc_info=True)
        return delivered

    def publish_entity_change(self, topic, payload=None):
        """Publish ``topic`` plus its cross-sync partner (lead <-> contact)."""
        self.publish(topic, payload)
        partner = CROSS_SYNC.get(topic)
        if partner:
            self.publish(partner, payload)
