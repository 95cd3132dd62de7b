"""Activity logger: append-only audit trail for automation actions.

record() never fails the caller's operation unless asked to: by default a
store error is logged and swallowed. Evidence entries that must exist
alongside a status write (conversion, "Status changed from X to Y") are
written with required=True inside the same atomic block.
"""

import logging

import bleach

from app.models.activity import Activity
from app.services.errors import StoreError, ValidationError

logger = logging.getLogger(__name__)

LINK_FIELDS = ("lead_id", "property_id", "contact_id")


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(text, tags=[], strip=True).strip()


class ActivityLogger:
    def __init__(self, store):
        self.store = store

    def record(self, type, description, links=None, actor_id=None, required=False):
        """Append one Activity linked to every entity in ``links``.

        Args:
            type: One of Activity.TYPES.
            description: Human-readable text (sanitized).
            links: dict with any of lead_id / property_id / contact_id.
                A lead link is cross-posted to the contact with the same id.
            actor_id: User performing the action.
            required: Raise instead of logging when the write fails.

        Returns:
            The Activity, or None when a non-required write failed.
        """
        if type not in Activity.TYPES:
            raise ValidationError(
                f"Invalid activity type '{type}'. Must be one of: {', '.join(Activity.TYPES)}"
            )

        row = {"type": type, "description": _sanitize(description), "created_by": actor_id}
        for field in LINK_FIELDS:
            value = (links or {}).get(field)
            if value is not None:
                row[field] = value
        if row.get("lead_id") and not row.get("contact_id"):
            row["contact_id"] = row["lead_id"]

        try:
            return self.store.insert("activities", row)
        except StoreError as e:
            if required:
                raise
            logger.warning(f"Activity '{type}' not recorded: {e}")
            return None

    def for_entity(self, lead_id=None, property_id=None, limit=50):
        """Newest-first activity feed for a lead and/or property."""
        any_of = []
        if lead_id:
            any_of.append({"lead_id": lead_id})
            any_of.append({"contact_id": lead_id})
        if property_id:
            any_of.append({"property_id": property_id})
        if not any_of:
            return []
        return self.store.query(
            "activities", any_of=any_of, order_by=["-created_at", "id"], limit=limit
        )
