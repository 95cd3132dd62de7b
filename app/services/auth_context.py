"""Auth context: who is performing the current action.

Every write that sets agent_id / created_by takes the id from here,
never from request data.
"""

from flask_login import current_user

from app.services.errors import OwnershipError


def current_actor_id():
    """Return the logged-in user's id, or None outside an authenticated request."""
    try:
        if current_user and current_user.is_authenticated:
            return current_user.id
    except RuntimeError:
        # No request / app context (CLI, background code)
        return None
    return None


def current_actor_is_admin():
    try:
        return bool(
            current_user
            and current_user.is_authenticated
            and current_user.is_admin
        )
    except RuntimeError:
        return False


def ensure_can_modify(record, actor_id, is_admin=False):
    """Raise OwnershipError unless the actor owns ``record`` (or is an admin)."""
    if is_admin:
        return
    if actor_id is None or getattr(record, "agent_id", None) != actor_id:
        raise OwnershipError("You can only modify your own records.")


def visible_scope(actor_id, is_admin=False):
    """Query filters limiting reads to the actor's own rows."""
    if is_admin:
        return {}
    return {"agent_id": actor_id}
