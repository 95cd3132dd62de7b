"""Error types raised by the automation services.

- ValidationError / NotFoundError / OwnershipError are raised before any
  write happens.
- StoreError wraps anything the database layer throws.
- PrimaryWriteError means the authoritative write of an action failed;
  nothing derived from it was written.

Failures of derived steps (tasks, notifications, activity entries, tags)
are logged and never raised.
"""


class ValidationError(ValueError):
    """Bad input, rejected before any write."""


class NotFoundError(LookupError):
    """The referenced row does not exist (or is not visible to the actor)."""


class OwnershipError(PermissionError):
    """The current actor may not modify this record."""


class StoreError(RuntimeError):
    """A store operation failed and was rolled back."""


class PrimaryWriteError(RuntimeError):
    """The authoritative write of an action failed.

    Carries the action name so the caller can say exactly what failed,
    e.g. "Failed to create lead: <reason>".
    """

    def __init__(self, action, cause=None):
        self.action = action
        self.cause = cause
        message = f"Failed to {action}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
