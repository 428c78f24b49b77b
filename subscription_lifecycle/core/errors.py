"""
Error taxonomy for the subscription lifecycle core.

Validation errors are permanent rejections, persistence errors are transient
and expected to be retried by the caller (the payment provider redelivers).
"""


class LifecycleError(Exception):
    """Base class for all subscription lifecycle errors."""


class ValidationError(LifecycleError):
    """Raised when an inbound request or event is structurally invalid."""


class SignatureError(ValidationError):
    """Raised when a webhook signature does not match its body."""


class NotFoundError(LifecycleError):
    """Raised when a ledger entry id is unknown."""

    def __init__(self, entry_id: str):
        super().__init__(f"Plan change log entry not found: {entry_id}")
        self.entry_id = entry_id


class InvalidTransitionError(LifecycleError):
    """Raised when a ledger entry is moved out of a terminal status."""

    def __init__(self, entry_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move plan change log entry {entry_id} from {current} to {requested}"
        )
        self.entry_id = entry_id
        self.current = current
        self.requested = requested


class PersistenceError(LifecycleError):
    """Raised when the ledger store cannot be read or written.

    This is a transient failure: webhook handlers surface it so that the
    provider redelivers the event.
    """
