"""Domain exceptions shared by services and routers."""


class ConciergeError(Exception):
    """Base class for expected, user-facing failures."""


class PermissionDeniedError(ConciergeError):
    """Caller role is below the minimum required for the operation."""


class WorkflowValidationError(ConciergeError):
    """Malformed or missing input; raised before anything is persisted."""


class EntryNotFoundError(ConciergeError):
    pass


class InvalidTransitionError(ConciergeError):
    """The requested transition is not allowed from the entry's current state."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move message from {current} to {requested}")
        self.current = current
        self.requested = requested


class LockUnavailableError(ConciergeError):
    def __init__(self, holder_email: str | None) -> None:
        super().__init__(f"Entity is being edited by {holder_email or 'another user'}")
        self.holder_email = holder_email


class WebhookVerificationError(ConciergeError):
    """Signature, timestamp or header check failed for an inbound webhook."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
