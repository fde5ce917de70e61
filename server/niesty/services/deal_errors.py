"""Exceptions raised by the deal lifecycle services."""


class DealError(Exception):
    """Base class for deal lifecycle failures."""


class DealValidationError(DealError, ValueError):
    """Raised when operation input is invalid. Nothing has been written."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class DealAuthorizationError(DealError):
    """Raised when the actor's role on the deal does not permit the action."""


class DealNotFoundError(DealError):
    """Raised when a deal or submission does not exist or is no longer actionable."""


class DealTransitionError(DealError, ValueError):
    """Raised when the deal's current stage does not allow the requested trigger."""


class DealConflictError(DealError):
    """Raised when a versioned deal write loses to a concurrent update."""
