"""Exceptions raised across the analytics read side."""


class AnalyticsError(Exception):
    """Base class for analytics errors."""
    pass


class MalformedEventError(AnalyticsError):
    """Raw event is missing required fields or carries invalid values. Never retried."""

    def __init__(self, message: str, raw=None):
        super().__init__(message)
        self.raw = raw


class TransientDeliveryError(AnalyticsError):
    """Handing an event to a materializer failed but may succeed on retry."""
    pass


class PersistenceError(AnalyticsError):
    """Read-model store write failed; the apply was rolled back."""
    pass


class ConcurrentUpdateError(AnalyticsError):
    """Compare-and-set kept losing against concurrent writers."""
    pass


class StoreUnavailableError(AnalyticsError):
    """Read-model store could not be read (error or timeout)."""
    pass


class DegradedResultError(AnalyticsError):
    """Every fallback for an analytics query failed."""
    pass


class NotFoundError(AnalyticsError):
    """No analytics exist for the requested tenant/domain."""
    pass


class SourceQueryError(AnalyticsError):
    """Source-of-truth aggregate query failed."""
    pass
