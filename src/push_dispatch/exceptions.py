"""Exception hierarchy for the dispatch pipeline.

Only ResolutionUnavailable escapes handle_event; the delivery failures are
raised inside the gateway client and converted to DeliveryOutcome values
by the Dispatcher.
"""

from typing import Optional


class PushDispatchError(Exception):
    """Base exception for all dispatch pipeline errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ResolutionUnavailable(PushDispatchError):
    """Geofence index lookup failed or timed out.

    Surfaced to the event source so it can redeliver the event.
    """

    def __init__(self, message: str = "Geofence index unavailable", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class DeliveryFailure(PushDispatchError):
    """A push gateway call did not succeed."""

    def __init__(self, message: str, status_code: Optional[int] = None, reason: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class RetryableDeliveryFailure(DeliveryFailure):
    """Gateway timeout, 5xx or rate limit. Recovered via the retry scheduler."""


class PermanentDeliveryFailure(DeliveryFailure):
    """Invalid or expired token. Recovered by pruning the token."""


class ConfigurationMissing(PushDispatchError):
    """No preferences record for a user; callers fall back to defaults."""

    def __init__(self, user_id: str):
        super().__init__(f"No notification preferences for user {user_id}")
        self.user_id = user_id
