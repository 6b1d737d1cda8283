"""Exception hierarchy for prebooker."""


class PrebookerError(Exception):
    """Base exception."""


class ConfigError(PrebookerError):
    """Invalid configuration."""


class ValidationError(PrebookerError):
    """Trigger payload is malformed or its security token does not match."""


class SessionNotFoundError(PrebookerError):
    """No device session for the intent's (user, fingerprint)."""


class AuthExpiredError(PrebookerError):
    """The platform answered with a logout signal."""


class TransientNetworkError(PrebookerError):
    """Network or HTTP failure talking to the platform."""


class TimeoutExceededError(PrebookerError):
    """The invocation ran out of its execution budget."""


class ThirdPartyRejectionError(PrebookerError):
    """The platform rejected the booking (class full, already booked...)."""

    def __init__(
        self, message: str, book_state: int | None = None, error_code: str = "booking_failed"
    ) -> None:
        super().__init__(message)
        self.book_state = book_state
        self.error_code = error_code


class IntentNotFoundError(PrebookerError):
    """No intent with the given id."""


class IntentStateError(PrebookerError):
    """The intent is not in a status that allows the requested operation."""


class ScheduleError(PrebookerError):
    """The broker refused or failed to accept a delayed message."""


class StoreError(PrebookerError):
    """Persistence layer failure."""
