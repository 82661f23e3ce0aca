from typing import Any, Optional


class SettlementError(Exception):
    """Base class for errors raised by the settlement engine."""


class InvalidArgument(SettlementError):
    """A caller supplied a bad amount, phone number or identifier."""

    def __init__(self, field: str, value: Any, message: Optional[str] = None):
        self.field = field
        self.value = value
        super().__init__(message or f"Invalid {field}: {value!r}")


class ProviderError(SettlementError):
    """An outbound call to the payment gateway or the game-result API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class RateLimited(ProviderError):
    """The game-result API is cooling down after a 410/429."""

    def __init__(self, remaining_seconds: float, message: Optional[str] = None):
        self.remaining_seconds = remaining_seconds
        super().__init__(
            message or f"game-result API rate limited for {remaining_seconds:.0f} more seconds",
            status_code=429,
        )


class CorrelationError(SettlementError):
    """A webhook carried no recoverable request id."""


class InvariantViolation(SettlementError):
    """An operation was asked to move money in a state that forbids it."""
