from __future__ import annotations


class ReceptionistError(Exception):
    """Base class for errors raised by the call and tool engine."""


class AuthError(ReceptionistError):
    """Shared secret missing or wrong. Nothing was done."""


class ArgumentValidationError(ReceptionistError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class NotFoundError(ReceptionistError):
    pass


class PersistenceError(ReceptionistError):
    """A storage read or write failed."""


class UsageLimitExceeded(ReceptionistError):
    """A hard trial limit tripped. Carries the capped counters for the 402 body."""

    def __init__(
        self,
        *,
        limit_type: str,
        minutes_used: int,
        minutes_limit: int,
        calls_used: int,
        calls_limit: int,
        message: str,
    ) -> None:
        super().__init__(message)
        self.limit_type = limit_type
        self.minutes_used = minutes_used
        self.minutes_limit = minutes_limit
        self.calls_used = calls_used
        self.calls_limit = calls_limit
        self.message = message
