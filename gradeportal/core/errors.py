from datetime import datetime


class LoginGuardError(Exception):
    """Base class for login guard failures."""


class InvalidIdentity(LoginGuardError, ValueError):
    def __init__(self, message: str = "Invalid identity"):
        super().__init__(message)
        self.message = message


class StorageUnavailable(LoginGuardError):
    def __init__(self, operation: str, message: str | None = None):
        super().__init__(message or f"Storage unavailable during {operation}")
        self.operation = operation


class ClockSkew(LoginGuardError):
    def __init__(self, observed: datetime, last_recorded: datetime):
        super().__init__(
            f"Observed time {observed.isoformat()} is earlier than last recorded "
            f"attempt {last_recorded.isoformat()}"
        )
        self.observed = observed
        self.last_recorded = last_recorded
