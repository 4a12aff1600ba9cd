class AbEngineError(Exception):
    """Base class for errors raised by the allocation engine."""


class StoreUnavailableError(AbEngineError):
    """The counter or assignment backend could not be reached after all retries."""

    def __init__(self, operation: str, attempts: int, cause: Exception | None = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Store unavailable during '{operation}' after {attempts} attempt(s): {cause}"
        )


class CorruptRecordError(AbEngineError):
    """A persisted record exists but cannot be interpreted."""


class ConfigurationError(AbEngineError):
    """The experiments document is missing or invalid."""
