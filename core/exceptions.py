"""Shared exception types for the risk and exit engine."""

from typing import Optional


class ConfigurationError(ValueError):
    """Raised at construction time when policy values are invalid."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class PriceUnavailable(RuntimeError):
    """Raised when a token price cannot be fetched safely."""

    def __init__(self, token_address: str, original: Optional[Exception] = None):
        super().__init__(token_address)
        self.token_address = token_address
        self.original = original


class ExitExecutionError(RuntimeError):
    """Raised when a sell instruction could not be filled."""

    def __init__(self, position_id: str, reason: str):
        super().__init__(f"{position_id}: {reason}")
        self.position_id = position_id
        self.reason = reason
