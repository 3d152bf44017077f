# lambdas/ingest_issues/errors.py
from typing import Optional


class DecodeError(ValueError):
    """Raised when a record payload cannot be inflated or parsed."""
    pass


class ExtractError(Exception):
    """Raised when an issue cannot be derived from a message or persisted."""
    pass


class StoreError(ExtractError):
    """
    A failure talking to the issue store.

    `transient` marks failures worth retrying locally (throttling, dropped
    connections). Everything else is treated as permanent.
    """
    def __init__(self, message: str, transient: bool = False, code: Optional[str] = None):
        super().__init__(message)
        self.transient = transient
        self.code = code
