"""Exception hierarchy for leaselock."""

from typing import Optional


class LeaseLockError(Exception):
    """Base exception for all leaselock errors."""
    pass


class ConfigurationError(LeaseLockError):
    """Raised when a lock or store is constructed with missing settings."""
    pass


class StoreError(LeaseLockError):
    """Raised when the backing document store fails.

    ``code`` carries the backend's error code when it reports one
    (e.g. ``AccessDeniedException``).
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class DuplicateKeyError(StoreError):
    """Raised when a write would violate a uniqueness constraint."""
    pass
