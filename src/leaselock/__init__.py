"""
Lease-based distributed locks on an atomic document store.

Public API surface for the leaselock package.
"""

from .lock import LockHandle
from .store import DocumentStore, InMemoryStore
from .dynamodb import DynamoDBStore
from .models import DEFAULT_LEASE_MS, LockRecord
from .errors import (
    LeaseLockError,
    ConfigurationError,
    StoreError,
    DuplicateKeyError,
)

__all__ = [
    "LockHandle",
    "DocumentStore",
    "InMemoryStore",
    "DynamoDBStore",
    "LockRecord",
    "DEFAULT_LEASE_MS",
    "LeaseLockError",
    "ConfigurationError",
    "StoreError",
    "DuplicateKeyError",
]

__version__ = "0.1.0"
