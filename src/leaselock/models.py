"""Lock record model and helpers shared by the stores and the lock handle."""

import secrets
import time
from dataclasses import dataclass, asdict
from typing import Optional

DEFAULT_LEASE_MS = 30000

# Lock document fields
NAME = "name"
CODE = "code"
EXPIRE = "expire"
INSERTED = "inserted"
EXPIRED = "expired"


@dataclass
class LockRecord:
    """A lock document.

    A record is live while it has no ``expired`` field and ``expire`` lies in
    the future. Retiring a record renames it to ``<name>:<now>:<code>`` and stamps
    ``expired``; retired records are never deleted.
    """

    name: str
    code: str
    expire: int
    inserted: int
    expired: Optional[int] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        return cls(**filtered)


def generate_code() -> str:
    """Generate a 128-bit random ownership code (32 hex chars)."""
    return secrets.token_hex(16)


def retired_name(name: str, now: int, code: str) -> str:
    """Name a retired record: <name>:<epoch_ms>:<code>.

    ``code`` is a fresh ownership code, which keeps the name unique even when
    the same lock is retired twice in one millisecond.
    """
    return f"{name}:{now}:{code}"


def now_ms() -> int:
    return int(time.time() * 1000)
