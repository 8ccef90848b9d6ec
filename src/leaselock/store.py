"""Document store boundary for lock records.

Queries are a small MongoDB-style subset:

    {"name": "jobs"}                    equality
    {"expire": {"$lt": 1700000000000}}  strictly less than
    {"expire": {"$gt": 1700000000000}}  strictly greater than
    {"expired": {"$exists": False}}     field presence

All terms must hold. Updates support ``$set`` and ``$inc``.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol

from leaselock.errors import DuplicateKeyError, StoreError

logger = logging.getLogger(__name__)

QUERY_OPERATORS = frozenset({"$lt", "$gt", "$exists"})
UPDATE_OPERATORS = frozenset({"$set", "$inc"})

_MISSING = object()


class DocumentStore(Protocol):
    """Atomic single-document store holding lock records.

    Guarantees required by the lock protocol:
    - find_one_and_update is atomic per document
    - insert fails with DuplicateKeyError on a unique-index violation
    - nothing is partially applied
    """

    def ensure_unique_index(self, field: str) -> None:
        ...

    def find_one_and_update(self, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[dict]:
        ...

    def insert(self, document: dict) -> dict:
        ...

    def find(self, query: Dict[str, Any]) -> List[dict]:
        ...


def validate_query(query: Dict[str, Any]) -> None:
    """Raise StoreError if the query uses anything outside the supported subset."""
    if not isinstance(query, dict) or not query:
        raise StoreError(f"Malformed query: {query!r}")
    for field, term in query.items():
        if isinstance(term, dict):
            unknown = set(term) - QUERY_OPERATORS
            if unknown or not term:
                raise StoreError(f"Unsupported query operator(s) on '{field}': {sorted(unknown)}")


def validate_update(update: Dict[str, Any]) -> None:
    """Raise StoreError if the update uses anything outside $set/$inc."""
    if not isinstance(update, dict) or not update:
        raise StoreError(f"Malformed update: {update!r}")
    unknown = set(update) - UPDATE_OPERATORS
    if unknown:
        raise StoreError(f"Unsupported update operator(s): {sorted(unknown)}")
    for op, fields in update.items():
        if not isinstance(fields, dict) or not fields:
            raise StoreError(f"Malformed {op} clause: {fields!r}")


def matches(document: dict, query: Dict[str, Any]) -> bool:
    """Evaluate a validated query against a document."""
    for field, term in query.items():
        value = document.get(field, _MISSING)
        if not isinstance(term, dict):
            if value is _MISSING or value != term:
                return False
            continue
        for op, operand in term.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            elif value is _MISSING:
                return False
            elif op == "$lt" and not value < operand:
                return False
            elif op == "$gt" and not value > operand:
                return False
    return True


def apply_update(document: dict, update: Dict[str, Any]) -> dict:
    """Return a new document with a validated update applied."""
    updated = dict(document)
    for field, value in update.get("$set", {}).items():
        updated[field] = value
    for field, amount in update.get("$inc", {}).items():
        updated[field] = updated.get(field, 0) + amount
    return updated


class InMemoryStore:
    """
    In-memory reference implementation.

    Used for:
    - Tests
    - Running several lock handles against one store from many threads

    Uniqueness is only enforced for fields registered through
    ensure_unique_index, the same way a document database behaves before
    its index exists. NOT for production.
    """

    def __init__(self):
        self._docs: List[dict] = []
        self._unique: set = set()
        self._mutex = threading.Lock()

    def ensure_unique_index(self, field: str) -> None:
        with self._mutex:
            if field in self._unique:
                return
            seen = set()
            for doc in self._docs:
                if field not in doc:
                    continue
                if doc[field] in seen:
                    raise StoreError(
                        f"Cannot create unique index on '{field}': duplicate value {doc[field]!r}"
                    )
                seen.add(doc[field])
            self._unique.add(field)
            logger.debug("Unique index ensured on '%s'", field)

    def find_one_and_update(self, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[dict]:
        validate_query(query)
        validate_update(update)
        with self._mutex:
            for i, doc in enumerate(self._docs):
                if not matches(doc, query):
                    continue
                updated = apply_update(doc, update)
                self._check_unique(updated, skip=i)
                self._docs[i] = updated
                return copy.deepcopy(doc)
            return None

    def insert(self, document: dict) -> dict:
        with self._mutex:
            self._check_unique(document)
            stored = copy.deepcopy(document)
            self._docs.append(stored)
            return copy.deepcopy(stored)

    def find(self, query: Dict[str, Any]) -> List[dict]:
        validate_query(query)
        with self._mutex:
            return [copy.deepcopy(doc) for doc in self._docs if matches(doc, query)]

    def _check_unique(self, document: dict, skip: Optional[int] = None) -> None:
        for field in self._unique:
            if field not in document:
                continue
            for i, other in enumerate(self._docs):
                if i != skip and other.get(field, _MISSING) == document[field]:
                    raise DuplicateKeyError(
                        f"Duplicate key on '{field}': {document[field]!r}",
                        code="DuplicateKey",
                    )
