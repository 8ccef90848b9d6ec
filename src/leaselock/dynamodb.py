"""DynamoDB document store for lock records.

The table's hash key is the unique field (``name``). Retiring a record
renames its key, which DynamoDB can only do as a delete plus a put, so that
path runs as a single conditional transaction.
"""

import functools
import logging
import os
import random
import re
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, ConditionExpressionBuilder
from botocore.exceptions import BotoCoreError, ClientError

from leaselock.errors import ConfigurationError, DuplicateKeyError, StoreError
from leaselock.models import NAME
from leaselock.store import apply_update, matches, validate_query, validate_update

logger = logging.getLogger(__name__)

TABLE_ENV_VAR = "LEASELOCK_TABLE"
RETRIES_ENV_VAR = "LEASELOCK_MAX_RETRIES"

# Retry configuration: throttling only, off unless max_retries > 0
DEFAULT_MAX_RETRIES = 0
BASE_DELAY = 0.5  # seconds
MAX_DELAY = 16.0  # seconds

_THROTTLE_CODES = frozenset({
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
})

_CONDITION_FAILED = "ConditionalCheckFailed"


def retry_on_throttle(func):
    """Retry DynamoDB operations on throttling with exponential backoff + jitter.

    Reads ``max_retries`` from the store; with the default of 0 every call
    is a single round trip.
    """
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        max_retries = self.max_retries
        last_exc = None
        for attempt in range(max_retries + 1):
            try:
                return func(self, *args, **kwargs)
            except StoreError as exc:
                if exc.code not in _THROTTLE_CODES:
                    raise
                last_exc = exc
                if attempt < max_retries:
                    delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
                    jitter = random.uniform(0, delay * 0.5)
                    sleep_time = delay + jitter
                    logger.warning(
                        "DynamoDB throttled (%s), retry %d/%d in %.1fs",
                        exc.code, attempt + 1, max_retries, sleep_time,
                    )
                    time.sleep(sleep_time)
        raise last_exc
    return wrapper


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _store_error(exc: Exception) -> StoreError:
    """Wrap a boto3/botocore failure, keeping the DynamoDB error code."""
    if isinstance(exc, ClientError):
        return StoreError(f"DynamoDB {exc.operation_name} failed: {exc}", code=_error_code(exc))
    return StoreError(f"DynamoDB request failed: {exc}")


def _cancellation_codes(exc: ClientError) -> List[str]:
    """Per-item reason codes of a cancelled transaction, in request order."""
    reasons = exc.response.get("CancellationReasons")
    if reasons:
        return [r.get("Code", "None") for r in reasons]
    # Some endpoints only list the reasons in the message: "... [ConditionalCheckFailed, None]"
    match = re.search(r"\[([^\]]*)\]", exc.response.get("Error", {}).get("Message", ""))
    if not match:
        return []
    return [c.strip() for c in match.group(1).split(",")]


def _to_plain(value: Any) -> Any:
    """Convert boto3 Decimals back to ints where they are integral."""
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    return value


def _condition(query: Dict[str, Any]):
    """Translate a store query into a boto3 condition."""
    condition = None
    for field, term in query.items():
        terms = term.items() if isinstance(term, dict) else [("$eq", term)]
        for op, operand in terms:
            if op == "$eq":
                part = Attr(field).eq(operand)
            elif op == "$lt":
                part = Attr(field).lt(operand)
            elif op == "$gt":
                part = Attr(field).gt(operand)
            elif operand:
                part = Attr(field).exists()
            else:
                part = Attr(field).not_exists()
            condition = part if condition is None else condition & part
    return condition


def _update_expression(update: Dict[str, Any]):
    """Translate $set/$inc into (UpdateExpression, names, values)."""
    parts = []
    names = {}
    values = {}
    for k, v in update.get("$set", {}).items():
        safe_key = k.replace("-", "_")
        parts.append(f"#f_{safe_key} = :set_{safe_key}")
        names[f"#f_{safe_key}"] = k
        values[f":set_{safe_key}"] = v
    for k, v in update.get("$inc", {}).items():
        safe_key = k.replace("-", "_")
        parts.append(f"#f_{safe_key} = #f_{safe_key} + :inc_{safe_key}")
        names[f"#f_{safe_key}"] = k
        values[f":inc_{safe_key}"] = v
    return "SET " + ", ".join(parts), names, values


class DynamoDBStore:
    """Document store on a single DynamoDB table keyed by ``key``."""

    def __init__(
        self,
        table_name: str,
        dynamodb_resource=None,
        key: str = NAME,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        if not table_name:
            raise ConfigurationError("DynamoDBStore requires a table_name")
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ConfigurationError(f"max_retries must be a non-negative integer, got {max_retries!r}")
        if dynamodb_resource is None:
            dynamodb_resource = boto3.resource("dynamodb")
        self.table_name = table_name
        self.key = key
        self.max_retries = max_retries
        self._table = dynamodb_resource.Table(table_name)

    @classmethod
    def from_env(cls, dynamodb_resource=None, env_var: str = TABLE_ENV_VAR) -> "DynamoDBStore":
        """Build a store from LEASELOCK_TABLE and, optionally, LEASELOCK_MAX_RETRIES."""
        table_name = os.environ.get(env_var, "")
        if not table_name:
            raise ConfigurationError(f"{env_var} is not set")
        raw_retries = os.environ.get(RETRIES_ENV_VAR, "")
        try:
            max_retries = int(raw_retries) if raw_retries else DEFAULT_MAX_RETRIES
        except ValueError as exc:
            raise ConfigurationError(f"{RETRIES_ENV_VAR} must be an integer, got {raw_retries!r}") from exc
        return cls(table_name, dynamodb_resource=dynamodb_resource, max_retries=max_retries)

    @property
    def _client(self):
        return self._table.meta.client

    # --- Index ---

    @retry_on_throttle
    def ensure_unique_index(self, field: str) -> None:
        """Make sure the table exists and is keyed on ``field`` alone.

        DynamoDB can only enforce uniqueness on a table's key, so asking for
        any other field is an error.
        """
        if field != self.key:
            raise StoreError(
                f"DynamoDB enforces uniqueness only on the hash key '{self.key}', not '{field}'"
            )
        table = self._describe_table()
        if table is None:
            self._create_table(field)
            table = self._describe_table()

        key_schema = {k["AttributeName"]: k["KeyType"] for k in table["KeySchema"]}
        if key_schema != {field: "HASH"}:
            raise StoreError(
                f"Table '{self.table_name}' is keyed on {key_schema}, "
                f"expected '{field}' as its only hash key"
            )

    def _describe_table(self) -> Optional[dict]:
        try:
            return self._client.describe_table(TableName=self.table_name)["Table"]
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return None
            raise _store_error(exc) from exc
        except BotoCoreError as exc:
            raise _store_error(exc) from exc

    def _create_table(self, field: str) -> None:
        logger.info("Creating lock table %s keyed on '%s'", self.table_name, field)
        try:
            self._client.create_table(
                TableName=self.table_name,
                KeySchema=[{"AttributeName": field, "KeyType": "HASH"}],
                AttributeDefinitions=[{"AttributeName": field, "AttributeType": "S"}],
                BillingMode="PAY_PER_REQUEST",
            )
        except ClientError as exc:
            # Another process created it first
            if _error_code(exc) != "ResourceInUseException":
                raise _store_error(exc) from exc
        except BotoCoreError as exc:
            raise _store_error(exc) from exc
        try:
            self._client.get_waiter("table_exists").wait(TableName=self.table_name)
        except BotoCoreError as exc:
            raise _store_error(exc) from exc

    # --- Documents ---

    @retry_on_throttle
    def insert(self, document: dict) -> dict:
        """Put a new document; fails with DuplicateKeyError if the key is taken."""
        if not document.get(self.key):
            raise StoreError(f"Document is missing its key field '{self.key}'")
        try:
            self._table.put_item(
                Item=document,
                ConditionExpression=Attr(self.key).not_exists(),
            )
        except self._client.exceptions.ConditionalCheckFailedException as exc:
            raise DuplicateKeyError(
                f"Duplicate key on '{self.key}': {document[self.key]!r}",
                code=_error_code(exc),
            ) from exc
        except (ClientError, BotoCoreError) as exc:
            raise _store_error(exc) from exc
        return dict(document)

    @retry_on_throttle
    def find_one_and_update(self, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[dict]:
        """Conditionally update the document pinned by the query's key.

        Returns the pre-update document, or None if nothing matched.
        """
        validate_query(query)
        validate_update(update)
        key_value = query.get(self.key)
        if key_value is None or isinstance(key_value, dict):
            raise StoreError(f"Query must match '{self.key}' by equality: {query!r}")

        new_key = update.get("$set", {}).get(self.key, key_value)
        if self.key in update.get("$inc", {}):
            raise StoreError(f"Cannot increment key field '{self.key}'")
        if new_key != key_value:
            return self._move(key_value, new_key, query, update)

        expr, names, values = _update_expression(update)
        try:
            response = self._table.update_item(
                Key={self.key: key_value},
                UpdateExpression=expr,
                ConditionExpression=_condition(query),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_OLD",
            )
        except self._client.exceptions.ConditionalCheckFailedException:
            return None
        except (ClientError, BotoCoreError) as exc:
            raise _store_error(exc) from exc
        return _to_plain(response.get("Attributes"))

    def _move(self, key_value: str, new_key: str, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[dict]:
        """Rename a document's key: delete + put in one transaction.

        The delete is conditioned on the query and on every attribute still
        holding the value just read, so a concurrent change cancels the move.
        """
        try:
            response = self._table.get_item(Key={self.key: key_value}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as exc:
            raise _store_error(exc) from exc

        item = response.get("Item")
        if item is None:
            return None
        old = _to_plain(item)
        if not matches(old, query):
            return None

        guard = _condition(query)
        for field, value in old.items():
            if field != self.key:
                guard = guard & Attr(field).eq(value)

        new = apply_update(old, update)
        transact_items = [
            self._transact_item("Delete", guard, Key={self.key: key_value}),
            self._transact_item("Put", Attr(self.key).not_exists(), Item=new),
        ]
        try:
            self._client.transact_write_items(TransactItems=transact_items)
        except ClientError as exc:
            if _error_code(exc) != "TransactionCanceledException":
                raise _store_error(exc) from exc
            codes = _cancellation_codes(exc)
            if codes[:1] == [_CONDITION_FAILED]:
                return None
            if codes[1:2] == [_CONDITION_FAILED]:
                raise DuplicateKeyError(
                    f"Duplicate key on '{self.key}': {new_key!r}", code=_CONDITION_FAILED,
                ) from exc
            raise _store_error(exc) from exc
        except BotoCoreError as exc:
            raise _store_error(exc) from exc

        logger.debug("Moved %s -> %s in %s", key_value, new_key, self.table_name)
        return old

    def _transact_item(self, action: str, condition, **params) -> dict:
        # The resource client serializes plain values itself, but does not
        # expand Attr conditions nested inside TransactItems.
        built = ConditionExpressionBuilder().build_expression(condition)
        params["TableName"] = self.table_name
        params["ConditionExpression"] = built.condition_expression
        params["ExpressionAttributeNames"] = built.attribute_name_placeholders
        if built.attribute_value_placeholders:
            params["ExpressionAttributeValues"] = built.attribute_value_placeholders
        return {action: params}

    @retry_on_throttle
    def find(self, query: Dict[str, Any]) -> List[dict]:
        """Scan for every document matching the query (live and retired)."""
        validate_query(query)
        kwargs = {"FilterExpression": _condition(query), "ConsistentRead": True}
        items = []
        try:
            while True:
                response = self._table.scan(**kwargs)
                items.extend(response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except (ClientError, BotoCoreError) as exc:
            raise _store_error(exc) from exc
        return [_to_plain(item) for item in items]
