"""
DynamoDB Record Store Gateway

Generic get / put / update / delete / query against the three pipeline
tables. Typed access lives in ascribe.records.repositories; this layer only
deals in raw attribute dicts.

Sparse update contract
──────────────────────
``update(table, key, changes)`` writes exactly the attributes present in
``changes`` (``SET #a = :a`` per attribute) and leaves every other attribute
untouched. Attributes named in ``remove`` are dropped with ``REMOVE``.
An update with nothing to set and nothing to remove is a no-op: no client
is opened and no request is sent.

Type mapping
────────────
DynamoDB rejects Python floats and empty string sets. ``to_dynamo`` turns
floats into Decimal and drops empty sets; ``from_dynamo`` turns Decimal back
into int / float and string sets into sorted lists.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterable, Mapping

import aioboto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from ascribe.core.config import Settings
from ascribe.core.errors import InvalidStateError, NotFoundError, PreconditionError, RecordStoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Attribute conversion
# ---------------------------------------------------------------------------

def to_dynamo(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, Mapping):
        return {k: to_dynamo(v) for k, v in value.items() if v is not None}
    if isinstance(value, (set, frozenset)):
        return {to_dynamo(v) for v in value}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, Mapping):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(from_dynamo(v) for v in value)
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


def _is_empty_set(value: Any) -> bool:
    return isinstance(value, (set, frozenset)) and not value


def build_update_expression(
    changes: Mapping[str, Any],
    remove: Iterable[str] = (),
) -> tuple[str, dict[str, str], dict[str, Any]] | None:
    """
    Build ``UpdateExpression`` / names / values for a sparse update.

    ``None`` values are skipped, so callers can pass optional fields straight
    through. An empty string set is turned into a REMOVE because DynamoDB has
    no representation for it. Returns None when there is nothing to write.
    """
    names:  dict[str, str] = {}
    values: dict[str, Any] = {}
    set_clauses:    list[str] = []
    remove_clauses: list[str] = []

    for i, (attr, value) in enumerate(changes.items()):
        if value is None:
            continue
        names[f"#s{i}"] = attr
        if _is_empty_set(value):
            remove_clauses.append(f"#s{i}")
            continue
        values[f":s{i}"] = to_dynamo(value)
        set_clauses.append(f"#s{i} = :s{i}")

    for j, attr in enumerate(remove):
        if attr in changes and changes[attr] is not None:
            raise PreconditionError(f"Attribute '{attr}' cannot be both set and removed.", field=attr)
        names[f"#r{j}"] = attr
        remove_clauses.append(f"#r{j}")

    parts = []
    if set_clauses:
        parts.append("SET " + ", ".join(set_clauses))
    if remove_clauses:
        parts.append("REMOVE " + ", ".join(remove_clauses))
    if not parts:
        return None
    return " ".join(parts), names, values


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class RecordStoreGateway:
    """
    Async DynamoDB access.

    ``key_schemas`` maps table name → ordered key attribute names
    (partition key first). Every call validates that the supplied key has
    a non-empty value for each attribute before any request is made.
    """

    def __init__(
        self,
        settings: Settings,
        key_schemas: Mapping[str, tuple[str, ...]] | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        self._settings = settings
        self._session = session or aioboto3.Session()
        self._key_schemas = dict(key_schemas or default_key_schemas(settings))

    def _resource(self):
        return self._session.resource("dynamodb", region_name=self._settings.aws_region)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _key(self, table: str, key: Mapping[str, Any]) -> dict[str, Any]:
        if not table:
            raise PreconditionError("'table' is required.", field="table")
        schema = self._key_schemas.get(table)
        if schema is None:
            raise PreconditionError(f"Unknown table '{table}'.", field="table")
        missing = [attr for attr in schema if not key.get(attr)]
        if missing:
            raise PreconditionError(
                f"Key for table '{table}' is missing {', '.join(missing)}.",
                field=missing[0],
            )
        return {attr: key[attr] for attr in schema}

    @staticmethod
    def _target(table: str, key: Mapping[str, Any]) -> str:
        return f"{table}[{', '.join(f'{k}={v}' for k, v in key.items())}]"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get(self, table: str, key: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return the item, or None when it does not exist."""
        k = self._key(table, key)
        async with self._resource() as dynamo:
            try:
                tbl = await dynamo.Table(table)
                resp = await tbl.get_item(Key=k)
            except (ClientError, BotoCoreError) as exc:
                raise RecordStoreError("get", self._target(table, k), exc) from exc

        item = resp.get("Item")
        return from_dynamo(item) if item else None

    async def put(self, table: str, item: Mapping[str, Any]) -> None:
        """Full overwrite of the item."""
        k = self._key(table, item)
        body = {attr: v for attr, v in to_dynamo(dict(item)).items() if not _is_empty_set(v)}
        async with self._resource() as dynamo:
            try:
                tbl = await dynamo.Table(table)
                await tbl.put_item(Item=body)
            except (ClientError, BotoCoreError) as exc:
                raise RecordStoreError("put", self._target(table, k), exc) from exc
        logger.debug("Dynamo put ok | target=%s", self._target(table, k))

    async def update(
        self,
        table: str,
        key: Mapping[str, Any],
        changes: Mapping[str, Any],
        remove: Iterable[str] = (),
        require_existing: bool = False,
        only_if: Mapping[str, Iterable[Any]] | None = None,
    ) -> bool:
        """
        Sparse update. Returns False (and sends nothing) when there is
        nothing to set or remove.

        With ``require_existing`` the write is conditional on the item
        already existing (UpdateItem would otherwise create it) and a miss
        raises NotFoundError.

        ``only_if`` maps attribute → allowed current values; the write is
        applied only while every listed attribute holds one of them.
        An item that exists but fails the check raises InvalidStateError.
        """
        k = self._key(table, key)
        changes = {attr: v for attr, v in changes.items() if attr not in k}
        built = build_update_expression(changes, tuple(remove))
        if built is None:
            logger.debug("Dynamo update skipped, empty change set | target=%s", self._target(table, k))
            return False

        expression, names, values = built
        params: dict[str, Any] = {
            "Key": k,
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
        }
        conditions: list[str] = []
        if require_existing:
            partition = next(iter(k))
            names["#pk"] = partition
            conditions.append("attribute_exists(#pk)")
        for i, (attr, allowed) in enumerate((only_if or {}).items()):
            names[f"#c{i}"] = attr
            placeholders = []
            for j, value in enumerate(allowed):
                values[f":c{i}_{j}"] = to_dynamo(value)
                placeholders.append(f":c{i}_{j}")
            conditions.append(f"#c{i} IN ({', '.join(placeholders)})")
        if values:
            params["ExpressionAttributeValues"] = values
        if conditions:
            params["ConditionExpression"] = " AND ".join(conditions)
        if only_if:
            params["ReturnValuesOnConditionCheckFailure"] = "ALL_OLD"

        async with self._resource() as dynamo:
            try:
                tbl = await dynamo.Table(table)
                await tbl.update_item(**params)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                    if only_if and exc.response.get("Item"):
                        raise InvalidStateError(
                            f"Item {self._target(table, k)} changed before the update was applied."
                        ) from exc
                    raise NotFoundError(f"No item {self._target(table, k)} to update.") from exc
                raise RecordStoreError("update", self._target(table, k), exc) from exc
            except BotoCoreError as exc:
                raise RecordStoreError("update", self._target(table, k), exc) from exc

        logger.debug("Dynamo update ok | target=%s expr=%s", self._target(table, k), expression)
        return True

    async def delete(self, table: str, key: Mapping[str, Any]) -> bool:
        """
        Delete an item. Returns True if it existed. Deleting an absent item
        is not an error.
        """
        k = self._key(table, key)
        async with self._resource() as dynamo:
            try:
                tbl = await dynamo.Table(table)
                resp = await tbl.delete_item(Key=k, ReturnValues="ALL_OLD")
            except (ClientError, BotoCoreError) as exc:
                raise RecordStoreError("delete", self._target(table, k), exc) from exc
        return bool(resp.get("Attributes"))

    async def query(
        self,
        table: str,
        attribute: str,
        value: Any,
        index_name: str | None = None,
    ) -> list[dict[str, Any]]:
        """Equality query on a partition key (of the table or of a GSI), all pages."""
        if not table:
            raise PreconditionError("'table' is required.", field="table")
        if not value:
            raise PreconditionError(f"'{attribute}' is required.", field=attribute)

        params: dict[str, Any] = {"KeyConditionExpression": Key(attribute).eq(value)}
        if index_name:
            params["IndexName"] = index_name

        items: list[dict[str, Any]] = []
        target = f"{table}[{attribute}={value}]"
        async with self._resource() as dynamo:
            try:
                tbl = await dynamo.Table(table)
                resp = await tbl.query(**params)
                items.extend(resp.get("Items", []))
                while "LastEvaluatedKey" in resp:
                    resp = await tbl.query(**params, ExclusiveStartKey=resp["LastEvaluatedKey"])
                    items.extend(resp.get("Items", []))
            except (ClientError, BotoCoreError) as exc:
                raise RecordStoreError("query", target, exc) from exc

        return [from_dynamo(item) for item in items]


def default_key_schemas(settings: Settings) -> dict[str, tuple[str, ...]]:
    return {
        settings.documents_table:       ("userId", "documentId"),
        settings.extracted_texts_table: ("extractedTextId", "documentId"),
        settings.questions_table:       ("documentId", "questionId"),
    }
