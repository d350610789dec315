"""SQLite database client wrapper with CRUD operations."""

import asyncio
import json
import logging
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from src.core.clock import to_iso
from src.core.config import constants, settings


logger = logging.getLogger(__name__)

# Columns stored as JSON text and decoded on read
JSON_COLUMNS = frozenset({"recurrence_rule", "photo_urls"})

MEMORY_DB_PATH = ":memory:"


class DatabaseError(RuntimeError):
    """A store operation failed; nothing from the failing operation was committed."""


class DuplicateRecordError(DatabaseError):
    """A write violated a uniqueness constraint."""


class RecordNotFoundError(KeyError):
    """A record looked up by id does not exist."""


def _validate_collection_name(collection: str) -> None:
    """Validate that a collection name contains only alphanumeric characters and underscores."""
    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", collection):
        msg = f"Invalid collection name: {collection}. Only alphanumeric characters and underscores are allowed."
        raise ValueError(msg)


def sanitize_param(value: str | int | float | bool | None) -> str:
    """Escape a value for embedding in a double-quoted filter literal.

    The escaping is undone by the filter parser, so any string round-trips.
    """
    return json.dumps(str(value), ensure_ascii=False)[1:-1]


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict | list):
        return json.dumps(value)
    return value


def _decode_record(record: dict[str, Any]) -> dict[str, Any]:
    """Decode JSON columns back into Python structures."""
    decoded = record.copy()
    for key in JSON_COLUMNS.intersection(decoded):
        value = decoded[key]
        if isinstance(value, str) and value:
            decoded[key] = json.loads(value)
    return decoded


def _unescape(raw: str, quote: str) -> str:
    """Undo the escaping applied inside a quoted filter literal."""
    if quote == '"':
        try:
            return json.loads(f'"{raw}"', strict=False)
        except json.JSONDecodeError as e:
            msg = f"Invalid escape in filter value: {raw}"
            raise ValueError(msg) from e
    return re.sub(r"\\(.)", r"\1", raw)


def _parse_value(value: str, *, is_like: bool = False) -> str | bool:
    """Convert a literal to its SQLite parameter.

    Literals stay strings; INTEGER columns compare them numerically through
    column affinity. Only ``true``/``false`` become booleans.
    """
    if is_like:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False

    return value


def _get_sql_operator(op: str) -> str:
    """Map filter operator to SQL operator."""
    op_map = {
        "=": "=",
        "!=": "!=",
        ">": ">",
        "<": "<",
        ">=": ">=",
        "<=": "<=",
        "~": "LIKE",
    }
    sql_op = op_map.get(op)
    if not sql_op:
        msg = f"Unsupported operator: {op}"
        raise ValueError(msg)
    return sql_op


def _parse_single_comparison(comparison: str) -> tuple[str, list[str | int | float | None]]:
    """Parse a single comparison expression into a SQL condition and its parameters."""
    match = re.match(
        r"""(\w+)\s*(=|!=|>|<|>=|<=|~)\s*(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'|(null))$""",
        comparison.strip(),
        re.DOTALL,
    )
    if not match:
        msg = f"Invalid filter syntax: {comparison}"
        raise ValueError(msg)

    field = match.group(1)
    op = match.group(2)

    if match.group(5) is not None:
        if op == "=":
            return f"{field} IS NULL", []
        if op == "!=":
            return f"{field} IS NOT NULL", []
        msg = f"Operator {op} cannot be used with null"
        raise ValueError(msg)

    sql_op = _get_sql_operator(op)
    is_like = sql_op == "LIKE"
    if match.group(3) is not None:
        literal = _unescape(match.group(3), '"')
    else:
        literal = _unescape(match.group(4), "'")
    value = _parse_value(literal, is_like=is_like)

    if is_like:
        return f"{field} LIKE ? ESCAPE '\\'", [f"%{value}%"]
    return f"{field} {sql_op} ?", [value]


def _parse_or_group(or_group: str) -> tuple[str, list[str | int | float | None]]:
    """Parse a parenthesized OR group into a SQL condition and parameters."""
    inner = or_group[1:-1]  # Remove parentheses
    or_conditions = []
    or_params: list[str | int | float | None] = []

    for part in _split_top_level(inner, "||"):
        if part.startswith("(") and part.endswith(")"):
            cond, values = parse_filter(part[1:-1])
            cond = f"({cond})"
        else:
            cond, values = _parse_single_comparison(part)
        or_conditions.append(cond)
        or_params.extend(values)

    return f"({' OR '.join(or_conditions)})", or_params


def _split_top_level(filter_query: str, separator: str) -> list[str]:
    """Split a filter query by a separator while preserving parenthesized groups."""
    parts = []
    current = ""
    paren_depth = 0
    in_quote: str | None = None
    escaped = False

    for char in filter_query:
        if in_quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == in_quote:
                in_quote = None
        elif char in "\"'":
            in_quote = char
        elif char == "(":
            paren_depth += 1
        elif char == ")":
            paren_depth -= 1

        current += char

        if paren_depth == 0 and in_quote is None and current.endswith(separator):
            parts.append(current[: -len(separator)].strip())
            current = ""

    if current.strip():
        parts.append(current.strip())

    return parts


def parse_filter(filter_query: str) -> tuple[str, list[str | int | float | None]]:
    """Parse filter syntax into a SQL WHERE clause and parameter list.

    Supported syntax: ``field = "value" && (a = "x" || b = "y")``, with the
    operators ``= != > < >= <= ~`` and the bare literal ``null`` for
    ``= null`` / ``!= null`` checks.
    """
    if not filter_query:
        return "", []

    conditions = []
    params: list[str | int | float | None] = []

    for part in _split_top_level(filter_query, "&&"):
        # Handle parenthesized OR groups
        if part.startswith("(") and part.endswith(")"):
            cond, cond_params = _parse_or_group(part)
        else:
            cond, cond_params = _parse_single_comparison(part)
        conditions.append(cond)
        params.extend(cond_params)

    return " AND ".join(conditions), params


def _parse_sort(sort: str) -> str:
    """Turn ``-col,+col`` or ``col DESC, col`` into a safe ORDER BY clause."""
    if not sort:
        return "rowid ASC"

    clauses = []
    for raw_part in sort.split(","):
        part = raw_part.strip()
        direction = "ASC"
        if part.startswith("-"):
            direction, part = "DESC", part[1:]
        elif part.startswith("+"):
            part = part[1:]
        match = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)\s*(ASC|DESC)?$", part, re.IGNORECASE)
        if not match:
            logger.warning("Invalid sort parameter, using default", extra={"sort": sort})
            return "rowid ASC"
        if match.group(2):
            direction = match.group(2).upper()
        clauses.append(f"{match.group(1)} {direction}")
    return ", ".join(clauses)


def or_filter(field: str, values: list[str]) -> str:
    """Build an OR group matching any of the given values for one field."""
    conditions = " || ".join(f'{field} = "{sanitize_param(value)}"' for value in values)
    return f"({conditions})"


class DBClient:
    """Async SQLite client owning a single connection.

    All operations are serialized through one lock. Inside ``transaction()``
    operations join the open transaction instead of committing on their own.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or settings.sqlite_db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(f"db_in_transaction_{id(self)}", default=False)

    async def connect(self) -> "DBClient":
        """Open the connection, creating the database directory when needed."""
        if self._conn is not None:
            return self

        target = self.db_path
        if target != MEMORY_DB_PATH:
            path = Path(target).resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)

        self._conn = await aiosqlite.connect(target)
        await self._conn.execute("PRAGMA foreign_keys = ON")
        if target != MEMORY_DB_PATH:
            await self._conn.execute("PRAGMA journal_mode = WAL")

        logger.info("Opened SQLite connection", extra={"db_path": target})
        return self

    async def close(self) -> None:
        """Close the connection if open."""
        if self._conn is None:
            return
        try:
            await self._conn.close()
            logger.info("Closed SQLite connection", extra={"db_path": self.db_path})
        except (aiosqlite.Error, ValueError) as e:
            logger.warning("Error closing SQLite connection", extra={"error": str(e), "db_path": self.db_path})
        finally:
            self._conn = None

    async def __aenter__(self) -> "DBClient":
        return await self.connect()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database is not connected. Call connect() first."
            raise DatabaseError(msg)
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["DBClient"]:
        """Run several operations atomically.

        Commits when the block exits normally, rolls back on any exception.
        Nested use joins the outer transaction.
        """
        if self._in_transaction.get():
            yield self
            return

        async with self._lock:
            conn = self._require_connection()
            token = self._in_transaction.set(True)
            try:
                yield self
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
            finally:
                self._in_transaction.reset(token)

    @asynccontextmanager
    async def _operation(self, name: str, collection: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run one operation, committing on its own unless inside a transaction."""
        try:
            if self._in_transaction.get():
                yield self._require_connection()
                return

            async with self._lock:
                conn = self._require_connection()
                try:
                    yield conn
                    await conn.commit()
                except BaseException:
                    await conn.rollback()
                    raise
        except (RecordNotFoundError, DatabaseError, ValueError):
            raise
        except aiosqlite.IntegrityError as e:
            if "UNIQUE" in str(e):
                logger.info(f"{name}_duplicate", extra={"collection": collection, "error": str(e)})
                msg = f"Duplicate record in {collection}: {e}"
                raise DuplicateRecordError(msg) from e
            logger.error(f"{name}_failed", extra={"collection": collection, "error": str(e)})
            msg = f"Integrity error in {collection}: {e}"
            raise DatabaseError(msg) from e
        except aiosqlite.OperationalError as e:
            if "no such table" in str(e):
                logger.error("Table not found", extra={"collection": collection})
                msg = f"Table '{collection}' does not exist. Call init_db() first."
                raise DatabaseError(msg) from e
            logger.error(f"{name}_failed", extra={"collection": collection, "error": str(e)})
            msg = f"Failed to {name.replace('_', ' ')} in {collection}: {e}"
            raise DatabaseError(msg) from e
        except aiosqlite.Error as e:
            logger.error(f"{name}_failed", extra={"collection": collection, "error": str(e)})
            msg = f"Failed to {name.replace('_', ' ')} in {collection}: {e}"
            raise DatabaseError(msg) from e

    @staticmethod
    async def _fetch_by_id(conn: aiosqlite.Connection, collection: str, record_id: str) -> dict[str, Any]:
        query = f"SELECT * FROM {collection} WHERE id = ?"  # noqa: S608 - collection is validated
        cursor = await conn.execute(query, (record_id,))
        row = await cursor.fetchone()
        if row is None:
            msg = f"Record not found in {collection}: {record_id}"
            raise RecordNotFoundError(msg)
        columns = [description[0] for description in cursor.description]
        return _decode_record(dict(zip(columns, row, strict=True)))

    async def executescript(self, script: str) -> None:
        """Execute a multi-statement SQL script (schema setup)."""
        async with self._operation("execute_script", "schema") as conn:
            await conn.executescript(script)

    async def create_record(self, *, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new record and return it with its assigned id."""
        _validate_collection_name(collection)
        payload = dict(data)
        payload.setdefault("id", str(uuid.uuid4()))

        columns = list(payload.keys())
        columns_str = ", ".join(columns)
        placeholders_str = ", ".join("?" for _ in columns)
        values = [_encode_value(payload[key]) for key in columns]

        query = f"INSERT INTO {collection} ({columns_str}) VALUES ({placeholders_str})"  # noqa: S608 - collection is validated
        async with self._operation("create_record", collection) as conn:
            await conn.execute(query, values)
            result = await self._fetch_by_id(conn, collection, payload["id"])

        logger.info("Created record", extra={"collection": collection, "record_id": payload["id"]})
        return result

    async def get_record(self, *, collection: str, record_id: str) -> dict[str, Any]:
        """Fetch a single record by ID, raising RecordNotFoundError if not found."""
        _validate_collection_name(collection)
        async with self._operation("get_record", collection) as conn:
            record = await self._fetch_by_id(conn, collection, record_id)

        logger.debug("Retrieved record", extra={"collection": collection, "record_id": record_id})
        return record

    async def update_record(self, *, collection: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a record by ID and return the updated record."""
        if not data:
            msg = "Empty update payload"
            raise ValueError(msg)
        _validate_collection_name(collection)

        set_clause = ", ".join(f"{key} = ?" for key in data)
        values = [_encode_value(val) for val in data.values()]
        values.append(record_id)

        query = f"UPDATE {collection} SET {set_clause} WHERE id = ?"  # noqa: S608 - collection is validated
        async with self._operation("update_record", collection) as conn:
            cursor = await conn.execute(query, values)
            if cursor.rowcount == 0:
                msg = f"Record not found in {collection}: {record_id}"
                raise RecordNotFoundError(msg)
            result = await self._fetch_by_id(conn, collection, record_id)

        logger.info("Updated record", extra={"collection": collection, "record_id": record_id})
        return result

    async def delete_record(self, *, collection: str, record_id: str) -> None:
        """Delete a record by ID, raising RecordNotFoundError if not found."""
        _validate_collection_name(collection)
        query = f"DELETE FROM {collection} WHERE id = ?"  # noqa: S608 - collection is validated
        async with self._operation("delete_record", collection) as conn:
            cursor = await conn.execute(query, (record_id,))
            if cursor.rowcount == 0:
                msg = f"Record not found in {collection}: {record_id}"
                raise RecordNotFoundError(msg)

        logger.info("Deleted record", extra={"collection": collection, "record_id": record_id})

    async def delete_records(self, *, collection: str, filter_query: str) -> int:
        """Delete every record matching the filter and return how many were removed."""
        _validate_collection_name(collection)
        where_clause, params = parse_filter(filter_query)
        if not where_clause:
            msg = "Refusing to delete without a filter"
            raise ValueError(msg)

        query = f"DELETE FROM {collection} WHERE {where_clause}"  # noqa: S608 - collection is validated
        async with self._operation("delete_records", collection) as conn:
            cursor = await conn.execute(query, params)
            deleted = cursor.rowcount

        logger.info("Deleted records", extra={"collection": collection, "count": deleted})
        return deleted

    async def list_records(
        self,
        *,
        collection: str,
        page: int = 1,
        per_page: int = constants.DEFAULT_PER_PAGE_LIMIT,
        filter_query: str = "",
        sort: str = "",
    ) -> list[dict[str, Any]]:
        """List records with optional filtering, sorting, and pagination."""
        _validate_collection_name(collection)

        where_clause, params = parse_filter(filter_query)
        if where_clause:
            where_clause = f"WHERE {where_clause}"

        offset = (page - 1) * per_page
        query = f"SELECT * FROM {collection} {where_clause} ORDER BY {_parse_sort(sort)} LIMIT ? OFFSET ?"  # noqa: S608 - collection is validated
        params.extend([per_page, offset])

        async with self._operation("list_records", collection) as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            columns = [description[0] for description in cursor.description]

        records = [_decode_record(dict(zip(columns, row, strict=True))) for row in rows]
        logger.debug("Listed records", extra={"collection": collection, "count": len(records)})
        return records

    async def list_all_records(
        self,
        *,
        collection: str,
        filter_query: str = "",
        sort: str = "",
    ) -> list[dict[str, Any]]:
        """List every record matching the filter, paging through in batches."""
        records: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self.list_records(
                collection=collection,
                page=page,
                per_page=constants.FULL_LIST_BATCH_SIZE,
                filter_query=filter_query,
                sort=sort,
            )
            records.extend(batch)
            if len(batch) < constants.FULL_LIST_BATCH_SIZE:
                return records
            page += 1

    async def get_first_record(self, *, collection: str, filter_query: str, sort: str = "") -> dict[str, Any] | None:
        """Return the first record matching the filter, or None."""
        records = await self.list_records(collection=collection, per_page=1, filter_query=filter_query, sort=sort)
        return records[0] if records else None

    async def get_first_record_by(self, *, collection: str, **equals: Any) -> dict[str, Any] | None:
        """Return the first record whose columns equal the given values exactly, or None.

        Values are bound as parameters without any conversion, so opaque keys
        such as client-generated idempotency keys match byte for byte.
        """
        _validate_collection_name(collection)
        if not equals:
            msg = "At least one column is required"
            raise ValueError(msg)
        for column in equals:
            if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", column):
                msg = f"Invalid column name: {column}"
                raise ValueError(msg)

        where_clause = " AND ".join(f"{column} = ?" for column in equals)
        query = f"SELECT * FROM {collection} WHERE {where_clause} LIMIT 1"  # noqa: S608 - names are validated
        async with self._operation("get_first_record_by", collection) as conn:
            cursor = await conn.execute(query, [_encode_value(value) for value in equals.values()])
            row = await cursor.fetchone()
            columns = [description[0] for description in cursor.description]

        return _decode_record(dict(zip(columns, row, strict=True))) if row else None

    async def count_records(self, *, collection: str, filter_query: str = "") -> int:
        """Count records matching the filter."""
        _validate_collection_name(collection)
        where_clause, params = parse_filter(filter_query)
        if where_clause:
            where_clause = f"WHERE {where_clause}"

        query = f"SELECT COUNT(*) FROM {collection} {where_clause}"  # noqa: S608 - collection is validated
        async with self._operation("count_records", collection) as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        return int(row[0]) if row else 0
