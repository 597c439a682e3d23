"""
Relational table event source.

Reads an append-only events table owned by the tenant's application:

    SELECT <id> AS _id, <org_id> AS _org_id, <event_type> AS _event_type,
           <payload> AS _payload [, <org_unit_id> AS _org_unit_id]
           [, <created_at> AS _created_at]
    FROM <table>
    WHERE <id> > :checkpoint AND <org_id> = :org_id
    ORDER BY <id> ASC
    LIMIT <batch_size>

Table and column names come from per-tenant configuration, so they are
checked against a strict identifier pattern before being interpolated.
Values always travel as bound parameters.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from core.exceptions import InvalidIdentifierError, MissingFieldError, SourceAdapterError
from gateway.sources.base import EventSource
from schemas.events import Event

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")

REQUIRED_COLUMNS = ("id", "org_id", "event_type", "payload")
OPTIONAL_COLUMNS = ("org_unit_id", "created_at")

DEFAULT_BATCH_SIZE = 10
MAX_BATCH_SIZE = 100

# (substring in driver message, error code), checked in order
_ERROR_PATTERNS = [
    ("no such table", "TABLE_NOT_FOUND"),
    ("doesn't exist", "TABLE_NOT_FOUND"),
    ("does not exist", "TABLE_NOT_FOUND"),
    ("unknown column", "COLUMN_NOT_FOUND"),
    ("no such column", "COLUMN_NOT_FOUND"),
    ("using password: no", "MISSING_CREDENTIALS"),
    ("access denied", "ACCESS_DENIED"),
    ("permission denied", "ACCESS_DENIED"),
    ("password authentication failed", "ACCESS_DENIED"),
    ("connection refused", "HOST_UNREACHABLE"),
    ("can't connect", "HOST_UNREACHABLE"),
    ("could not connect", "HOST_UNREACHABLE"),
    ("name or service not known", "HOST_UNREACHABLE"),
    ("timed out", "HOST_UNREACHABLE"),
]


def validate_identifier(value: Any, field: str) -> str:
    if not isinstance(value, str) or not IDENTIFIER_RE.match(value):
        raise InvalidIdentifierError(
            f"Invalid identifier for {field}: {value!r}",
            context={"identifier": value, "field": field}
        )
    return value


def classify_db_error(exc: Exception) -> str:
    message = str(getattr(exc, "orig", None) or exc).lower()
    if "column" in message and ("does not exist" in message or "unknown" in message):
        return "COLUMN_NOT_FOUND"
    for needle, code in _ERROR_PATTERNS:
        if needle in message:
            return code
    return "QUERY_FAILED"


def clamp_batch_size(batch_size: Optional[int]) -> int:
    if not batch_size:
        return DEFAULT_BATCH_SIZE
    return max(1, min(int(batch_size), MAX_BATCH_SIZE))


def parse_payload(raw: Any, event_ref: Any = None) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Event {event_ref}: payload is not valid JSON, using empty payload")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"Event {event_ref}: payload is not a JSON object, using empty payload")
        return {}
    return parsed


class RelationalEventSource(EventSource):
    """
    Polls an events table through a SQLAlchemy AsyncEngine.

    Any async dialect works (aiomysql, asyncpg, aiosqlite).
    """

    name = "mysql"

    def __init__(
        self,
        engine: AsyncEngine,
        org_id: int,
        table: str,
        column_mapping: Dict[str, str],
        batch_size: Optional[int] = None
    ):
        if engine is None:
            raise MissingFieldError("Relational source requires an engine", context={"field": "engine"})
        if not org_id:
            raise MissingFieldError("Relational source requires org_id", context={"field": "org_id"})
        if not table:
            raise MissingFieldError("Relational source requires table", context={"field": "table"})

        mapping = column_mapping or {}
        for column in REQUIRED_COLUMNS:
            if not mapping.get(column):
                raise MissingFieldError(
                    f"Relational source requires column_mapping.{column}",
                    context={"field": f"column_mapping.{column}"}
                )

        self.engine = engine
        self.org_id = org_id
        self.table = validate_identifier(table, "table")
        self.mapping = {
            column: validate_identifier(mapping[column], f"column_mapping.{column}")
            for column in REQUIRED_COLUMNS + OPTIONAL_COLUMNS
            if mapping.get(column)
        }
        self.batch_size = clamp_batch_size(batch_size)
        self.checkpoint = 0

    def _select_sql(self, limit: int) -> str:
        m = self.mapping
        columns = [f"{m[c]} AS _{c}" for c in REQUIRED_COLUMNS + OPTIONAL_COLUMNS if c in m]
        return (
            f"SELECT {', '.join(columns)} FROM {self.table} "
            f"WHERE {m['id']} > :checkpoint AND {m['org_id']} = :org_id "
            f"ORDER BY {m['id']} ASC LIMIT {int(limit)}"
        )

    def _to_event(self, row: Dict[str, Any]) -> Event:
        event_id = int(row["_id"])
        event_type = row.get("_event_type") or ""
        org_id = row.get("_org_id") or self.org_id
        created_at = row.get("_created_at")
        return Event(
            id=event_id,
            event_id=f"mysql-{org_id}-{event_type}-{event_id}",
            org_id=org_id,
            org_unit_id=row.get("_org_unit_id"),
            event_type=event_type or "UNKNOWN",
            payload=parse_payload(row.get("_payload"), event_id),
            timestamp=created_at if isinstance(created_at, datetime) else datetime.utcnow(),
            source=self.name
        )

    async def _execute(self, sql: str, params: Dict[str, Any]):
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(sql), params)
                return [dict(row) for row in result.mappings().all()]
        except (DBAPIError, SQLAlchemyError, OSError) as e:
            code = classify_db_error(e)
            raise SourceAdapterError(
                f"Event table query failed: {e}",
                context={"table": self.table, "org_id": self.org_id},
                original_exception=e,
                code=code
            )

    async def poll(self, checkpoint: int, batch_size: int) -> List[Event]:
        limit = clamp_batch_size(batch_size or self.batch_size)
        rows = await self._execute(
            self._select_sql(limit),
            {"checkpoint": checkpoint, "org_id": self.org_id}
        )
        events = [self._to_event(row) for row in rows]
        if events:
            logger.debug(f"Polled {len(events)} events from {self.table} after id {checkpoint}")
        return events

    async def get_initial_checkpoint(self) -> int:
        m = self.mapping
        rows = await self._execute(
            f"SELECT MAX({m['id']}) AS max_id FROM {self.table} WHERE {m['org_id']} = :org_id",
            {"org_id": self.org_id}
        )
        return int(rows[0]["max_id"] or 0) if rows else 0

    async def ack(self, event: Event) -> None:
        self.checkpoint = max(self.checkpoint, event.id)

    async def nack(self, event: Event) -> None:
        # Redelivery goes through delivery logs and the DLQ, not the table
        self.checkpoint = max(self.checkpoint, event.id)
        logger.warning(f"Event {event.event_id} nacked; checkpoint advanced, retry via DLQ")

    async def close(self) -> None:
        await self.engine.dispose()
