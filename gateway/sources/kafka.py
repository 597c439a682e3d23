"""
Kafka topic event source (kafka-python).

One consumer group per org (``ig-org-{org_id}`` by default) so tenants
progress independently. Auto-commit is disabled: an offset is committed
only when the worker acknowledges the event, giving at-least-once
delivery across restarts.

Message value (JSON):
    {
        "eventType": "APPOINTMENT_CREATED",   # or event_type / type
        "orgId": 12,                          # or org_id
        "orgUnitId": 34,                      # or org_unit_id
        "payload": {...}                      # or data
    }

The worker checkpoint for this source is informational only; the
consumer group owns the real position.
"""

import asyncio
import json
import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Set, Tuple

from kafka import KafkaConsumer, TopicPartition
from kafka.errors import KafkaError
from kafka.structs import OffsetAndMetadata

from core.exceptions import MissingFieldError, SourceAdapterError
from gateway.sources.base import EventSource
from schemas.events import Event

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "integration-events"
POLL_TIMEOUT_MS = 1000


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


class KafkaEventSource(EventSource):

    name = "kafka"

    def __init__(
        self,
        brokers: Any,
        org_id: int,
        topic: Optional[str] = None,
        group_id: Optional[str] = None,
        from_beginning: bool = False,
        consumer: Optional[KafkaConsumer] = None
    ):
        if not org_id:
            raise MissingFieldError("Kafka source requires org_id", context={"field": "org_id"})
        if not brokers and consumer is None:
            raise MissingFieldError("Kafka source requires brokers", context={"field": "brokers"})

        self.org_id = org_id
        self.topic = topic or DEFAULT_TOPIC
        self.group_id = group_id or f"ig-org-{org_id}"
        self.brokers = brokers.split(",") if isinstance(brokers, str) else brokers

        self.consumer = consumer or KafkaConsumer(
            self.topic,
            bootstrap_servers=self.brokers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest" if from_beginning else "latest"
        )
        # event_id -> (partition, offset) for events handed to the worker
        self._positions: Dict[str, Tuple[TopicPartition, int]] = {}
        # Per partition: offsets held by the worker, highest acked or skipped
        # offset, and the next offset already committed
        self._pending: Dict[TopicPartition, Set[int]] = {}
        self._done: Dict[TopicPartition, int] = {}
        self._committed: Dict[TopicPartition, int] = {}

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    def _decode(self, record) -> Optional[Dict[str, Any]]:
        value = record.value
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="replace")
        try:
            raw = json.loads(value) if isinstance(value, str) else value
        except ValueError:
            logger.warning(f"Kafka message {record.partition}/{record.offset} is not valid JSON, skipping")
            return None
        return raw if isinstance(raw, dict) else None

    def _to_event(self, record, raw: Dict[str, Any]) -> Optional[Event]:
        org_id = _first(raw, "orgId", "org_id")
        if org_id is None and record.key is not None:
            key = record.key.decode("utf-8") if isinstance(record.key, (bytes, bytearray)) else record.key
            org_id = int(key) if str(key).isdigit() else None
        org_id = int(org_id) if org_id is not None else self.org_id
        if org_id != self.org_id:
            return None

        event_type = _first(raw, "eventType", "event_type", "type") or "UNKNOWN"
        payload = _first(raw, "payload", "data")
        if payload is None:
            payload = raw

        timestamp = datetime.utcfromtimestamp(record.timestamp / 1000.0) if record.timestamp else datetime.utcnow()
        return Event(
            id=record.offset,
            event_id=f"kafka-{record.partition}-{record.offset}",
            org_id=org_id,
            org_unit_id=_first(raw, "orgUnitId", "org_unit_id"),
            event_type=str(event_type),
            payload=payload if isinstance(payload, dict) else {},
            timestamp=timestamp,
            source=self.name
        )

    async def poll(self, checkpoint: int, batch_size: int) -> List[Event]:
        try:
            batches = await self._run(self.consumer.poll, timeout_ms=POLL_TIMEOUT_MS, max_records=batch_size)
        except KafkaError as e:
            raise SourceAdapterError(
                f"Kafka poll failed: {e}",
                context={"topic": self.topic, "group_id": self.group_id},
                original_exception=e,
                code="CONSUMER_FAILED"
            )

        events: List[Event] = []
        skipped = set()
        for tp, records in (batches or {}).items():
            for record in records:
                # Reading started here, so nothing below it needs committing
                self._committed.setdefault(tp, record.offset)
                raw = self._decode(record)
                event = self._to_event(record, raw) if raw is not None else None
                if event is None:
                    # Other org or undecodable
                    self._mark_done(tp, record.offset)
                    skipped.add(tp)
                    continue
                self._positions[event.event_id] = (tp, record.offset)
                self._pending.setdefault(tp, set()).add(record.offset)
                events.append(event)

        for tp in skipped:
            await self._advance(tp)

        events.sort(key=lambda e: e.id)
        return events

    def _mark_done(self, tp: TopicPartition, offset: int) -> None:
        self._done[tp] = max(self._done.get(tp, -1), offset)

    async def _advance(self, tp: TopicPartition) -> None:
        """
        Commit the partition up to its first unacknowledged event.

        Skipped and acked offsets behind an event still held by the worker
        stay uncommitted until that event is acked.
        """
        done = self._done.get(tp)
        if done is None:
            return
        target = done + 1
        pending = self._pending.get(tp)
        if pending:
            target = min(target, min(pending))
        if target <= self._committed.get(tp, -1):
            return

        try:
            await self._run(self.consumer.commit, {tp: OffsetAndMetadata(target, "", -1)})
        except KafkaError as e:
            raise SourceAdapterError(
                f"Kafka commit failed: {e}",
                context={"topic": self.topic, "group_id": self.group_id},
                original_exception=e,
                code="CONSUMER_FAILED"
            )
        self._committed[tp] = target

    async def ack(self, event: Event) -> None:
        position = self._positions.pop(event.event_id, None)
        if position is None:
            return
        tp, offset = position
        self._pending.get(tp, set()).discard(offset)
        self._mark_done(tp, offset)
        await self._advance(tp)

    async def nack(self, event: Event) -> None:
        """
        Rewind so the event and everything polled after it is read again.

        The worker stops its batch at a nacked event, so every event still
        held is undispatched; each partition seeks back to its first one.
        """
        if event.event_id not in self._positions:
            return

        for tp, pending in list(self._pending.items()):
            if not pending:
                continue
            rewind_to = min(pending)
            await self._run(self.consumer.seek, tp, rewind_to)
            self._pending[tp] = set()
            if self._done.get(tp, -1) >= rewind_to:
                self._done[tp] = rewind_to - 1
            logger.warning(f"Kafka partition {tp.partition}: rewound to offset {rewind_to} after nack")

        self._positions.clear()

    async def get_initial_checkpoint(self) -> int:
        return 0

    async def close(self) -> None:
        await self._run(self.consumer.close)
