"""Event bus used to hand inbound events to workers and publish outcomes.

Two implementations share the :class:`EventBus` protocol: Kafka for
deployments (consumer groups give per-partition ordering and manual commits
give at-least-once delivery) and an in-memory bus for tests and local runs.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections import defaultdict
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

from ..config import SupportSettings

logger = logging.getLogger(__name__)

KAFKA_PRODUCER_RETRIES = 5
KAFKA_SEND_TIMEOUT_SECONDS = 10


def _noop() -> None:
    return None


@dataclass
class BusRecord:
    topic: str
    value: dict[str, Any]
    key: str | None = None
    _ack: Callable[[], None] = field(default=_noop, repr=False)
    acked: bool = False

    def ack(self) -> None:
        if not self.acked:
            self._ack()
            self.acked = True


class EventBus(Protocol):
    def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None: ...

    def consume(self, topic: str, stop_event: threading.Event) -> Iterator[BusRecord]: ...

    def close(self) -> None: ...


class InMemoryEventBus:
    """Thread-safe in-process bus.

    Every published record is also kept in :attr:`published` so tests can
    assert on emitted events.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval
        self._queues: dict[str, queue.Queue[BusRecord]] = defaultdict(queue.Queue)
        self._lock = threading.Lock()
        self.published: list[BusRecord] = []

    def _queue(self, topic: str) -> queue.Queue[BusRecord]:
        with self._lock:
            return self._queues[topic]

    def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        record = BusRecord(topic=topic, value=json.loads(json.dumps(value, default=str)), key=key)
        with self._lock:
            self.published.append(record)
        self._queue(topic).put(record)

    def consume(self, topic: str, stop_event: threading.Event) -> Iterator[BusRecord]:
        q = self._queue(topic)
        while not stop_event.is_set():
            try:
                record = q.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            delivered = BusRecord(topic=record.topic, value=record.value, key=record.key, _ack=q.task_done)
            yield delivered

    def messages(self, topic: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record.value for record in self.published if record.topic == topic]

    def join(self, topic: str) -> None:
        """Block until every record on ``topic`` has been acknowledged."""

        self._queue(topic).join()

    def close(self) -> None:
        return None


def _json_serializer(value: Any) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


def _json_deserializer(raw: bytes) -> dict[str, Any]:
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        # Surface undecodable payloads to the dispatcher's dead-letter path.
        return {"_undecodable": raw.decode("utf-8", errors="replace")}
    return value if isinstance(value, dict) else {"_undecodable": value}


class KafkaEventBus:
    """Kafka-backed bus with JSON payloads and manual offset commits.

    After each polled batch a partition with an unacknowledged record is
    rewound to it before offsets are committed, so the commit never passes a
    record that was not handled and the next poll redelivers it (duplicates
    are absorbed by message-id dedup downstream).
    """

    def __init__(
        self,
        hosts: Sequence[str],
        *,
        group_id: str,
        topic_prefix: str = "",
        producer: Any | None = None,
        consumer_factory: Callable[..., Any] | None = None,
        poll_timeout_ms: int = 500,
    ) -> None:
        self.hosts = list(hosts)
        self.group_id = group_id
        self.topic_prefix = topic_prefix
        self.poll_timeout_ms = poll_timeout_ms
        self._producer = producer or KafkaProducer(
            bootstrap_servers=self.hosts,
            retries=KAFKA_PRODUCER_RETRIES,
            acks="all",
            value_serializer=_json_serializer,
            key_serializer=lambda k: k.encode("utf-8") if k is not None else None,
        )
        self._consumer_factory = consumer_factory or KafkaConsumer

    def _topic(self, topic: str) -> str:
        return f"{self.topic_prefix}{topic}"

    def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        future = self._producer.send(self._topic(topic), value=value, key=key)
        try:
            future.get(timeout=KAFKA_SEND_TIMEOUT_SECONDS)
        except KafkaError:
            logger.exception("Failed to publish to %s", self._topic(topic))
            raise

    def consume(self, topic: str, stop_event: threading.Event) -> Iterator[BusRecord]:
        consumer = self._consumer_factory(
            self._topic(topic),
            bootstrap_servers=self.hosts,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            value_deserializer=_json_deserializer,
        )
        try:
            while not stop_event.is_set():
                batches = consumer.poll(timeout_ms=self.poll_timeout_ms)
                if not batches:
                    continue
                polled: list[tuple[Any, int, BusRecord]] = []
                for partition, messages in batches.items():
                    for message in messages:
                        key = message.key.decode("utf-8") if isinstance(message.key, bytes) else message.key
                        record = BusRecord(topic=topic, value=message.value, key=key)
                        polled.append((partition, message.offset, record))
                        yield record
                rewound = set()
                for partition, offset, record in polled:
                    if not record.acked and partition not in rewound:
                        # Redeliver from the first unacknowledged record on.
                        consumer.seek(partition=partition, offset=offset)
                        rewound.add(partition)
                consumer.commit()
        finally:
            consumer.close()

    def close(self) -> None:
        self._producer.flush()
        self._producer.close()


def build_event_bus(settings: SupportSettings) -> EventBus:
    if settings.event_bus == "kafka":
        return KafkaEventBus(
            settings.kafka_hosts,
            group_id=settings.kafka_consumer_group,
            topic_prefix=settings.kafka_topic_prefix,
        )
    if settings.event_bus == "memory":
        return InMemoryEventBus()
    raise RuntimeError(f"EVENT_BUS must be 'kafka' or 'memory', got {settings.event_bus!r}")


__all__ = ["BusRecord", "EventBus", "InMemoryEventBus", "KafkaEventBus", "build_event_bus"]
