"""Threaded worker pool that runs bus consumer loops with cancel support."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from threading import Event

from .bus import BusRecord, EventBus

logger = logging.getLogger(__name__)


class WorkerPool:
    """Small wrapper around :class:`ThreadPoolExecutor` to manage workers.

    Each submitted job gets an associated :class:`threading.Event` used as a
    cancellation flag. Worker functions receive this event as the first
    positional argument and are expected to check ``cancel_event.is_set()``
    between records and return when set.
    """

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="worker")
        self._events: dict[str, Event] = {}
        self._futures: dict[str, Future] = {}

    # Worker function signature
    Worker = Callable[[Event], None]

    def submit(self, job_id: str, fn: Worker) -> Future:
        """Submit a job for execution."""
        cancel_event = Event()
        self._events[job_id] = cancel_event
        future = self.executor.submit(fn, cancel_event)
        self._futures[job_id] = future
        return future

    def cancel(self, job_id: str) -> None:
        event = self._events.get(job_id)
        if event:
            event.set()
        fut = self._futures.get(job_id)
        if fut:
            fut.cancel()

    def clear(self, job_id: str) -> None:
        """Remove references for a finished or cancelled job."""
        self._events.pop(job_id, None)
        self._futures.pop(job_id, None)

    def get(self, job_id: str) -> Future | None:
        return self._futures.get(job_id)

    def list(self) -> Iterable[str]:
        return list(self._futures)

    def start_consumers(
        self,
        bus: EventBus,
        topic: str,
        handler: Callable[[BusRecord], object],
        count: int,
    ) -> list[str]:
        """Start ``count`` consumer loops feeding ``topic`` records to ``handler``."""

        names = []
        for index in range(count):
            name = f"{topic}-consumer-{index}"
            self.submit(name, partial(consume_loop, bus, topic, handler))
            names.append(name)
        return names

    def stop(self, wait: bool = True) -> None:
        for job_id in self.list():
            self.cancel(job_id)
        self.executor.shutdown(wait=wait)
        for job_id in self.list():
            self.clear(job_id)


def consume_loop(
    bus: EventBus,
    topic: str,
    handler: Callable[[BusRecord], object],
    cancel_event: Event,
) -> None:
    """Feed records to ``handler`` until ``cancel_event`` is set.

    The handler acknowledges each record itself. A record whose handler raised
    stays unacknowledged so the bus redelivers it.
    """

    logger.info("Consumer started on %s", topic, extra={"event": "consumer_started", "topic": topic})
    for record in bus.consume(topic, cancel_event):
        try:
            handler(record)
        except Exception:
            logger.exception(
                "Handler failed for record on %s",
                topic,
                extra={"event": "handler_failed", "topic": topic, "key": record.key},
            )
    logger.info("Consumer stopped on %s", topic, extra={"event": "consumer_stopped", "topic": topic})


__all__ = ["WorkerPool", "consume_loop"]
