"""Keyed mutual exclusion around identity resolution and conversation attach.

Keys are normalized contact identifiers (``email:jane@example.com``). Locks for
several keys are always taken in sorted order so two workers holding
overlapping evidence cannot deadlock.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import ContextManager, Protocol

from sqlalchemy import Engine, text
from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)


class KeyedLock(Protocol):
    def hold(self, keys: Iterable[str]) -> ContextManager[None]: ...


class InProcessKeyedLock:
    """Per-key :class:`threading.Lock` for single-process deployments and tests."""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        acquired: list[tuple[str, threading.Lock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                if not lock.acquire(timeout=self.timeout):
                    self._checkin(key)
                    raise TimeoutError(f"timed out waiting for lock on {key.split(':', 1)[0]}")
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


def advisory_lock_id(key: str) -> int:
    """Map ``key`` onto the signed 64-bit space of PostgreSQL advisory locks."""

    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class AdvisoryKeyedLock:
    """PostgreSQL transaction-level advisory locks shared by every worker process.

    The locks live in a transaction on a dedicated connection, so they are
    released by its commit or rollback even when acquiring a later key fails.
    """

    def __init__(self, engine: Engine, timeout: float = 30.0) -> None:
        self.engine = engine
        self.timeout = timeout

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        lock_ids = sorted({advisory_lock_id(key) for key in keys})
        with self.engine.connect() as conn, conn.begin():
            conn.execute(text(f"SET LOCAL lock_timeout = '{int(self.timeout * 1000)}ms'"))
            for lock_id in lock_ids:
                try:
                    conn.execute(text("SELECT pg_advisory_xact_lock(:id)"), {"id": lock_id})
                except OperationalError as exc:
                    raise TimeoutError("timed out waiting for advisory lock") from exc
            yield


def build_keyed_lock(engine: Engine, timeout: float = 30.0) -> KeyedLock:
    if engine.dialect.name == "postgresql":
        return AdvisoryKeyedLock(engine, timeout=timeout)
    return InProcessKeyedLock(timeout=timeout)


__all__ = [
    "AdvisoryKeyedLock",
    "InProcessKeyedLock",
    "KeyedLock",
    "advisory_lock_id",
    "build_keyed_lock",
]
