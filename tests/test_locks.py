import threading
import time

import pytest

from supportline.ingestion.locks import (
    AdvisoryKeyedLock,
    InProcessKeyedLock,
    advisory_lock_id,
    build_keyed_lock,
)


def test_same_key_is_mutually_exclusive():
    lock = InProcessKeyedLock(timeout=5)
    inside, overlaps = [], []

    def worker():
        with lock.hold(["email:a@x.com"]):
            if inside:
                overlaps.append(True)
            inside.append(True)
            time.sleep(0.02)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert overlaps == []
    assert lock._locks == {}


def test_different_keys_do_not_block():
    lock = InProcessKeyedLock(timeout=0.1)
    with lock.hold(["email:a@x.com"]):
        with lock.hold(["phone:+15550100000"]):
            pass


def test_overlapping_key_sets_do_not_deadlock():
    lock = InProcessKeyedLock(timeout=5)
    done = []

    def worker(keys):
        for _ in range(20):
            with lock.hold(keys):
                pass
        done.append(keys)

    a = threading.Thread(target=worker, args=(["email:a@x.com", "phone:+1555"],))
    b = threading.Thread(target=worker, args=(["phone:+1555", "email:a@x.com"],))
    a.start()
    b.start()
    a.join(timeout=5)
    b.join(timeout=5)

    assert len(done) == 2


def test_timeout_raises_and_releases_bookkeeping():
    lock = InProcessKeyedLock(timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with lock.hold(["email:a@x.com"]):
            held.set()
            release.wait(2)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(2)
    with pytest.raises(TimeoutError):
        with lock.hold(["email:a@x.com"]):
            pass
    release.set()
    thread.join(timeout=2)
    assert lock._locks == {}


def test_advisory_lock_ids_are_stable_signed_64_bit():
    first = advisory_lock_id("email:a@x.com")
    assert first == advisory_lock_id("email:a@x.com")
    assert first != advisory_lock_id("email:b@x.com")
    assert -(2**63) <= first < 2**63


def test_build_keyed_lock_picks_by_dialect(engine):
    assert isinstance(build_keyed_lock(engine), InProcessKeyedLock)

    class PgEngine:
        dialect = type("Dialect", (), {"name": "postgresql"})()

    assert isinstance(build_keyed_lock(PgEngine()), AdvisoryKeyedLock)
