import time
from threading import Event

from supportline.ingestion.bus import InMemoryEventBus
from supportline.ingestion.runner import WorkerPool


def test_pool_cancel_stops_work():
    pool = WorkerPool(max_workers=1)
    events = {}
    started = Event()

    def work(ev: Event):
        events["evt"] = ev
        started.set()
        while not ev.is_set():
            time.sleep(0.01)

    fut = pool.submit("job-1", work)
    assert started.wait(1)
    pool.cancel("job-1")
    fut.result(timeout=1)
    assert events["evt"].is_set()
    pool.stop()


def test_pool_submit_and_cleanup():
    pool = WorkerPool(max_workers=1)
    called = {}

    def work(ev: Event):
        called["ran"] = True

    fut = pool.submit("job-1", work)
    fut.result(timeout=1)
    assert called["ran"]
    assert pool.get("job-1") is fut
    pool.clear("job-1")
    assert list(pool.list()) == []
    pool.stop()


def test_consumers_feed_handler_and_survive_errors():
    bus = InMemoryEventBus(poll_interval=0.01)
    handled = []

    def handler(record):
        if record.value.get("boom"):
            raise ValueError("bad record")
        handled.append(record.value["n"])
        record.ack()

    pool = WorkerPool(max_workers=2)
    names = pool.start_consumers(bus, "inbound_events", handler, 2)
    bus.publish("inbound_events", {"boom": True})
    for n in range(5):
        bus.publish("inbound_events", {"n": n})

    deadline = time.time() + 5
    while len(handled) < 5 and time.time() < deadline:
        time.sleep(0.01)
    pool.stop()

    assert names == ["inbound_events-consumer-0", "inbound_events-consumer-1"]
    assert sorted(handled) == [0, 1, 2, 3, 4]
    assert list(pool.list()) == []
