import json
import queue
import time

from geofence_agent.listeners import LocationListeners


def _wait_for(q, count, timeout=5):
    items = []
    deadline = time.time() + timeout
    while len(items) < count and time.time() < deadline:
        try:
            items.append(q.get(timeout=0.05))
        except queue.Empty:
            pass
    return items


def test_push_only_while_running():
    q = queue.Queue()
    listeners = LocationListeners(q)

    assert not listeners.push({"latitude": 1, "longitude": 2})
    listeners.start()
    assert listeners.push({"latitude": 1, "longitude": 2})
    listeners.stop()

    assert q.get_nowait() == ("sample", {"latitude": 1, "longitude": 2})
    assert q.empty()


def test_feed_is_tailed_from_its_end(tmp_path):
    feed = tmp_path / "samples.jsonl"
    feed.write_text(json.dumps({"latitude": 0, "longitude": 0}) + "\n", encoding="utf-8")
    q = queue.Queue()
    listeners = LocationListeners(q, feed, poll_sec=0.05)
    listeners.start()
    try:
        with open(feed, "a", encoding="utf-8") as f:
            f.write(json.dumps({"latitude": 1, "longitude": 1}) + "\n")
            f.write("garbage\n")
            f.write(json.dumps({"latitude": 2, "longitude": 2}))
            f.flush()
        first = _wait_for(q, 1)
        with open(feed, "a", encoding="utf-8") as f:
            f.write("\n")
        second = _wait_for(q, 1)
    finally:
        listeners.stop()

    assert first == [("sample", {"latitude": 1, "longitude": 1})]
    assert second == [("sample", {"latitude": 2, "longitude": 2})]


def test_watchdog_restarts_dead_feed(tmp_path):
    listeners = LocationListeners(queue.Queue(), tmp_path / "samples.jsonl", poll_sec=0.05)
    listeners.start()
    try:
        dead = listeners._feed_thread
        listeners._stop.set()
        dead.join(1)
        listeners._stop.clear()

        listeners.check_and_restart()

        assert listeners._feed_thread is not dead
        assert listeners._feed_thread.is_alive()
    finally:
        listeners.stop()
