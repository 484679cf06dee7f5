import threading
import time

import pytest

from backend.app.singleflight import SingleFlight


def test_concurrent_callers_share_one_execution():
    sf = SingleFlight()
    started = threading.Event()
    release = threading.Event()
    calls = []
    results = []

    def load():
        calls.append(1)
        started.set()
        release.wait(5)
        return "value"

    def worker():
        results.append(sf.do("tenant-1", load))

    leader = threading.Thread(target=worker)
    leader.start()
    assert started.wait(5)
    followers = [threading.Thread(target=worker) for _ in range(4)]
    for t in followers:
        t.start()
    time.sleep(0.2)
    release.set()
    for t in [leader, *followers]:
        t.join(5)

    assert len(calls) == 1
    assert results == ["value"] * 5
    assert sf.in_flight() == 0


def test_followers_receive_leader_error():
    sf = SingleFlight()
    started = threading.Event()
    release = threading.Event()
    errors = []

    def boom():
        started.set()
        release.wait(5)
        raise ValueError("db down")

    def worker():
        try:
            sf.do("k", boom)
        except ValueError as ex:
            errors.append(str(ex))

    leader = threading.Thread(target=worker)
    leader.start()
    assert started.wait(5)
    follower = threading.Thread(target=worker)
    follower.start()
    time.sleep(0.2)
    release.set()
    leader.join(5)
    follower.join(5)

    assert errors == ["db down", "db down"]


def test_nothing_is_cached_after_completion():
    sf = SingleFlight()
    calls = []

    def load():
        calls.append(1)
        return len(calls)

    assert sf.do("k", load) == 1
    assert sf.do("k", load) == 2
    assert sf.do("other", load) == 3


def test_error_clears_in_flight_entry():
    sf = SingleFlight()

    def boom():
        raise RuntimeError("x")

    with pytest.raises(RuntimeError):
        sf.do("k", boom)
    assert sf.in_flight() == 0
    assert sf.do("k", lambda: "ok") == "ok"
