import threading
import time

from sdexport.runner import run_concurrently_until


def _stoppable(record, name, linger=0.0):
    def run(stop):
        record.append(f"{name}-started")
        stop.wait()
        time.sleep(linger)
        record.append(f"{name}-stopped")

    return run


def test_all_functions_run_and_finish_before_return():
    stop = threading.Event()
    record = []
    threading.Timer(0.05, stop.set).start()

    run_concurrently_until(stop, _stoppable(record, "a"), _stoppable(record, "b", 0.05))

    assert sorted(record) == ["a-started", "a-stopped", "b-started", "b-stopped"]


def test_waits_for_slow_function():
    stop = threading.Event()
    record = []
    stop.set()

    run_concurrently_until(stop, _stoppable(record, "slow", 0.1))

    assert record[-1] == "slow-stopped"


def test_functions_receive_the_stop_event():
    stop = threading.Event()
    seen = []
    stop.set()

    run_concurrently_until(stop, seen.append)

    assert seen == [stop]


def test_no_functions_returns_once_stopped():
    stop = threading.Event()
    threading.Timer(0.02, stop.set).start()

    run_concurrently_until(stop)

    assert stop.is_set()