"""Running several stoppable functions side by side."""

from __future__ import annotations

import threading
from collections.abc import Callable

__all__ = ["StoppableFunc", "run_concurrently_until"]

# A function that blocks while it runs and returns once ``stop`` is set.
StoppableFunc = Callable[[threading.Event], None]


def run_concurrently_until(stop: threading.Event, *args: StoppableFunc) -> None:
    """Run every function in its own thread and return after ``stop`` is set
    and all of them have returned."""
    threads = [
        threading.Thread(target=func, args=(stop,), daemon=True) for func in args
    ]
    for thread in threads:
        thread.start()
    stop.wait()
    for thread in threads:
        thread.join()