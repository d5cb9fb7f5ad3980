"""Monotonic millisecond clock for frame throttling and run timing."""

import time


class MonotonicClock:
    """Reports elapsed wall-clock time in milliseconds.

    Tests substitute any object with a ``now_ms()`` method.
    """

    def now_ms(self) -> float:
        return time.perf_counter() * 1000.0
