import time
from contextlib import contextmanager
from typing import Iterator

from common.context_vars import request_timer_context_var


class RequestTimer:
    def __init__(self) -> None:
        self.timings: dict[str, float] = {}
        self.counts: dict[str, int] = {}

    @contextmanager
    def capture(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = (time.perf_counter() - start) * 1000
            # Accumulate when the same name is used multiple times
            self.timings[name] = self.timings.get(name, 0) + duration
            self.counts[name] = self.counts.get(name, 0) + 1

    def format_server_timing(self) -> str:
        # Formats into: video;dur=10.5, payment;dur=5.2
        return ", ".join(
            [f"{name};dur={dur:.2f}" for name, dur in self.timings.items()]
        )


@contextmanager
def track_call(name: str) -> Iterator[None]:
    """
    Time a block against the current request's timer, if there is one.

    Outside a request (scripts, tests) this is a no-op.
    """
    timer = request_timer_context_var.get()
    if timer is None:
        yield
        return
    with timer.capture(name):
        yield


__all__ = ["RequestTimer", "track_call"]
