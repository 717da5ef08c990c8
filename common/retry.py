# common/retry.py
"""
Bounded retry / wait helpers with an injectable clock.

call() runs on tenacity with a fixed wait schedule.

Every wait goes through a ``Clock`` so tests can run the full retry
schedule instantly with a fake clock instead of real sleeps.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> float:
        """Current unix time in seconds."""
        ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by time.time() and asyncio.sleep()."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


@dataclass
class BoundedRetry:
    """
    Fixed schedule of waits, e.g. ``delays=(5, 10)``.

    The schedule is the whole budget: there is no jitter and no growth, and
    the caller cannot extend it.
    """

    delays: Sequence[float]
    clock: Clock = field(default_factory=SystemClock)

    @property
    def budget_seconds(self) -> float:
        return float(sum(self.delays))

    async def wait_for(
        self,
        check: Callable[[], Awaitable[bool]],
        *,
        check_after_final_delay: bool = False,
    ) -> bool:
        """
        Wait, re-check, wait again... until ``check`` passes or delays run out.

        With ``check_after_final_delay=False`` the last delay is served
        without a trailing check (wait-then-assume).

        Returns:
            True if a check passed, False if the schedule was exhausted.
        """
        last = len(self.delays) - 1
        for index, delay in enumerate(self.delays):
            await self.clock.sleep(delay)
            if index == last and not check_after_final_delay:
                break
            if await check():
                return True
        return False

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        before_retry: Optional[Callable[[BaseException, int], Awaitable[None]]] = None,
    ) -> T:
        """
        Run ``operation``, retrying once per delay on ``retry_on`` errors.

        ``before_retry(exc, attempt)`` runs before each wait. The last error
        is re-raised once the schedule is exhausted; anything outside
        ``retry_on`` propagates immediately.
        """

        async def before_sleep(retry_state: RetryCallState) -> None:
            if before_retry is not None and retry_state.outcome is not None:
                await before_retry(retry_state.outcome.exception(), retry_state.attempt_number)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(len(self.delays) + 1),
            wait=wait_chain(*(wait_fixed(d) for d in self.delays)) if self.delays else wait_none(),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep,
            sleep=self.clock.sleep,
            reraise=True,
        )
        return await retrying(operation)


__all__ = ["Clock", "SystemClock", "BoundedRetry"]
