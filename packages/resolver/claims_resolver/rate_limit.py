"""Token-bucket throttling and the dispatch gate shared by a family's workers."""

import asyncio
import time
from typing import Callable, Optional


async def sleep_unless_cancelled(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay`` seconds. Returns False early if ``cancel_event`` fires."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return True
    if cancel_event.is_set():
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False


class RateBudget:
    """Per-family token bucket.

    Issuing a request consumes one token, tokens refill continuously at
    ``requests_per_second`` up to ``burst``. Waiters sleep until the next
    token is due instead of polling; the lock makes them queue in order.
    A rate of 0 disables throttling.
    """

    def __init__(
        self,
        requests_per_second: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_second = requests_per_second
        self.burst = max(1, burst)
        self._clock = clock
        self._tokens = float(self.burst)
        self._updated = clock()
        self._lock = asyncio.Lock()
        self.tokens_consumed = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.requests_per_second)
        self._updated = now

    async def acquire(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """Wait for and consume one token. Returns False if cancelled while waiting."""
        if self.requests_per_second <= 0:
            if cancel_event is not None and cancel_event.is_set():
                return False
            self.tokens_consumed += 1
            return True

        async with self._lock:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return False
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    self.tokens_consumed += 1
                    return True
                wait = (1 - self._tokens) / self.requests_per_second
                if not await sleep_unless_cancelled(wait, cancel_event):
                    return False

    def refund(self) -> None:
        """Return a token that was acquired but never spent on a request."""
        self.tokens_consumed = max(0, self.tokens_consumed - 1)
        if self.requests_per_second > 0:
            self._tokens = min(float(self.burst), self._tokens + 1)


class DispatchGate:
    """Admission point every outbound request of one family passes through.

    A request is dispatched only when the gate is open (not halted for a
    retry drain, not cancelled) and a rate token is available. Worker-pool
    size bounds in-flight requests separately.
    """

    def __init__(self, budget: RateBudget, cancel_event: asyncio.Event):
        self.budget = budget
        self.cancel_event = cancel_event
        self._halted = False
        self.admitted = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def is_open(self) -> bool:
        return not self._halted and not self.cancelled

    def halt(self) -> None:
        self._halted = True

    def reopen(self) -> None:
        self._halted = False

    async def admit(self) -> bool:
        if not self.is_open:
            return False
        if not await self.budget.acquire(self.cancel_event):
            return False
        # The gate may have closed while this worker waited for a token
        if not self.is_open:
            self.budget.refund()
            return False
        self.admitted += 1
        return True
