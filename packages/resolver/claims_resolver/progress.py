# progress.py
import asyncio
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from tqdm import tqdm

from claims_common.models import IdentifierFamily
from claims_resolver.rate_limit import sleep_unless_cancelled


OutcomeKind = Literal[
    "resolved",
    "fallback",
    "not_found",
    "error",
    "retry_scheduled",
    "deferred",
]


class LookupEvent(BaseModel):
    id: int = 0
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    family: IdentifierFamily
    identifier: str
    outcome: OutcomeKind
    round_number: int = 0

    # error message, provenance, etc.
    details: Dict[str, Any] = Field(default_factory=dict)


class ProgressStore:
    """Shared lookup progress for both family schedulers.

    Counters cover every event; only the most recent ``max_events`` events
    are retained for inspection.
    """

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: Deque[LookupEvent] = deque(maxlen=max_events)
        self._counts: Dict[IdentifierFamily, Counter] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1

    async def add_event(self, event: LookupEvent) -> None:
        async with self._lock:
            event.id = self._next_id
            self._next_id += 1
            self._events.append(event)
            self._counts.setdefault(event.family, Counter())[event.outcome] += 1

    async def counts(self, family: IdentifierFamily) -> Dict[str, int]:
        async with self._lock:
            return dict(self._counts.get(family, Counter()))

    async def recent(
        self,
        family: IdentifierFamily,
        outcome: OutcomeKind,
        limit: int = 3,
    ) -> List[LookupEvent]:
        """Most recent retained events of one outcome, oldest first."""
        async with self._lock:
            events = [e for e in self._events if e.family == family and e.outcome == outcome]
        return events[-limit:] if limit > 0 else []


async def cooldown_countdown(
    seconds: float,
    cancel_event: Optional[asyncio.Event],
    label: str,
) -> bool:
    """Sleep ``seconds`` behind a countdown bar. Returns False if cancelled first."""
    remaining = float(seconds)
    with tqdm(total=round(remaining, 1), desc=label, unit="s", leave=False, disable=None) as bar:
        while remaining > 0:
            step = min(1.0, remaining)
            if not await sleep_unless_cancelled(step, cancel_event):
                return False
            remaining -= step
            bar.update(round(step, 1))
    return True
