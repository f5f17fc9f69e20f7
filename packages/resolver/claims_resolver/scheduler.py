"""Concurrent, rate-limited lookup scheduler with deferred retry rounds.

One ``LookupScheduler`` runs per identifier family. Its life is a small
state machine::

    IDLE -> SCHEDULING -> (DRAINING_FOR_RETRY -> COOLDOWN -> SCHEDULING)* -> DONE
                 \\______________ CANCELLING ______________/

The first retry-eligible failure in a round halts the dispatch gate; in-flight
work finishes, the failed and never-dispatched identifiers form the next
round, and a cooldown (doubling per round) runs before it starts. A shared
cancellation event halts the gate, cuts token waits and backoff sleeps short,
and ends the run after in-flight requests complete.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import aiohttp
from tqdm import tqdm

from claims_common.config import HCPCS_BATCH_HARD_CAP, ResolverSettings
from claims_common.models import CacheRecord, IdentifierFamily
from claims_resolver.bulk_preload import HcpcsFallbackTable
from claims_resolver.cache import ResolutionCache
from claims_resolver.errors import (
    NotFoundError,
    PermanentError,
    ResolverError,
    TransientError,
)
from claims_resolver.hcpcs_api_client import HCPCSClient
from claims_resolver.npi_api_client import NPIClient
from claims_resolver.progress import LookupEvent, ProgressStore, cooldown_countdown
from claims_resolver.rate_limit import DispatchGate, RateBudget

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    SCHEDULING = "scheduling"
    DRAINING_FOR_RETRY = "draining_for_retry"
    COOLDOWN = "cooldown"
    CANCELLING = "cancelling"
    DONE = "done"


@dataclass(frozen=True)
class WorkUnit:
    """One dispatchable request: a single NPI or a batch of HCPCS codes."""

    identifiers: Tuple[str, ...]


@dataclass
class LookupOutcome:
    identifier: str
    record: Optional[CacheRecord] = None
    error: Optional[ResolverError] = None
    # Not dispatched because the gate closed
    deferred: bool = False


@dataclass
class RetryRound:
    round_number: int
    pending: List[str]
    cooldown_seconds: float
    cooldown_until: float


@dataclass
class SchedulerReport:
    family: IdentifierFamily
    planned: int = 0
    resolved: int = 0
    fallback: int = 0
    not_found: int = 0
    errors: int = 0
    retries_scheduled: int = 0
    rounds: int = 0
    cancelled: bool = False
    states: List[SchedulerState] = field(default_factory=list)


# --------------------------------------
# Family strategies
# --------------------------------------

class LookupFamily:
    """How one identifier family is planned into requests and executed."""

    family: IdentifierFamily

    def plan(self, identifiers: Sequence[str]) -> List[WorkUnit]:
        return [WorkUnit((identifier,)) for identifier in identifiers]

    async def execute(
        self, unit: WorkUnit, gate: DispatchGate, session: aiohttp.ClientSession
    ) -> List[LookupOutcome]:
        raise NotImplementedError

    def fallback_for(self, identifier: str) -> Optional[CacheRecord]:
        return None


class NpiLookupFamily(LookupFamily):
    family = IdentifierFamily.NPI

    def __init__(self, client: NPIClient):
        self.client = client

    async def execute(self, unit, gate, session):
        (npi,) = unit.identifiers
        if not await gate.admit():
            return [LookupOutcome(npi, deferred=True)]
        try:
            return [LookupOutcome(npi, record=await self.client.lookup(npi, session, budget=gate.budget))]
        except ResolverError as e:
            return [LookupOutcome(npi, error=e)]


class HcpcsLookupFamily(LookupFamily):
    """Batched OR queries; a failed batch is retried code by code in the same round."""

    family = IdentifierFamily.HCPCS

    def __init__(
        self,
        client: HCPCSClient,
        batch_size: int = 100,
        fallback: Optional[HcpcsFallbackTable] = None,
    ):
        self.client = client
        self.batch_size = max(1, min(batch_size, HCPCS_BATCH_HARD_CAP))
        self.fallback = fallback or HcpcsFallbackTable()

    def plan(self, identifiers):
        codes = list(identifiers)
        return [
            WorkUnit(tuple(codes[start:start + self.batch_size]))
            for start in range(0, len(codes), self.batch_size)
        ]

    def fallback_for(self, identifier):
        return self.fallback.record_for(identifier)

    async def execute(self, unit, gate, session):
        codes = list(unit.identifiers)
        if len(codes) == 1:
            return await self._lookup_singles(codes, gate, session)

        if not await gate.admit():
            return [LookupOutcome(code, deferred=True) for code in codes]
        try:
            found, provenance = await self.client.lookup_batch(codes, session, budget=gate.budget)
        except (TransientError, PermanentError) as e:
            logger.warning(
                "HCPCS batch of %d codes failed (%s); retrying each code individually",
                len(codes), e,
            )
            return await self._lookup_singles(codes, gate, session)

        outcomes = []
        for code in codes:
            if code in found:
                outcomes.append(LookupOutcome(code, record=found[code]))
            else:
                outcomes.append(
                    LookupOutcome(code, error=NotFoundError(f"HCPCS {code} not in registry", provenance=provenance))
                )
        return outcomes

    async def _lookup_singles(self, codes, gate, session) -> List[LookupOutcome]:
        outcomes = []
        for index, code in enumerate(codes):
            if not await gate.admit():
                outcomes.extend(LookupOutcome(c, deferred=True) for c in codes[index:])
                break
            try:
                record = await self.client.lookup(code, session, budget=gate.budget)
                outcomes.append(LookupOutcome(code, record=record))
            except ResolverError as e:
                outcomes.append(LookupOutcome(code, error=e))
        return outcomes


# --------------------------------------
# Scheduler
# --------------------------------------

class LookupScheduler:
    """Fills cache gaps for one family through its registry API."""

    def __init__(
        self,
        family: LookupFamily,
        cache: ResolutionCache,
        budget: RateBudget,
        cancel_event: asyncio.Event,
        concurrency_limit: int = 2,
        failure_retry_rounds: int = 2,
        cooldown_for_round: Callable[[int], float] = lambda n: 30.0 * (2 ** (n - 1)),
        max_lookups: Optional[int] = None,
        retry_errors: bool = False,
        progress: Optional[ProgressStore] = None,
    ):
        self.family = family
        self.cache = cache
        self.cancel_event = cancel_event
        self.gate = DispatchGate(budget, cancel_event)
        self.concurrency_limit = max(1, concurrency_limit)
        self.failure_retry_rounds = max(0, failure_retry_rounds)
        self.cooldown_for_round = cooldown_for_round
        self.max_lookups = max_lookups
        self.retry_errors = retry_errors
        self.progress = progress
        self.state = SchedulerState.IDLE
        self.rounds: List[RetryRound] = []
        self.report = SchedulerReport(family=family.family, states=[SchedulerState.IDLE])

    @classmethod
    def from_settings(
        cls,
        family: LookupFamily,
        cache: ResolutionCache,
        settings: ResolverSettings,
        cancel_event: asyncio.Event,
        progress: Optional[ProgressStore] = None,
    ) -> "LookupScheduler":
        return cls(
            family,
            cache,
            RateBudget(settings.requests_per_second, burst=settings.rate_burst),
            cancel_event,
            concurrency_limit=settings.concurrency_limit,
            failure_retry_rounds=settings.failure_retry_rounds,
            cooldown_for_round=settings.cooldown_for_round,
            max_lookups=settings.max_new_lookups,
            retry_errors=settings.rebuild_map,
            progress=progress,
        )

    @property
    def label(self) -> str:
        return self.family.family.value.upper()

    def _transition(self, state: SchedulerState) -> None:
        if state == self.state:
            return
        logger.debug("%s scheduler: %s -> %s", self.label, self.state.value, state.value)
        self.state = state
        self.report.states.append(state)

    async def run(
        self, identifiers: Sequence[str], session: Optional[aiohttp.ClientSession] = None
    ) -> SchedulerReport:
        """Look up every identifier the cache is missing. Returns the run report."""
        missing = sorted(await asyncio.to_thread(self.cache.missing, identifiers, self.retry_errors))
        if self.max_lookups is not None and len(missing) > self.max_lookups:
            logger.info(
                "%s: capping new lookups at %d of %d missing", self.label, self.max_lookups, len(missing)
            )
            missing = missing[:self.max_lookups]
        self.report.planned = len(missing)

        if not missing or self.cancel_event.is_set():
            self.report.cancelled = self.cancel_event.is_set()
            self._transition(SchedulerState.DONE)
            return self.report

        if session is None:
            async with aiohttp.ClientSession() as own_session:
                await self._run_rounds(missing, own_session)
        else:
            await self._run_rounds(missing, session)
        return self.report

    async def _run_rounds(self, missing: List[str], session: aiohttp.ClientSession) -> None:
        loop = asyncio.get_running_loop()
        round_number = 0
        pending = missing
        with tqdm(total=len(missing), desc=f"{self.label} lookups", unit="id", disable=None) as bar:
            while True:
                self._transition(SchedulerState.SCHEDULING)
                self.gate.reopen()
                self.report.rounds = round_number + 1
                retry = await self._run_round(round_number, self.family.plan(pending), session, bar)

                if self.cancel_event.is_set():
                    self._transition(SchedulerState.CANCELLING)
                    self.report.cancelled = True
                    break
                if not retry:
                    break
                if round_number >= self.failure_retry_rounds:
                    # Never dispatched and no rounds left; they stay missing
                    logger.warning("%s: %d identifiers left after the last round", self.label, len(retry))
                    break

                round_number += 1
                delay = self.cooldown_for_round(round_number)
                self.rounds.append(
                    RetryRound(round_number, list(retry), delay, cooldown_until=loop.time() + delay)
                )
                self._transition(SchedulerState.COOLDOWN)
                logger.info(
                    "%s: %d identifiers deferred to retry round %d/%d after %.0fs cooldown",
                    self.label, len(retry), round_number, self.failure_retry_rounds, delay,
                )
                finished = await cooldown_countdown(
                    delay, self.cancel_event, f"{self.label} cooldown before round {round_number}"
                )
                if not finished:
                    self._transition(SchedulerState.CANCELLING)
                    self.report.cancelled = True
                    break
                pending = sorted(set(retry))

        self._transition(SchedulerState.DONE)

    async def _run_round(
        self,
        round_number: int,
        units: List[WorkUnit],
        session: aiohttp.ClientSession,
        bar: tqdm,
    ) -> List[str]:
        queue: asyncio.Queue = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)
        retry: List[str] = []

        workers = [
            asyncio.create_task(self._worker(queue, round_number, session, retry, bar))
            for _ in range(min(self.concurrency_limit, len(units)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        # Units never pulled off the queue
        while not queue.empty():
            unit = queue.get_nowait()
            if not self.cancel_event.is_set():
                retry.extend(unit.identifiers)
        return retry

    async def _worker(
        self,
        queue: asyncio.Queue,
        round_number: int,
        session: aiohttp.ClientSession,
        retry: List[str],
        bar: tqdm,
    ) -> None:
        while self.gate.is_open:
            try:
                unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes = await self.family.execute(unit, self.gate, session)
            for outcome in outcomes:
                await self._record(outcome, round_number, retry, bar)

    async def _record(
        self, outcome: LookupOutcome, round_number: int, retry: List[str], bar: tqdm
    ) -> None:
        identifier = outcome.identifier
        details = {}

        if outcome.deferred:
            if not self.cancel_event.is_set():
                retry.append(identifier)
            await self._emit(identifier, "deferred", round_number)
            return

        error = outcome.error
        if outcome.record is not None:
            await self._put(identifier, outcome.record)
            self.report.resolved += 1
            kind = "resolved"
        elif isinstance(error, NotFoundError):
            fallback = self.family.fallback_for(identifier)
            if fallback is not None:
                await self._put(identifier, fallback)
                self.report.fallback += 1
                kind = "fallback"
            else:
                await self._put(identifier, CacheRecord.not_found(identifier, request_provenance=error.provenance))
                self.report.not_found += 1
                kind = "not_found"
        else:
            reason = str(error) if error is not None else "unknown failure"
            provenance = error.provenance if error is not None else None
            await self._put(identifier, CacheRecord.error(identifier, reason, request_provenance=provenance))
            details["error"] = reason
            can_retry = (
                isinstance(error, TransientError)
                and round_number < self.failure_retry_rounds
                and not self.cancel_event.is_set()
            )
            if can_retry:
                retry.append(identifier)
                self.report.retries_scheduled += 1
                if not self.gate.halted:
                    self.gate.halt()
                    self._transition(SchedulerState.DRAINING_FOR_RETRY)
                    logger.warning(
                        "%s: retryable failure for %s (%s); draining in-flight requests",
                        self.label, identifier, reason,
                    )
                await self._emit(identifier, "retry_scheduled", round_number, details)
                return
            self.report.errors += 1
            kind = "error"

        bar.update(1)
        await self._emit(identifier, kind, round_number, details)

    async def _put(self, identifier: str, record: CacheRecord) -> None:
        # The commit waits on fsync; keep it off the loop both families share
        await asyncio.to_thread(self.cache.put, identifier, record)

    async def _emit(self, identifier, outcome, round_number, details=None) -> None:
        if self.progress is None:
            return
        await self.progress.add_event(
            LookupEvent(
                family=self.family.family,
                identifier=identifier,
                outcome=outcome,
                round_number=round_number,
                details=details or {},
            )
        )
