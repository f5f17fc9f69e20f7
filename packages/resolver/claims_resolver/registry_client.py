"""Shared HTTP retry loop for the NPI and HCPCS registry clients."""

import asyncio
import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import aiohttp

from claims_resolver.errors import NotFoundError, PermanentError, TransientError
from claims_resolver.rate_limit import RateBudget, sleep_unless_cancelled

logger = logging.getLogger(__name__)


class RegistryClient:
    """Base client: GET with exponential backoff on retryable failures.

    Retryable statuses, timeouts and connection errors are retried up to
    ``retry_limit`` attempts; the last one surfaces as ``TransientError``.
    A 404 is ``NotFoundError``; any other failure status or an unparseable
    body is ``PermanentError``. Backoff sleeps end early on cancellation.
    When a ``budget`` is given, every retry attempt takes a rate token first;
    the first attempt is paid for by the caller.
    """

    RETRY_LIMIT = 5
    INITIAL_RETRY_DELAY = 1  # Start with 1 second
    MAX_RETRY_DELAY = 60
    RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
    REQUEST_TIMEOUT = 30

    def __init__(
        self,
        api_url: str,
        retry_limit: int = RETRY_LIMIT,
        timeout_seconds: float = REQUEST_TIMEOUT,
        cancel_event: Optional[asyncio.Event] = None,
        user_agent: Optional[str] = None,
    ):
        self.api_url = api_url
        self.retry_limit = max(1, retry_limit)
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event
        self.headers = {"User-Agent": user_agent} if user_agent else {}
        self.run_id = f"api-run-{int(time.time() * 1000)}"

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = min(self.INITIAL_RETRY_DELAY * (2 ** retry_count), self.MAX_RETRY_DELAY)
        # Add jitter to prevent thundering herd
        jitter = random.uniform(0, delay * 0.1)
        return delay + jitter

    def _retry_after(self, headers: Mapping[str, str]) -> Optional[float]:
        value = headers.get("Retry-After") if headers else None
        if value is None:
            return None
        try:
            return min(max(float(value), 0.0), float(self.MAX_RETRY_DELAY))
        except (TypeError, ValueError):
            return None

    def provenance(self, params: Dict[str, Any]) -> str:
        """JSON description of a request, stored with whatever it produced."""
        return json.dumps(
            {
                "url": self.api_url,
                "params": params,
                "requested_at": datetime.now(timezone.utc).isoformat(),
                "api_run_id": self.run_id,
            },
            sort_keys=True,
        )

    async def _get_json(
        self,
        session: aiohttp.ClientSession,
        params: Dict[str, Any],
        budget: Optional[RateBudget] = None,
    ) -> Any:
        retries = 0
        while True:
            retry_after = None
            try:
                async with session.get(
                    self.api_url,
                    params=params,
                    headers=self.headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as resp:
                    if resp.status in self.RETRYABLE_STATUSES:
                        last_error = TransientError(f"HTTP {resp.status}", status=resp.status)
                        retry_after = self._retry_after(resp.headers)
                    elif resp.status == 404:
                        raise NotFoundError("HTTP 404")
                    elif resp.status >= 400:
                        body = await resp.text()
                        raise PermanentError(f"HTTP {resp.status}: {body[:200]}", status=resp.status)
                    else:
                        try:
                            return await resp.json(content_type=None)
                        except ValueError as e:
                            raise PermanentError(f"Malformed JSON response: {e}") from e
            except asyncio.TimeoutError:
                last_error = TransientError(f"Request timed out after {self.timeout_seconds}s")
            except aiohttp.ClientError as e:
                last_error = TransientError(f"{type(e).__name__}: {e}")

            retries += 1
            if retries >= self.retry_limit:
                raise last_error
            delay = retry_after if retry_after is not None else self._calculate_backoff_delay(retries - 1)
            logger.debug(
                "%s for %s; retrying in %.1fs (%d/%d)",
                last_error, params, delay, retries, self.retry_limit,
            )
            if not await sleep_unless_cancelled(delay, self.cancel_event):
                raise last_error
            if budget is not None and not await budget.acquire(self.cancel_event):
                raise last_error
