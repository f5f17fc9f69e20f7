import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp

from claims_common.config import HCPCS_API_URL, HCPCS_BATCH_HARD_CAP, ResolverSettings
from claims_common.models import CacheRecord, CacheSource, HcpcsPayload, HcpcsRecord
from claims_resolver.errors import NotFoundError, PermanentError, ResolverError
from claims_resolver.normalize import clean_text, normalize_code_key, parse_flag, parse_registry_date
from claims_resolver.rate_limit import RateBudget
from claims_resolver.registry_client import RegistryClient

logger = logging.getLogger(__name__)

EXTRA_FIELDS = ("short_desc", "long_desc", "add_dt", "term_dt", "act_eff_dt", "obsolete", "is_noc")
SINGLE_CODE_RESULT_COUNT = 20


def _value_at(values: Any, index: int) -> Any:
    if isinstance(values, list) and index < len(values):
        return values[index]
    return None


class HCPCSClient(RegistryClient):
    """Client for the NLM Clinical Tables HCPCS search API.

    The API answers with parallel arrays:
    ``[total, [codes...], {field: [values...]}, [[code, display]...]]``.
    A code can appear more than once (revisions); every row is kept so the
    temporal resolver can choose later.
    """

    def __init__(
        self,
        api_url: str = HCPCS_API_URL,
        retry_limit: int = RegistryClient.RETRY_LIMIT,
        timeout_seconds: float = RegistryClient.REQUEST_TIMEOUT,
        cancel_event: Optional[asyncio.Event] = None,
        user_agent: Optional[str] = None,
    ):
        super().__init__(
            api_url,
            retry_limit=retry_limit,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            user_agent=user_agent,
        )

    @classmethod
    def from_settings(cls, settings: ResolverSettings, cancel_event: Optional[asyncio.Event] = None) -> "HCPCSClient":
        return cls(
            api_url=settings.hcpcs_api_url,
            retry_limit=settings.max_retries,
            timeout_seconds=settings.request_timeout_seconds,
            cancel_event=cancel_event,
            user_agent=settings.user_agent,
        )

    def batch_params(self, codes: Sequence[str]) -> Dict[str, Any]:
        return {
            "terms": "",
            "sf": "code",
            "q": f"code:({' OR '.join(codes)})",
            "count": HCPCS_BATCH_HARD_CAP,
            "df": "code,display",
            "ef": ",".join(EXTRA_FIELDS),
        }

    def single_params(self, code: str) -> Dict[str, Any]:
        return {
            "terms": code,
            "sf": "code",
            "q": f"code:{code}",
            "count": SINGLE_CODE_RESULT_COUNT,
            "df": "code,display",
            "ef": ",".join(EXTRA_FIELDS),
        }

    async def lookup_batch(
        self,
        codes: Sequence[str],
        session: aiohttp.ClientSession,
        budget: Optional[RateBudget] = None,
    ) -> Tuple[Dict[str, CacheRecord], str]:
        """
        Resolve a batch of codes with one OR query.

        Returns:
            (resolved records keyed by code, request provenance). Codes missing
            from the mapping were not found.

        Raises:
            TransientError / PermanentError when the batch request itself fails
        """
        params = self.batch_params(codes)
        provenance = self.provenance(params)
        try:
            data = await self._get_json(session, params, budget=budget)
        except NotFoundError:
            return {}, provenance
        except ResolverError as e:
            e.provenance = provenance
            raise

        parsed = self._parse_search_response(data, codes, provenance)
        logger.debug("HCPCS batch: %d of %d codes matched", len(parsed), len(codes))
        return self._to_records(parsed, provenance), provenance

    async def lookup(
        self, code: str, session: aiohttp.ClientSession, budget: Optional[RateBudget] = None
    ) -> CacheRecord:
        """Resolve a single code. Raises NotFoundError when the API has no row for it."""
        params = self.single_params(code)
        provenance = self.provenance(params)
        try:
            data = await self._get_json(session, params, budget=budget)
        except ResolverError as e:
            e.provenance = provenance
            raise

        parsed = self._parse_search_response(data, [code], provenance)
        records = self._to_records(parsed, provenance)
        if code not in records:
            raise NotFoundError(f"HCPCS {code} not in registry", provenance=provenance)
        return records[code]

    def _to_records(
        self, parsed: Dict[str, Tuple[List[HcpcsRecord], List[Dict[str, Any]]]], provenance: str
    ) -> Dict[str, CacheRecord]:
        return {
            code: CacheRecord.resolved(
                code,
                HcpcsPayload(records=records, extra={"rows": raw_rows}),
                CacheSource.API,
                request_provenance=provenance,
            )
            for code, (records, raw_rows) in parsed.items()
        }

    def _parse_search_response(
        self, data: Any, requested: Iterable[str], provenance: Optional[str] = None
    ) -> Dict[str, Tuple[List[HcpcsRecord], List[Dict[str, Any]]]]:
        """Group response rows by requested code, dropping rows for other codes."""
        if not isinstance(data, list) or len(data) < 2 or not isinstance(data[1] or [], list):
            raise PermanentError("Malformed HCPCS search response", provenance=provenance)

        wanted = {normalize_code_key(c) for c in requested}
        codes = data[1] or []
        extras = data[2] if len(data) > 2 and isinstance(data[2], dict) else {}
        display = data[3] if len(data) > 3 and isinstance(data[3], list) else []

        grouped: Dict[str, Tuple[List[HcpcsRecord], List[Dict[str, Any]]]] = {}
        for i, raw_code in enumerate(codes):
            code = normalize_code_key(raw_code)
            if code not in wanted:
                continue

            raw_row = {name: _value_at(values, i) for name, values in extras.items()}
            display_row = _value_at(display, i)
            display_text = ""
            if isinstance(display_row, list) and len(display_row) > 1:
                display_text = clean_text(display_row[1])

            short_desc = clean_text(raw_row.get("short_desc")) or display_text
            long_desc = clean_text(raw_row.get("long_desc")) or short_desc
            record = HcpcsRecord(
                code=code,
                short_desc=short_desc or long_desc,
                long_desc=long_desc,
                add_date=parse_registry_date(raw_row.get("add_dt")),
                effective_date=parse_registry_date(raw_row.get("act_eff_dt")),
                term_date=parse_registry_date(raw_row.get("term_dt")),
                is_noc=bool(parse_flag(raw_row.get("is_noc"))),
                obsolete=bool(parse_flag(raw_row.get("obsolete"))),
            )
            records, raw_rows = grouped.setdefault(code, ([], []))
            if record not in records:
                records.append(record)
                raw_rows.append(raw_row)
        return grouped
