"""Per-row claim enrichment, reading only from the resolution caches."""

from datetime import date
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import pandas as pd

from claims_common.models import CacheRecord, HcpcsPayload, HcpcsRecord, NpiPayload
from claims_resolver.cache import ResolutionCache
from claims_resolver.normalize import normalize_code_key, normalize_npi
from claims_resolver.temporal import parse_claim_date, select_hcpcs_record

BILLING_NPI_COL = "BILLING_PROVIDER_NPI_NUM"
SERVICING_NPI_COL = "SERVICING_PROVIDER_NPI_NUM"
HCPCS_CODE_COL = "HCPCS_CODE"
CLAIM_MONTH_COL = "CLAIM_FROM_MONTH"

ENRICHMENT_COLUMNS = [
    "BILLING_PROVIDER",
    "SERVICING_PROVIDER",
    "HCPCS_SHORT_DESC",
    "HCPCS_LONG_DESC",
    "HCPCS_ADD_DATE",
    "HCPCS_ACT_EFF_DATE",
    "HCPCS_TERM_DATE",
    "HCPCS_OBSOLETE",
    "HCPCS_IS_NOC",
]


def _column_values(frame: pd.DataFrame, column: str) -> Iterable[Any]:
    return frame[column].tolist() if column in frame.columns else []


def extract_identifiers(frame: pd.DataFrame) -> Tuple[Set[str], Set[str]]:
    """Deduplicated (NPIs, HCPCS codes) referenced by the claim rows."""
    npis = {
        normalize_npi(value)
        for column in (BILLING_NPI_COL, SERVICING_NPI_COL)
        for value in _column_values(frame, column)
    }
    codes = {normalize_code_key(value) for value in _column_values(frame, HCPCS_CODE_COL)}
    npis.discard("")
    codes.discard("")
    return npis, codes


class ClaimEnricher:
    """Fills enrichment columns from a snapshot of cached records.

    Unresolved identifiers leave their fields null; rows are never dropped.
    """

    def __init__(self, npi_records: Dict[str, CacheRecord], hcpcs_records: Dict[str, CacheRecord]):
        self.npi_records = npi_records
        self.hcpcs_records = hcpcs_records
        self._selected: Dict[Tuple[str, Optional[date]], Optional[HcpcsRecord]] = {}

    @classmethod
    def from_caches(
        cls,
        npi_cache: ResolutionCache,
        hcpcs_cache: ResolutionCache,
        npis: Iterable[str],
        codes: Iterable[str],
    ) -> "ClaimEnricher":
        return cls(npi_cache.get_many(npis), hcpcs_cache.get_many(codes))

    def provider_name(self, npi: Any) -> Optional[str]:
        record = self.npi_records.get(normalize_npi(npi))
        if record is None or not record.is_resolved or not isinstance(record.payload, NpiPayload):
            return None
        return record.payload.profile.provider_name or None

    def hcpcs_record(self, code: Any, claim_month: Any) -> Optional[HcpcsRecord]:
        key = (normalize_code_key(code), parse_claim_date(claim_month))
        if key not in self._selected:
            record = self.hcpcs_records.get(key[0])
            candidates = []
            if record is not None and record.is_resolved and isinstance(record.payload, HcpcsPayload):
                candidates = record.payload.records
            self._selected[key] = select_hcpcs_record(candidates, key[1])
        return self._selected[key]

    def enrich_row(
        self,
        billing_npi: Any,
        servicing_npi: Any,
        hcpcs_code: Any,
        claim_month: Any,
    ) -> Dict[str, Any]:
        selected = self.hcpcs_record(hcpcs_code, claim_month)
        return {
            "BILLING_PROVIDER": self.provider_name(billing_npi),
            "SERVICING_PROVIDER": self.provider_name(servicing_npi),
            "HCPCS_SHORT_DESC": selected.short_desc if selected else None,
            "HCPCS_LONG_DESC": selected.long_desc if selected else None,
            "HCPCS_ADD_DATE": selected.add_date if selected else None,
            "HCPCS_ACT_EFF_DATE": selected.effective_date if selected else None,
            "HCPCS_TERM_DATE": selected.term_date if selected else None,
            "HCPCS_OBSOLETE": selected.obsolete if selected else None,
            "HCPCS_IS_NOC": selected.is_noc if selected else None,
        }

    def enrich_frame(self, frame: pd.DataFrame) -> pd.DataFrame:
        """A copy of ``frame`` with the enrichment columns appended."""
        n = len(frame)
        columns = [
            frame[col].tolist() if col in frame.columns else [None] * n
            for col in (BILLING_NPI_COL, SERVICING_NPI_COL, HCPCS_CODE_COL, CLAIM_MONTH_COL)
        ]
        enriched = [self.enrich_row(*values) for values in zip(*columns)]
        result = frame.copy()
        extra = pd.DataFrame(enriched, columns=ENRICHMENT_COLUMNS, index=frame.index)
        for column in ENRICHMENT_COLUMNS:
            result[column] = extra[column]
        return result
