"""Materialize cache contents as reference mapping CSVs."""

import logging
from pathlib import Path
from typing import Iterable, List

import pandas as pd

from claims_common.file_utils import async_write_csv_atomic
from claims_common.models import CacheRecord, HcpcsPayload, IdentifierFamily, NpiPayload

logger = logging.getLogger(__name__)

BASE_COLUMNS = ["identifier", "status", "source", "error_message", "fetched_at", "request_provenance"]
NPI_COLUMNS = BASE_COLUMNS + [
    "provider_name", "entity_type", "taxonomy_code", "taxonomy_desc", "city", "state", "postal_code",
]
HCPCS_COLUMNS = BASE_COLUMNS + [
    "short_desc", "long_desc", "add_date", "effective_date", "term_date", "is_noc", "obsolete",
]


def _base_row(record: CacheRecord) -> dict:
    return {
        "identifier": record.identifier,
        "status": record.status.value,
        "source": record.source.value if record.source else "",
        "error_message": record.error_message or "",
        "fetched_at": record.fetched_at.isoformat() if record.fetched_at else "",
        "request_provenance": record.request_provenance or "",
    }


def _iso(value) -> str:
    return value.isoformat() if value else ""


def mapping_frame(family: IdentifierFamily, records: Iterable[CacheRecord]) -> pd.DataFrame:
    """One row per NPI, or one row per HCPCS record (one per code if it has none)."""
    rows: List[dict] = []
    for record in records:
        row = _base_row(record)
        payload = record.payload
        if isinstance(payload, NpiPayload):
            profile = payload.profile
            row.update(
                provider_name=profile.provider_name,
                entity_type=profile.entity_type or "",
                taxonomy_code=profile.taxonomy_code or "",
                taxonomy_desc=profile.taxonomy_desc or "",
                city=profile.city or "",
                state=profile.state or "",
                postal_code=profile.postal_code or "",
            )
            rows.append(row)
        elif isinstance(payload, HcpcsPayload) and payload.records:
            for hcpcs in payload.records:
                rows.append(
                    dict(
                        row,
                        short_desc=hcpcs.short_desc,
                        long_desc=hcpcs.long_desc,
                        add_date=_iso(hcpcs.add_date),
                        effective_date=_iso(hcpcs.effective_date),
                        term_date=_iso(hcpcs.term_date),
                        is_noc=hcpcs.is_noc,
                        obsolete=hcpcs.obsolete,
                    )
                )
        else:
            rows.append(row)

    columns = NPI_COLUMNS if family == IdentifierFamily.NPI else HCPCS_COLUMNS
    frame = pd.DataFrame(rows, columns=columns)
    return frame.sort_values("identifier", kind="mergesort").reset_index(drop=True)


async def write_mapping_export(path: Path, family: IdentifierFamily, records: Iterable[CacheRecord]) -> Path:
    frame = mapping_frame(family, records)
    written = await async_write_csv_atomic(path, frame)
    logger.info("Exported %d %s mapping rows to %s", len(frame), family.value, written)
    return written
