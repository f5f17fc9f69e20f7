"""Coverage gate: skip logic and the unresolved-identifiers report."""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from claims_common.file_utils import async_write_csv_atomic
from claims_common.models import (
    HcpcsPayload,
    IdentifierFamily,
    ResolutionStatus,
    UnresolvedEntry,
)
from claims_resolver.cache import ResolutionCache

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["identifier_type", "identifier", "status", "error_message", "last_fetch_time"]
FAMILY_ORDER = {IdentifierFamily.NPI.value: 0, IdentifierFamily.HCPCS.value: 1}


def needs_rebuild(
    cache: ResolutionCache,
    identifiers: Iterable[str],
    recoverable: Optional[Iterable[str]] = None,
) -> bool:
    """True when any current identifier was never attempted.

    ``recoverable`` names identifiers a local source can resolve (the HCPCS
    fallback table); any of them present in the input but not ``Resolved``
    also forces a rebuild.
    """
    wanted = set(identifiers)
    if not wanted:
        return False
    if cache.missing(wanted):
        return True
    if recoverable is not None:
        local = wanted & set(recoverable)
        if local:
            cached = cache.get_many(local)
            if any(not cached[code].is_resolved for code in local if code in cached):
                return True
    return False


def unresolved_report(cache: ResolutionCache, identifiers: Iterable[str]) -> List[UnresolvedEntry]:
    """Every identifier whose final status is not ``Resolved``, ordered by identifier.

    A ``Resolved`` HCPCS entry without records cannot enrich anything and is
    reported as ``NotFound``.
    """
    wanted = sorted(set(identifiers))
    cached = cache.get_many(wanted)
    entries = []
    for identifier in wanted:
        record = cached.get(identifier)
        if record is None:
            entries.append(
                UnresolvedEntry(
                    identifier_type=cache.family,
                    identifier=identifier,
                    status=ResolutionStatus.MISSING_CACHE,
                )
            )
            continue
        status = record.status
        message = record.error_message
        if (
            status == ResolutionStatus.RESOLVED
            and isinstance(record.payload, HcpcsPayload)
            and not record.payload.records
        ):
            status = ResolutionStatus.NOT_FOUND
            message = message or "resolved without any code records"
        if status == ResolutionStatus.RESOLVED:
            continue
        entries.append(
            UnresolvedEntry(
                identifier_type=cache.family,
                identifier=identifier,
                status=status,
                error_message=message,
                last_fetch_time=record.fetched_at,
            )
        )
    return entries


def unresolved_frame(entries: Iterable[UnresolvedEntry]) -> pd.DataFrame:
    """Report rows sorted NPI first, then HCPCS, then by identifier."""
    rows = [
        {
            "identifier_type": e.identifier_type.value,
            "identifier": e.identifier,
            "status": e.status.value,
            "error_message": e.error_message or "",
            "last_fetch_time": e.last_fetch_time.isoformat() if e.last_fetch_time else "",
        }
        for e in entries
    ]
    frame = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    if frame.empty:
        return frame
    frame["_order"] = frame["identifier_type"].map(FAMILY_ORDER)
    frame = frame.sort_values(["_order", "identifier"], kind="mergesort").drop(columns="_order")
    return frame.reset_index(drop=True)


async def write_unresolved_report(path: Path, entries: Iterable[UnresolvedEntry]) -> Path:
    frame = unresolved_frame(entries)
    written = await async_write_csv_atomic(path, frame)
    logger.info("Wrote %d unresolved identifiers to %s", len(frame), written)
    return written
