"""Pick the HCPCS record that applies to a claim date.

Candidates that are valid on the claim date win over those that are not;
within each group non-NOC records win over NOC ones, so a claim still gets a
description when only a NOC or an out-of-window record exists. Remaining
ties go to the latest ``coalesce(effective_date, add_date)``, then the latest
``add_date``, then the longer ``long_desc``, then lexical descriptions.
"""

from datetime import date, datetime
from typing import Any, Iterable, Optional

from claims_common.models import HcpcsRecord

EPOCH = date(1900, 1, 1)


def parse_claim_date(value: Any) -> Optional[date]:
    """Claim month as a date: accepts dates, ``YYYY-MM`` and ISO-style date strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text.lower() in {"nan", "nat", "none"}:
        return None
    for fmt in ("%Y-%m-%d", "%Y-%m", "%Y%m%d", "%Y%m", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def start_date(record: HcpcsRecord) -> Optional[date]:
    return record.effective_date or record.add_date


def is_temporally_valid(record: HcpcsRecord, claim_date: Optional[date]) -> bool:
    if claim_date is None:
        return False
    if claim_date < (start_date(record) or EPOCH):
        return False
    return record.term_date is None or claim_date <= record.term_date


def _rank(record: HcpcsRecord, claim_date: Optional[date]):
    start = start_date(record) or EPOCH
    added = record.add_date or EPOCH
    return (
        0 if is_temporally_valid(record, claim_date) else 1,
        1 if record.is_noc else 0,
        -start.toordinal(),
        -added.toordinal(),
        -len(record.long_desc or ""),
        record.short_desc or "",
        record.long_desc or "",
    )


def select_hcpcs_record(
    records: Iterable[HcpcsRecord], claim_date: Optional[date]
) -> Optional[HcpcsRecord]:
    """The applicable record for ``claim_date``, or None when there are no records."""
    candidates = list(records)
    if not candidates:
        return None
    return min(candidates, key=lambda r: _rank(r, claim_date))
