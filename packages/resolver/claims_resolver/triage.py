"""Classify unresolved identifiers by what they most likely are.

Claims data carries plenty of values in the procedure and provider columns
that were never valid registry identifiers: code+modifier concatenations,
revenue codes, placeholders. Triage labels each unresolved identifier so the
report can be reviewed by category.
"""

import logging
import re
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional

import pandas as pd

from claims_common.file_utils import async_write_csv_atomic
from claims_common.models import IdentifierFamily, UnresolvedEntry

logger = logging.getLogger(__name__)

PLACEHOLDERS = {"", "-", "0", "00", "000", "0000", "00000", "000000", "0000000", "NONE", "NULL", "N/A", "NA"}

# Checked in order; the first match wins. Patterns with two groups split
# into (base code, suffix/modifier).
HCPCS_RULES = [
    ("word_or_flag", re.compile(r"^[A-Z]{3,}$")),
    ("modifier_2char", re.compile(r"^([A-Z0-9]{2})$")),
    ("CDT_plus_suffix", re.compile(r"^(D\d{4})([A-Z0-9]{1,2})$")),
    ("CDT", re.compile(r"^D\d{4}$")),
    ("CPT_5digit_plus_modifier", re.compile(r"^(\d{5})([A-Z0-9]{2})$")),
    ("HCPCS_L2_plus_modifier", re.compile(r"^([A-Z]\d{4})([A-Z0-9]{2})$")),
    ("CPT_catII_plus_modifier", re.compile(r"^(\d{4}F)([A-Z0-9]{2})$")),
    ("CPT_category_II", re.compile(r"^\d{4}F$")),
    ("CPT_category_III", re.compile(r"^\d{4}T$")),
    ("CPT_PLA", re.compile(r"^\d{4}U$")),
    ("HCPCS_level_II", re.compile(r"^[A-Z]\d{4}$")),
    ("CPT_or_HCPCS_L1_5digit", re.compile(r"^\d{5}$")),
    ("revenue_code_4digit", re.compile(r"^\d{4}$")),
    ("drg_like_3digit", re.compile(r"^\d{3}$")),
    # ICD-10-PCS never uses I or O
    ("icd10pcs_like_7char", re.compile(r"^[0-9A-HJ-NP-Z]{7}$")),
    ("4digit_plus_letter_other", re.compile(r"^\d{4}[A-Z]$")),
    ("numeric_6to8_unknown", re.compile(r"^\d{6,8}$")),
    ("alphanum_5char_unknown", re.compile(r"^[A-Z0-9]{5}$")),
]

HCPCS_REVIEW_TYPES = {
    "unknown",
    "word_or_flag",
    "placeholder_or_invalid",
    "numeric_6to8_unknown",
    "alphanum_5char_unknown",
}
NPI_REVIEW_TYPES = {"placeholder_or_invalid", "non_numeric", "numeric_wrong_len", "npi_luhn_invalid"}

TRIAGE_COLUMNS = [
    "identifier_type",
    "identifier",
    "status",
    "error_message",
    "last_fetch_time",
    "inferred_code_type",
    "base_code",
    "suffix_or_modifier",
    "identifier_norm",
    "needs_review",
]


class Classification(NamedTuple):
    inferred_type: str
    base_code: Optional[str] = None
    suffix: Optional[str] = None


def classify_hcpcs_identifier(raw: str) -> Classification:
    value = (raw or "").strip().upper()
    if value in PLACEHOLDERS:
        return Classification("placeholder_or_invalid")
    for name, pattern in HCPCS_RULES:
        match = pattern.match(value)
        if match is None:
            continue
        if name == "word_or_flag":
            return Classification(name)
        if name == "modifier_2char":
            return Classification(name, value, value)
        if pattern.groups == 2:
            return Classification(name, match.group(1), match.group(2))
        return Classification(name, value)
    return Classification("unknown", value)


def npi_luhn_valid(npi: str) -> bool:
    """Luhn check over the NPI with the fixed 80840 health-industry prefix."""
    if len(npi) != 10 or not npi.isdigit():
        return False
    total = 0
    for position, char in enumerate(reversed("80840" + npi)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def classify_npi_identifier(raw: str) -> Classification:
    value = (raw or "").strip().upper()
    if value in PLACEHOLDERS or set(value) == {"0"}:
        return Classification("placeholder_or_invalid")
    if not value.isdigit():
        return Classification("non_numeric")
    if len(value) != 10:
        return Classification("numeric_wrong_len", value)
    if npi_luhn_valid(value):
        return Classification("npi_luhn_valid", value)
    return Classification("npi_luhn_invalid", value)


def triage_frame(entries: Iterable[UnresolvedEntry]) -> pd.DataFrame:
    rows: List[dict] = []
    for entry in entries:
        if entry.identifier_type == IdentifierFamily.NPI:
            result = classify_npi_identifier(entry.identifier)
            review = result.inferred_type in NPI_REVIEW_TYPES
        else:
            result = classify_hcpcs_identifier(entry.identifier)
            review = result.inferred_type in HCPCS_REVIEW_TYPES
        rows.append(
            {
                "identifier_type": entry.identifier_type.value,
                "identifier": entry.identifier,
                "status": entry.status.value,
                "error_message": entry.error_message or "",
                "last_fetch_time": entry.last_fetch_time.isoformat() if entry.last_fetch_time else "",
                "inferred_code_type": result.inferred_type,
                "base_code": result.base_code or "",
                "suffix_or_modifier": result.suffix or "",
                "identifier_norm": entry.identifier.strip().upper(),
                "needs_review": review,
            }
        )
    return pd.DataFrame(rows, columns=TRIAGE_COLUMNS)


def type_counts(frame: pd.DataFrame) -> pd.DataFrame:
    """Unique normalized identifiers per inferred type, most common first."""
    if frame.empty:
        return pd.DataFrame(columns=["inferred_code_type", "count"])
    counts = (
        frame.drop_duplicates("identifier_norm")
        .groupby("inferred_code_type")
        .size()
        .reset_index(name="count")
    )
    return counts.sort_values(["count", "inferred_code_type"], ascending=[False, True]).reset_index(drop=True)


async def write_triage(out_dir: Path, entries: Iterable[UnresolvedEntry]) -> List[Path]:
    """Write per-family triage tables and type counts into ``out_dir``."""
    frame = triage_frame(entries)
    written = []
    for family in IdentifierFamily:
        subset = frame[frame["identifier_type"] == family.value].reset_index(drop=True)
        written.append(
            await async_write_csv_atomic(out_dir / f"{family.value}_identifiers_with_inferred_types.csv", subset)
        )
        written.append(
            await async_write_csv_atomic(out_dir / f"{family.value}_inferred_type_counts.csv", type_counts(subset))
        )
    logger.info("Wrote triage for %d unresolved identifiers to %s", len(frame), out_dir)
    return written
