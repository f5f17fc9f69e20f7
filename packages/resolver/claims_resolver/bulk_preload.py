"""Seed the resolution caches from local reference files before any API traffic."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import pandas as pd

from claims_common.models import (
    BULK_PROVENANCE,
    FALLBACK_PROVENANCE,
    CacheRecord,
    CacheSource,
    HcpcsPayload,
    HcpcsRecord,
    NpiPayload,
    NpiProfile,
)
from claims_resolver.cache import ResolutionCache
from claims_resolver.errors import ConfigurationError
from claims_resolver.normalize import (
    clean_text,
    normalize_hcpcs_code,
    normalize_npi,
    parse_flag,
    parse_registry_date,
)
from claims_resolver.npi_api_client import derive_provider_name

logger = logging.getLogger(__name__)

CHUNK_SIZE = 50_000

ORG_NAME_COL = "Provider Organization Name (Legal Business Name)"
FIRST_NAME_COL = "Provider First Name"
LAST_NAME_COL = "Provider Last Name (Legal Name)"

CSV_TO_PROFILE = {
    "NPI": "npi",
    "Entity Type Code": "entity_type",
    ORG_NAME_COL: "organization_name",
    FIRST_NAME_COL: "first_name",
    LAST_NAME_COL: "last_name",
    "Provider Credential Text": "credential",
    "Healthcare Provider Taxonomy Code_1": "taxonomy_code",
    "Provider First Line Business Practice Location Address": "address",
    "Provider Business Practice Location Address City Name": "city",
    "Provider Business Practice Location Address State Name": "state",
    "Provider Business Practice Location Address Postal Code": "postal_code",
    "Provider Business Practice Location Address Telephone Number": "phone",
    "Last Update Date": "last_updated",
}

FALLBACK_ALIASES = {
    "code": ["hcpcs_code", "cpt_code", "procedure_code", "billing_code", "code", "hcpcs", "cpt"],
    "short_desc": ["short_desc", "short_description", "description_short", "desc_short", "display"],
    "long_desc": ["long_desc", "long_description", "description_long", "description", "desc_long"],
    "add_date": ["add_dt", "add_date", "effective_from"],
    "effective_date": ["act_eff_dt", "act_eff_date", "effective_date", "effective_dt"],
    "term_date": ["term_dt", "term_date", "end_date"],
    "obsolete": ["obsolete", "is_obsolete"],
    "is_noc": ["is_noc", "noc"],
}


# --------------------------------------
# NPPES bulk extract
# --------------------------------------

def is_nppes_csv(path: Path) -> bool:
    """True when the file has the NPPES identity/name columns and at least one data row."""
    try:
        head = pd.read_csv(path, nrows=1, dtype=str)
    except (OSError, ValueError, UnicodeDecodeError, pd.errors.ParserError):
        return False
    columns = set(head.columns)
    if not {"NPI", "Entity Type Code"} <= columns:
        return False
    has_name = ORG_NAME_COL in columns or {FIRST_NAME_COL, LAST_NAME_COL} <= columns
    return has_name and len(head) > 0


def select_latest_nppes_csv(path: Optional[Path]) -> Optional[Path]:
    """Newest NPPES-shaped CSV at ``path`` (a file, or a directory searched recursively)."""
    if path is None:
        return None
    path = Path(path)
    if path.is_file():
        return path if is_nppes_csv(path) else None
    if not path.is_dir():
        return None
    candidates = [p for p in path.rglob("*") if p.is_file() and p.suffix.lower() == ".csv" and is_nppes_csv(p)]
    if not candidates:
        return None
    return max(candidates, key=lambda p: (p.stat().st_mtime, str(p)))


def _profile_from_row(row: Dict[str, str]) -> Optional[NpiProfile]:
    values = {field: clean_text(row.get(col)) or None for col, field in CSV_TO_PROFILE.items()}
    npi = normalize_npi(values.pop("npi"))
    name = derive_provider_name(values["organization_name"], values["first_name"], values["last_name"])
    if not npi or not name:
        return None
    return NpiProfile(npi=npi, provider_name=name, **values)


def _load_nppes_file_sync(
    csv_path: Path,
    target_npis: Set[str],
    cache: ResolutionCache,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """Scan one NPPES CSV in chunks and seed the cache with rows for ``target_npis``."""
    try:
        header = pd.read_csv(csv_path, nrows=0).columns.tolist()
        usecols = [col for col in CSV_TO_PROFILE if col in header]
        reader = pd.read_csv(
            csv_path, dtype=str, chunksize=CHUNK_SIZE, usecols=usecols, keep_default_na=False
        )
        loaded = 0
        for chunk_count, chunk in enumerate(reader, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("NPPES preload interrupted after %d chunks of %s", chunk_count - 1, csv_path.name)
                break
            npis = chunk["NPI"].map(normalize_npi)
            matched = chunk[npis.isin(target_npis)]
            records = []
            for row in matched.to_dict("records"):
                profile = _profile_from_row(row)
                if profile is None:
                    continue
                records.append(
                    CacheRecord.resolved(
                        profile.npi,
                        NpiPayload(profile=profile, extra={"bulk_file": csv_path.name}),
                        CacheSource.BULK,
                        request_provenance=BULK_PROVENANCE,
                    )
                )
            loaded += cache.seed_many(records)
            if chunk_count % 20 == 0:
                logger.info("  Processed %d chunks of %s (%d loaded)", chunk_count, csv_path.name, loaded)
        return loaded
    except (OSError, ValueError, UnicodeDecodeError, KeyError, pd.errors.ParserError) as e:
        raise ConfigurationError(f"Cannot read NPPES extract {csv_path}: {e}") from e


async def preload_npi(
    cache: ResolutionCache,
    monthly_path: Optional[Path],
    weekly_path: Optional[Path],
    target_npis: Iterable[str],
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """
    Seed the NPI cache from the newest monthly and weekly NPPES extracts.

    The older of the two files is loaded first so rows from the newer one win.
    Missing or unreadable files are logged and skipped.

    Returns:
        Number of records written
    """
    targets = {normalize_npi(n) for n in target_npis} - {""}
    if not targets:
        return 0

    selected = []
    for label, path in (("monthly", monthly_path), ("weekly", weekly_path)):
        csv_path = await asyncio.to_thread(select_latest_nppes_csv, path)
        if csv_path is None:
            logger.info("No NPPES %s extract found under %s", label, path)
            continue
        if csv_path not in selected:
            selected.append(csv_path)
    selected.sort(key=lambda p: p.stat().st_mtime)

    loaded = 0
    for csv_path in selected:
        if cancel_event is not None and cancel_event.is_set():
            break
        logger.info("Preloading NPI cache from %s", csv_path)
        try:
            loaded += await asyncio.to_thread(_load_nppes_file_sync, csv_path, targets, cache, cancel_event)
        except ConfigurationError as e:
            logger.warning("%s; continuing with API lookups", e)
    return loaded


# --------------------------------------
# HCPCS fallback table
# --------------------------------------

def _header_key(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


def _resolve_fallback_columns(columns: List[str]) -> Dict[str, str]:
    by_key = {}
    for col in columns:
        by_key.setdefault(_header_key(col), col)
    resolved = {}
    for field, aliases in FALLBACK_ALIASES.items():
        for alias in aliases:
            col = by_key.get(_header_key(alias))
            if col is not None:
                resolved[field] = col
                break
    return resolved


class HcpcsFallbackTable:
    """Local code -> description records, consulted before persisting NotFound."""

    def __init__(self, records: Optional[Dict[str, List[HcpcsRecord]]] = None, source: Optional[Path] = None):
        self._records = records or {}
        self.source = source

    def __len__(self):
        return len(self._records)

    def __contains__(self, code: str) -> bool:
        return code in self._records

    def codes(self) -> Set[str]:
        return set(self._records)

    def records_for(self, code: str) -> List[HcpcsRecord]:
        return list(self._records.get(code, []))

    def record_for(self, code: str) -> Optional[CacheRecord]:
        """A ``Resolved`` fallback CacheRecord for ``code``, or None."""
        records = self._records.get(code)
        if not records:
            return None
        return CacheRecord.resolved(
            code,
            HcpcsPayload(records=list(records), extra={"fallback_file": self.source.name if self.source else None}),
            CacheSource.FALLBACK,
            request_provenance=FALLBACK_PROVENANCE,
        )

    @classmethod
    def from_csv(cls, path: Optional[Path]) -> "HcpcsFallbackTable":
        """
        Load the fallback CSV. Header names are matched loosely (see
        ``FALLBACK_ALIASES``). A missing file yields an empty table.

        Raises:
            ConfigurationError: the file exists but cannot be used
        """
        if path is None or not Path(path).exists():
            logger.info("No HCPCS fallback table at %s", path)
            return cls()
        path = Path(path)
        try:
            frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (OSError, ValueError, UnicodeDecodeError, pd.errors.ParserError) as e:
            raise ConfigurationError(f"Cannot read HCPCS fallback {path}: {e}") from e

        columns = _resolve_fallback_columns(frame.columns.tolist())
        if "code" not in columns:
            raise ConfigurationError(f"HCPCS fallback {path} has no code column")

        records: Dict[str, List[HcpcsRecord]] = {}
        for row in frame.to_dict("records"):
            code = normalize_hcpcs_code(row.get(columns["code"]))
            if code is None:
                continue

            def field(name: str) -> str:
                return clean_text(row.get(columns[name])) if name in columns else ""

            short_desc = field("short_desc")
            long_desc = field("long_desc")
            if not short_desc and not long_desc:
                continue
            record = HcpcsRecord(
                code=code,
                short_desc=short_desc or long_desc,
                long_desc=long_desc or short_desc,
                add_date=parse_registry_date(field("add_date")),
                effective_date=parse_registry_date(field("effective_date")),
                term_date=parse_registry_date(field("term_date")),
                is_noc=bool(parse_flag(field("is_noc"))),
                obsolete=bool(parse_flag(field("obsolete"))),
            )
            bucket = records.setdefault(code, [])
            if record not in bucket:
                bucket.append(record)

        logger.info("Loaded %d fallback HCPCS codes from %s", len(records), path)
        return cls(records, source=path)


async def load_hcpcs_fallback(path: Optional[Path]) -> HcpcsFallbackTable:
    """Load the fallback table off the event loop; unreadable files degrade to an empty table."""
    try:
        return await asyncio.to_thread(HcpcsFallbackTable.from_csv, path)
    except ConfigurationError as e:
        logger.warning("%s; HCPCS lookups will rely on the API only", e)
        return HcpcsFallbackTable()


async def preload_hcpcs(
    cache: ResolutionCache,
    fallback: HcpcsFallbackTable,
    target_codes: Optional[Iterable[str]] = None,
) -> int:
    """
    Seed the HCPCS cache from the fallback table.

    Only codes without a ``Resolved`` record are written, which also upgrades
    codes previously cached as ``NotFound`` or ``Error``.

    Returns:
        Number of records written
    """
    codes = fallback.codes() if target_codes is None else set(target_codes) & fallback.codes()
    if not codes:
        return 0
    existing = await asyncio.to_thread(cache.get_many, codes)
    pending = [
        fallback.record_for(code)
        for code in sorted(codes)
        if not (code in existing and existing[code].is_resolved)
    ]
    return await asyncio.to_thread(cache.seed_many, pending)
