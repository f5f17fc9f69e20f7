"""Tests for the coverage gate and unresolved report"""

import pandas as pd
import pytest

from claims_common.models import (
    CacheRecord,
    CacheSource,
    HcpcsPayload,
    HcpcsRecord,
    IdentifierFamily,
    NpiPayload,
    NpiProfile,
    ResolutionStatus,
)
from claims_resolver.cache import ResolutionCache
from claims_resolver.coverage import (
    REPORT_COLUMNS,
    needs_rebuild,
    unresolved_frame,
    unresolved_report,
    write_unresolved_report,
)


@pytest.fixture
def npi_cache(tmp_path):
    cache = ResolutionCache(tmp_path / "npi.sqlite", IdentifierFamily.NPI)
    yield cache
    cache.close()


@pytest.fixture
def hcpcs_cache(tmp_path):
    cache = ResolutionCache(tmp_path / "hcpcs.sqlite", IdentifierFamily.HCPCS)
    yield cache
    cache.close()


def _resolved_npi(npi):
    return CacheRecord.resolved(
        npi, NpiPayload(profile=NpiProfile(npi=npi, provider_name="Clinic")), CacheSource.API
    )


class TestNeedsRebuild:
    """Test suite for the skip gate"""

    def test_empty_input_never_rebuilds(self, npi_cache):
        assert needs_rebuild(npi_cache, []) is False

    def test_missing_identifier_forces_rebuild(self, npi_cache):
        npi_cache.put("1111111111", _resolved_npi("1111111111"))

        assert needs_rebuild(npi_cache, ["1111111111", "2222222222"]) is True

    def test_attempted_entries_skip(self, npi_cache):
        npi_cache.put("1111111111", _resolved_npi("1111111111"))
        npi_cache.put("2222222222", CacheRecord.not_found("2222222222"))
        npi_cache.put("3333333333", CacheRecord.error("3333333333", "HTTP 500"))

        assert needs_rebuild(npi_cache, ["1111111111", "2222222222", "3333333333"]) is False

    def test_recoverable_code_not_resolved_forces_rebuild(self, hcpcs_cache):
        hcpcs_cache.put("J3490", CacheRecord.not_found("J3490"))

        assert needs_rebuild(hcpcs_cache, ["J3490"]) is False
        assert needs_rebuild(hcpcs_cache, ["J3490"], recoverable={"J3490"}) is True
        assert needs_rebuild(hcpcs_cache, ["J3490"], recoverable={"A0425"}) is False


class TestUnresolvedReport:
    """Test suite for unresolved_report and its CSV"""

    def test_lists_everything_but_resolved(self, npi_cache):
        npi_cache.put("1111111111", _resolved_npi("1111111111"))
        npi_cache.put("2222222222", CacheRecord.not_found("2222222222"))
        npi_cache.put("3333333333", CacheRecord.error("3333333333", "HTTP 503"))

        entries = unresolved_report(npi_cache, ["3333333333", "1111111111", "2222222222", "4444444444"])

        assert [(e.identifier, e.status) for e in entries] == [
            ("2222222222", ResolutionStatus.NOT_FOUND),
            ("3333333333", ResolutionStatus.ERROR),
            ("4444444444", ResolutionStatus.MISSING_CACHE),
        ]
        assert entries[1].error_message == "HTTP 503"
        assert entries[1].last_fetch_time is not None
        assert entries[2].last_fetch_time is None

    def test_resolved_hcpcs_without_records_is_not_found(self, hcpcs_cache):
        hcpcs_cache.put("A0425", CacheRecord.resolved("A0425", HcpcsPayload(records=[]), CacheSource.API))
        hcpcs_cache.put(
            "99213",
            CacheRecord.resolved("99213", HcpcsPayload(records=[HcpcsRecord(code="99213")]), CacheSource.API),
        )

        entries = unresolved_report(hcpcs_cache, ["A0425", "99213"])

        assert len(entries) == 1
        assert entries[0].identifier == "A0425"
        assert entries[0].status == ResolutionStatus.NOT_FOUND

    def test_frame_orders_npi_before_hcpcs(self, npi_cache, hcpcs_cache):
        hcpcs_cache.put("A0425", CacheRecord.not_found("A0425"))
        npi_cache.put("2222222222", CacheRecord.not_found("2222222222"))
        entries = unresolved_report(hcpcs_cache, ["A0425"]) + unresolved_report(npi_cache, ["2222222222", "1111111111"])

        frame = unresolved_frame(entries)

        assert list(frame.columns) == REPORT_COLUMNS
        assert list(zip(frame["identifier_type"], frame["identifier"])) == [
            ("npi", "1111111111"),
            ("npi", "2222222222"),
            ("hcpcs", "A0425"),
        ]

    def test_empty_frame_keeps_header(self):
        frame = unresolved_frame([])

        assert frame.empty
        assert list(frame.columns) == REPORT_COLUMNS

    @pytest.mark.asyncio
    async def test_write_report_is_atomic(self, tmp_path, npi_cache):
        npi_cache.put("3333333333", CacheRecord.error("3333333333", "HTTP 503"))
        path = tmp_path / "reports" / "unresolved.csv"

        written = await write_unresolved_report(path, unresolved_report(npi_cache, ["3333333333"]))

        assert written == path
        assert not (path.parent / f".{path.name}.tmp").exists()
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        assert frame.to_dict("records")[0]["status"] == "error"
        assert frame.to_dict("records")[0]["identifier"] == "3333333333"
