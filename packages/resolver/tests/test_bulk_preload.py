"""Tests for NPPES bulk preload and the HCPCS fallback table"""

import asyncio
import os
from datetime import date

import pandas as pd
import pytest

from claims_common.models import (
    FALLBACK_PROVENANCE,
    CacheRecord,
    CacheSource,
    IdentifierFamily,
    NpiPayload,
    NpiProfile,
    ResolutionStatus,
)
from claims_resolver.bulk_preload import (
    HcpcsFallbackTable,
    is_nppes_csv,
    load_hcpcs_fallback,
    preload_hcpcs,
    preload_npi,
    select_latest_nppes_csv,
)
from claims_resolver.cache import ResolutionCache
from claims_resolver.errors import ConfigurationError

NPPES_COLUMNS = [
    "NPI",
    "Entity Type Code",
    "Provider Organization Name (Legal Business Name)",
    "Provider Last Name (Legal Name)",
    "Provider First Name",
    "Provider Business Practice Location Address City Name",
    "Provider Business Practice Location Address State Name",
    "Healthcare Provider Taxonomy Code_1",
]


def _write_nppes(path, rows, mtime=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=NPPES_COLUMNS).to_csv(path, index=False)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


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


class TestNppesFileSelection:
    """Test suite for picking the NPPES extract"""

    def test_is_nppes_csv_requires_identity_and_name_columns(self, tmp_path):
        good = _write_nppes(tmp_path / "good.csv", [["1234567893", "2", "Clinic", "", "", "", "", ""]])
        other = tmp_path / "other.csv"
        pd.DataFrame({"NPI": ["1"], "Name": ["x"]}).to_csv(other, index=False)
        header_only = _write_nppes(tmp_path / "empty.csv", [])

        assert is_nppes_csv(good)
        assert not is_nppes_csv(other)
        assert not is_nppes_csv(header_only)

    def test_individual_name_columns_are_enough(self, tmp_path):
        path = tmp_path / "individuals.csv"
        pd.DataFrame({
            "NPI": ["1234567893"],
            "Entity Type Code": ["1"],
            "Provider First Name": ["JANE"],
            "Provider Last Name (Legal Name)": ["DOE"],
        }).to_csv(path, index=False)

        assert is_nppes_csv(path)

    def test_select_latest_searches_recursively(self, tmp_path):
        row = [["1234567893", "2", "Clinic", "", "", "", "", ""]]
        _write_nppes(tmp_path / "a" / "npidata_old.csv", row, mtime=1_000_000)
        newest = _write_nppes(tmp_path / "b" / "c" / "npidata_new.csv", row, mtime=2_000_000)
        (tmp_path / "b" / "notes.csv").write_text("x,y\n1,2\n")

        assert select_latest_nppes_csv(tmp_path) == newest

    def test_select_latest_missing_dir(self, tmp_path):
        assert select_latest_nppes_csv(tmp_path / "nope") is None
        assert select_latest_nppes_csv(None) is None


class TestPreloadNpi:
    """Test suite for preload_npi"""

    @pytest.mark.asyncio
    async def test_loads_only_target_npis(self, tmp_path, npi_cache):
        _write_nppes(tmp_path / "monthly" / "npidata.csv", [
            ["1234567893", "2", "Acme Rehab", "", "", "Austin", "TX", "324500000X"],
            ["1111111111", "1", "", "DOE", "JANE", "Reno", "NV", "207Q00000X"],
            ["9999999999", "2", "Not Wanted", "", "", "", "", ""],
        ])

        loaded = await preload_npi(
            npi_cache, tmp_path / "monthly", tmp_path / "weekly", {"1234567893", "1111111111"}
        )

        assert loaded == 2
        acme = npi_cache.get("1234567893")
        assert acme.source == CacheSource.BULK
        assert acme.payload.profile.provider_name == "Acme Rehab"
        assert acme.payload.profile.city == "Austin"
        assert npi_cache.get("1111111111").payload.profile.provider_name == "JANE DOE"
        assert npi_cache.get("9999999999") is None

    @pytest.mark.asyncio
    async def test_rows_without_name_are_skipped(self, tmp_path, npi_cache):
        _write_nppes(tmp_path / "monthly" / "npidata.csv", [
            ["1234567893", "", "", "", "", "", "", ""],
        ])

        loaded = await preload_npi(npi_cache, tmp_path / "monthly", None, {"1234567893"})

        assert loaded == 0
        assert npi_cache.get("1234567893") is None

    @pytest.mark.asyncio
    async def test_newer_extract_wins(self, tmp_path, npi_cache):
        _write_nppes(tmp_path / "monthly" / "m.csv", [["1234567893", "2", "Old Name", "", "", "", "", ""]], mtime=1_000_000)
        _write_nppes(tmp_path / "weekly" / "w.csv", [["1234567893", "2", "New Name", "", "", "", "", ""]], mtime=2_000_000)

        await preload_npi(npi_cache, tmp_path / "monthly", tmp_path / "weekly", {"1234567893"})

        assert npi_cache.get("1234567893").payload.profile.provider_name == "New Name"

    @pytest.mark.asyncio
    async def test_api_resolution_is_not_overwritten(self, tmp_path, npi_cache):
        npi_cache.put(
            "1234567893",
            CacheRecord.resolved(
                "1234567893",
                NpiPayload(profile=NpiProfile(npi="1234567893", provider_name="From API")),
                CacheSource.API,
            ),
        )
        _write_nppes(tmp_path / "monthly" / "m.csv", [["1234567893", "2", "From Bulk", "", "", "", "", ""]])

        loaded = await preload_npi(npi_cache, tmp_path / "monthly", None, {"1234567893"})

        assert loaded == 0
        assert npi_cache.get("1234567893").payload.profile.provider_name == "From API"

    @pytest.mark.asyncio
    async def test_missing_files_are_not_fatal(self, tmp_path, npi_cache):
        loaded = await preload_npi(npi_cache, tmp_path / "none", tmp_path / "also-none", {"1234567893"})

        assert loaded == 0

    @pytest.mark.asyncio
    async def test_cancelled_preload_loads_nothing(self, tmp_path, npi_cache):
        _write_nppes(tmp_path / "monthly" / "m.csv", [["1234567893", "2", "Clinic", "", "", "", "", ""]])
        cancel_event = asyncio.Event()
        cancel_event.set()

        loaded = await preload_npi(npi_cache, tmp_path / "monthly", None, {"1234567893"}, cancel_event)

        assert loaded == 0


class TestHcpcsFallbackTable:
    """Test suite for the fallback CSV loader"""

    def test_header_aliases_and_normalization(self, tmp_path):
        path = tmp_path / "fallback.csv"
        pd.DataFrame({
            "HCPCS Code": [" a0425 ", "99213.0", "BAD", "G0008", "J3490"],
            "Short Description": ["Ground mileage", "", "x", "", "Unclassified drugs"],
            "Long-Desc": ["Ground mileage per mile", "Office visit est", "x", "", ""],
            "ACT_EFF_DT": ["20240101", "", "", "", ""],
            "NOC": ["", "", "", "", "Y"],
        }).to_csv(path, index=False)

        table = HcpcsFallbackTable.from_csv(path)

        assert table.codes() == {"A0425", "99213", "J3490"}
        assert table.records_for("A0425")[0].effective_date == date(2024, 1, 1)
        assert table.records_for("99213")[0].short_desc == "Office visit est"
        assert table.records_for("J3490")[0].long_desc == "Unclassified drugs"
        assert table.records_for("J3490")[0].is_noc is True

    def test_missing_file_is_empty(self, tmp_path):
        table = HcpcsFallbackTable.from_csv(tmp_path / "absent.csv")

        assert len(table) == 0
        assert table.record_for("A0425") is None

    def test_file_without_code_column_raises(self, tmp_path):
        path = tmp_path / "fallback.csv"
        pd.DataFrame({"description": ["x"]}).to_csv(path, index=False)

        with pytest.raises(ConfigurationError):
            HcpcsFallbackTable.from_csv(path)

    @pytest.mark.asyncio
    async def test_load_degrades_to_empty_table(self, tmp_path):
        path = tmp_path / "fallback.csv"
        pd.DataFrame({"description": ["x"]}).to_csv(path, index=False)

        table = await load_hcpcs_fallback(path)

        assert len(table) == 0

    def test_record_for_builds_fallback_record(self, tmp_path):
        path = tmp_path / "fallback.csv"
        pd.DataFrame({"code": ["A0425"], "short_desc": ["Mileage"]}).to_csv(path, index=False)

        record = HcpcsFallbackTable.from_csv(path).record_for("A0425")

        assert record.status == ResolutionStatus.RESOLVED
        assert record.source == CacheSource.FALLBACK
        assert record.request_provenance == FALLBACK_PROVENANCE


class TestPreloadHcpcs:
    """Test suite for preload_hcpcs"""

    @pytest.mark.asyncio
    async def test_seeds_targets_and_upgrades_not_found(self, tmp_path, hcpcs_cache):
        path = tmp_path / "fallback.csv"
        pd.DataFrame({
            "code": ["A0425", "99213", "J3490"],
            "short_desc": ["Mileage", "Office visit", "Unclassified drugs"],
        }).to_csv(path, index=False)
        table = HcpcsFallbackTable.from_csv(path)
        hcpcs_cache.put("99213", CacheRecord.not_found("99213"))

        loaded = await preload_hcpcs(hcpcs_cache, table, {"A0425", "99213", "Z0000"})

        assert loaded == 2
        assert hcpcs_cache.get("99213").status == ResolutionStatus.RESOLVED
        assert hcpcs_cache.get("99213").source == CacheSource.FALLBACK
        assert hcpcs_cache.get("J3490") is None

    @pytest.mark.asyncio
    async def test_resolved_codes_are_left_alone(self, tmp_path, hcpcs_cache):
        path = tmp_path / "fallback.csv"
        pd.DataFrame({"code": ["A0425"], "short_desc": ["Mileage"]}).to_csv(path, index=False)
        table = HcpcsFallbackTable.from_csv(path)

        assert await preload_hcpcs(hcpcs_cache, table, {"A0425"}) == 1
        assert await preload_hcpcs(hcpcs_cache, table, {"A0425"}) == 0
