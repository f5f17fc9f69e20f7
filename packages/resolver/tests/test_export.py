"""Tests for mapping CSV exports"""

from datetime import date

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
)
from claims_resolver.export import HCPCS_COLUMNS, NPI_COLUMNS, mapping_frame, write_mapping_export


class TestMappingFrame:
    """Test suite for mapping_frame"""

    def test_npi_rows(self):
        records = [
            CacheRecord.not_found("2222222222"),
            CacheRecord.resolved(
                "1234567893",
                NpiPayload(profile=NpiProfile(npi="1234567893", provider_name="Acme Rehab", state="TX")),
                CacheSource.BULK,
                request_provenance="bulk:nppes",
            ),
        ]

        frame = mapping_frame(IdentifierFamily.NPI, records)

        assert list(frame.columns) == NPI_COLUMNS
        assert frame["identifier"].tolist() == ["1234567893", "2222222222"]
        assert frame.loc[0, "provider_name"] == "Acme Rehab"
        assert frame.loc[0, "source"] == "bulk"
        assert frame.loc[1, "status"] == "not_found"

    def test_hcpcs_one_row_per_revision(self):
        payload = HcpcsPayload(records=[
            HcpcsRecord(code="A0425", short_desc="Mileage", effective_date=date(2020, 1, 1)),
            HcpcsRecord(code="A0425", short_desc="Mileage (old)", term_date=date(2019, 12, 31)),
        ])
        records = [
            CacheRecord.resolved("A0425", payload, CacheSource.API),
            CacheRecord.error("X9999", "HTTP 500"),
        ]

        frame = mapping_frame(IdentifierFamily.HCPCS, records)

        assert list(frame.columns) == HCPCS_COLUMNS
        assert frame["identifier"].tolist() == ["A0425", "A0425", "X9999"]
        assert frame.loc[0, "effective_date"] == "2020-01-01"
        assert frame.loc[1, "term_date"] == "2019-12-31"
        assert frame.loc[2, "error_message"] == "HTTP 500"

    @pytest.mark.asyncio
    async def test_write_mapping_export(self, tmp_path):
        path = tmp_path / "out" / "hcpcs.csv"

        await write_mapping_export(path, IdentifierFamily.HCPCS, [CacheRecord.not_found("A0425")])

        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        assert frame.to_dict("records")[0]["identifier"] == "A0425"
        assert frame.to_dict("records")[0]["source"] == "api"
