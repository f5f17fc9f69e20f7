"""Tests for HCPCS API Client"""

from datetime import date

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from claims_common.models import CacheSource, ResolutionStatus
from claims_resolver.errors import NotFoundError, PermanentError, TransientError
from claims_resolver.hcpcs_api_client import HCPCSClient


def _response(status=200, payload=None):
    resp = MagicMock()
    resp.status = status
    resp.headers = {}
    resp.json = AsyncMock(return_value=payload)
    resp.text = AsyncMock(return_value="")
    return resp


def _session(*steps):
    session = MagicMock()
    session.get = MagicMock()
    session.get.return_value.__aenter__ = AsyncMock(side_effect=list(steps))
    session.get.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


def _search_payload(rows):
    """Build a Clinical Tables response from (code, short, long, add, eff, term, noc) tuples."""
    fields = ["short_desc", "long_desc", "add_dt", "act_eff_dt", "term_dt", "is_noc", "obsolete"]
    extras = {name: [] for name in fields}
    for code, short, long, add, eff, term, noc in rows:
        extras["short_desc"].append(short)
        extras["long_desc"].append(long)
        extras["add_dt"].append(add)
        extras["act_eff_dt"].append(eff)
        extras["term_dt"].append(term)
        extras["is_noc"].append(noc)
        extras["obsolete"].append("false")
    return [
        len(rows),
        [row[0] for row in rows],
        extras,
        [[row[0], row[1]] for row in rows],
    ]


class TestRequestParams:
    """Test suite for query construction"""

    def test_batch_params(self):
        client = HCPCSClient()

        params = client.batch_params(["A0425", "99213"])

        assert params["q"] == "code:(A0425 OR 99213)"
        assert params["terms"] == ""
        assert params["sf"] == "code"
        assert params["count"] == 500
        assert "is_noc" in params["ef"]

    def test_single_params(self):
        client = HCPCSClient()

        params = client.single_params("J3490")

        assert params["terms"] == "J3490"
        assert params["q"] == "code:J3490"
        assert params["count"] == 20


class TestParseSearchResponse:
    """Test suite for parallel-array parsing"""

    def test_groups_revisions_and_drops_unrequested_codes(self):
        client = HCPCSClient()
        payload = _search_payload([
            ("A0425", "Ground mileage", "Ground mileage, per statute mile", "19950101", "20240101", "", "false"),
            ("a0425", "Ground mileage", "Ground mileage (old)", "19950101", "20100101", "20231231", "false"),
            ("A0999", "Unlisted ambulance", "Unlisted ambulance service", "19950101", "", "", "true"),
            ("Z9999", "Other", "Other", "", "", "", "false"),
        ])

        parsed = client._parse_search_response(payload, ["A0425", "A0999"])

        assert set(parsed) == {"A0425", "A0999"}
        records, raw_rows = parsed["A0425"]
        assert len(records) == 2
        assert records[0].effective_date == date(2024, 1, 1)
        assert records[1].term_date == date(2023, 12, 31)
        assert raw_rows[0]["short_desc"] == "Ground mileage"
        noc_record = parsed["A0999"][0][0]
        assert noc_record.is_noc is True
        assert noc_record.effective_date is None

    def test_duplicate_rows_are_collapsed(self):
        client = HCPCSClient()
        row = ("99213", "Office visit", "Office outpatient visit", "20000101", "", "", "false")
        payload = _search_payload([row, row])

        parsed = client._parse_search_response(payload, ["99213"])

        assert len(parsed["99213"][0]) == 1

    def test_missing_descriptions_fall_back_to_display(self):
        client = HCPCSClient()
        payload = [1, ["G0008"], {}, [["G0008", "Admin influenza virus vac"]]]

        parsed = client._parse_search_response(payload, ["G0008"])

        record = parsed["G0008"][0][0]
        assert record.short_desc == "Admin influenza virus vac"
        assert record.long_desc == "Admin influenza virus vac"

    def test_malformed_payload_raises(self):
        client = HCPCSClient()

        with pytest.raises(PermanentError):
            client._parse_search_response({"error": "nope"}, ["A0425"])


class TestLookups:
    """Test suite for batch and single lookups"""

    @pytest.mark.asyncio
    async def test_lookup_batch_returns_found_codes_only(self):
        client = HCPCSClient()
        payload = _search_payload([
            ("A0425", "Ground mileage", "Ground mileage, per statute mile", "19950101", "", "", "false"),
        ])
        session = _session(_response(payload=payload))

        found, provenance = await client.lookup_batch(["A0425", "B1234"], session)

        assert set(found) == {"A0425"}
        assert found["A0425"].status == ResolutionStatus.RESOLVED
        assert found["A0425"].source == CacheSource.API
        assert found["A0425"].request_provenance == provenance
        assert "A0425 OR B1234" in provenance

    @pytest.mark.asyncio
    async def test_lookup_batch_failure_raises_with_provenance(self):
        client = HCPCSClient(retry_limit=1)
        session = _session(_response(status=502))

        with pytest.raises(TransientError) as exc_info:
            await client.lookup_batch(["A0425", "B1234"], session)

        assert "A0425 OR B1234" in exc_info.value.provenance

    @pytest.mark.asyncio
    async def test_lookup_single_not_found(self):
        client = HCPCSClient()
        session = _session(_response(payload=[0, [], {}, []]))

        with pytest.raises(NotFoundError):
            await client.lookup("XXXXX", session)

    @pytest.mark.asyncio
    async def test_lookup_single_ignores_prefix_matches(self):
        """Test rows for other codes returned by the search do not count as a match"""
        client = HCPCSClient()
        payload = _search_payload([
            ("A04251", "Not it", "Not it", "", "", "", "false"),
        ])
        session = _session(_response(payload=payload))

        with pytest.raises(NotFoundError):
            await client.lookup("A0425", session)

    @pytest.mark.asyncio
    async def test_lookup_single_retries_server_error(self):
        client = HCPCSClient(retry_limit=2)
        payload = _search_payload([
            ("J3490", "Drugs unclassified", "Unclassified drugs", "20000101", "", "", "true"),
        ])
        session = _session(_response(status=500), _response(payload=payload))

        with patch(
            "claims_resolver.registry_client.sleep_unless_cancelled",
            new_callable=AsyncMock,
            return_value=True,
        ):
            record = await client.lookup("J3490", session)

        assert record.payload.records[0].is_noc is True
        assert session.get.call_count == 2
