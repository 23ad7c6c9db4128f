"""
test_catalog_client.py: EC3 catalog client over httpx.MockTransport.

Tests cover:
  - request shape: /industry_epds, name__like, bearer token
  - parsing of EC3 quantity strings and nested category objects
  - every failure mode surfaces as ExternalServiceError("EC3", ...)
"""

import httpx
import pytest

from app.services.catalog_client import CatalogClient, _to_float, parse_entry
from app.services.errors import ExternalServiceError

CONCRETE = {
    "id": "ec3abc",
    "name": "Concrete C30/37",
    "category": {"display_name": "Ready Mix", "name": "ReadyMix"},
    "gwp": "412.5 kgCO2e",
    "ubp": 150000,
    "penre": "1.2e3 MJ",
    "declared_unit": "1 m3",
    "density_min": "2300 kg/m3",
    "density_max": 2500,
}


def _client(handler, api_key="secret"):
    return CatalogClient(
        base_url="https://ec3.test/api/",
        api_key=api_key,
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


class TestParsing:

    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        (3, 3.0),
        ("412.5 kgCO2e", 412.5),
        ("-0.8 kgCO2e", -0.8),
        ("1.2e3 MJ", 1200.0),
        ("n/a", None),
    ])
    def test_to_float(self, raw, expected):
        assert _to_float(raw) == expected

    def test_parse_entry(self):
        entry = parse_entry(CONCRETE)
        assert entry.id == "ec3abc"
        assert entry.category == "Ready Mix"
        assert entry.impact_factors.gwp == 412.5
        assert entry.impact_factors.eco_points == 150000.0
        assert entry.impact_factors.non_renewable_primary_energy == 1200.0
        assert entry.mean_density() == pytest.approx(2400.0)

    def test_parse_entry_with_missing_factors(self):
        entry = parse_entry({"id": 7, "name": "Mystery"})
        assert entry.id == "7"
        assert entry.impact_factors.gwp is None
        assert entry.mean_density() is None


class TestSearch:

    @pytest.mark.asyncio
    async def test_request_shape_and_result(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["query"] = request.url.params.get("name__like")
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[CONCRETE])

        entries = await _client(handler).search("  Concrete C30/37 ")

        assert seen == {
            "path": "/api/industry_epds",
            "query": "Concrete C30/37",
            "auth": "Bearer secret",
        }
        assert [e.name for e in entries] == ["Concrete C30/37"]

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[])

        assert await _client(handler, api_key="").search("Brick") == []
        assert seen["auth"] is None


class TestFailures:

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client = _client(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.search("Steel")
        assert exc_info.value.service == "EC3"
        assert "503" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalServiceError) as exc_info:
            await _client(handler).search("Steel")
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(ExternalServiceError, match="invalid JSON"):
            await client.search("Steel")

    @pytest.mark.asyncio
    async def test_non_list_body(self):
        client = _client(lambda request: httpx.Response(200, json={"detail": "paged"}))
        with pytest.raises(ExternalServiceError, match="expected list"):
            await client.search("Steel")

    @pytest.mark.asyncio
    async def test_malformed_entry(self):
        client = _client(lambda request: httpx.Response(200, json=[{"name": "no id"}]))
        with pytest.raises(ExternalServiceError, match="malformed"):
            await client.search("Steel")
