"""
EC3 material catalog client.

Thin async wrapper over the ``/industry_epds`` search endpoint.  Any transport
failure, non-2xx status or malformed body surfaces as ExternalServiceError so
callers never see raw httpx exceptions.
"""
import logging
import re
from typing import Any, Optional

import httpx

from app.models.ingestion_schema import CatalogEntry, ImpactFactors
from app.services.errors import ExternalServiceError
from app.services.pipeline_config import (
    CATALOG_SERVICE_NAME,
    EC3_API_KEY,
    EC3_API_URL,
    EC3_TIMEOUT_SECONDS,
)

logger = logging.getLogger("lca-catalog")

_NUMBER_RE = re.compile(r"[-+]?\d*\.?\d+(?:[eE][-+]?\d+)?")


def _to_float(value: Any) -> Optional[float]:
    """EC3 reports factors as strings like '412.5 kgCO2e'; keep the leading number."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER_RE.search(str(value))
    return float(match.group()) if match else None


def parse_entry(raw: dict) -> CatalogEntry:
    category = raw.get("category")
    if isinstance(category, dict):
        category = category.get("display_name") or category.get("name")
    return CatalogEntry(
        id=str(raw["id"]),
        name=raw["name"],
        category=category,
        impact_factors=ImpactFactors(
            gwp=_to_float(raw.get("gwp")),
            eco_points=_to_float(raw.get("ubp")),
            non_renewable_primary_energy=_to_float(raw.get("penre")),
        ),
        declared_unit=raw.get("declared_unit"),
        density_min=_to_float(raw.get("density_min")),
        density_max=_to_float(raw.get("density_max")),
    )


class CatalogClient:
    def __init__(
        self,
        base_url: str = EC3_API_URL,
        api_key: str = EC3_API_KEY,
        timeout: float = EC3_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def search(self, name: str) -> list[CatalogEntry]:
        """Return catalog entries whose name contains ``name`` (server-side ``name__like``)."""
        cleaned = name.strip()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/industry_epds", params={"name__like": cleaned})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                CATALOG_SERVICE_NAME,
                f"search for {cleaned!r} returned HTTP {exc.response.status_code}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                CATALOG_SERVICE_NAME, f"search for {cleaned!r} failed: {exc}"
            ) from exc
        except ValueError as exc:
            raise ExternalServiceError(
                CATALOG_SERVICE_NAME, f"search for {cleaned!r} returned invalid JSON"
            ) from exc

        if not isinstance(payload, list):
            raise ExternalServiceError(
                CATALOG_SERVICE_NAME, f"search for {cleaned!r} returned {type(payload).__name__}, expected list"
            )
        try:
            entries = [parse_entry(raw) for raw in payload]
        except (KeyError, TypeError, ValueError) as exc:
            raise ExternalServiceError(
                CATALOG_SERVICE_NAME, f"search for {cleaned!r} returned a malformed entry"
            ) from exc
        logger.debug("catalog search %r -> %d entries", cleaned, len(entries))
        return entries
