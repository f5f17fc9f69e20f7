import asyncio
from typing import Optional

import aiohttp
from pydantic import ValidationError

from claims_common.config import NPI_API_URL, ResolverSettings
from claims_common.models import CacheRecord, CacheSource, NpiPayload, NpiProfile
from claims_resolver.errors import NotFoundError, PermanentError, ResolverError
from claims_resolver.rate_limit import RateBudget
from claims_resolver.registry_client import RegistryClient


def derive_provider_name(
    organization_name: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
) -> str:
    """Organization name, else "first last", else whichever part exists."""
    organization_name = (organization_name or "").strip()
    if organization_name:
        return organization_name
    first_name = (first_name or "").strip()
    last_name = (last_name or "").strip()
    return f"{first_name} {last_name}".strip()


class NPIClient(RegistryClient):
    """Client for the NPPES NPI Registry API, one request per NPI."""

    def __init__(
        self,
        api_url: str = NPI_API_URL,
        api_version: str = "2.1",
        retry_limit: int = RegistryClient.RETRY_LIMIT,
        timeout_seconds: float = RegistryClient.REQUEST_TIMEOUT,
        cancel_event: Optional[asyncio.Event] = None,
        user_agent: Optional[str] = None,
    ):
        super().__init__(
            api_url,
            retry_limit=retry_limit,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            user_agent=user_agent,
        )
        self.api_version = api_version

    @classmethod
    def from_settings(cls, settings: ResolverSettings, cancel_event: Optional[asyncio.Event] = None) -> "NPIClient":
        return cls(
            api_url=settings.npi_api_url,
            api_version=settings.npi_api_version,
            retry_limit=settings.max_retries,
            timeout_seconds=settings.request_timeout_seconds,
            cancel_event=cancel_event,
            user_agent=settings.user_agent,
        )

    async def lookup(
        self, npi: str, session: aiohttp.ClientSession, budget: Optional[RateBudget] = None
    ) -> CacheRecord:
        """
        Resolve one NPI against the registry.

        Returns:
            A ``Resolved`` CacheRecord with ``source=api``

        Raises:
            NotFoundError: no result, or a result without a usable name
            TransientError: retries exhausted on a retryable failure
            PermanentError: rejected request or malformed payload
        """
        params = {"version": self.api_version, "number": npi}
        provenance = self.provenance(params)
        try:
            data = await self._get_json(session, params, budget=budget)
        except ResolverError as e:
            e.provenance = provenance
            raise

        if not isinstance(data, dict):
            raise PermanentError("Unexpected NPI registry payload", provenance=provenance)
        if data.get("Errors"):
            descriptions = "; ".join(
                str(err.get("description", err)) if isinstance(err, dict) else str(err)
                for err in data["Errors"]
            )
            raise PermanentError(f"Registry rejected request: {descriptions}", provenance=provenance)

        results = data.get("results") or []
        if not results:
            raise NotFoundError(f"NPI {npi} not in registry", provenance=provenance)

        if not isinstance(results, list) or not isinstance(results[0], dict):
            raise PermanentError("Unexpected NPI registry result shape", provenance=provenance)

        result = results[0]
        try:
            profile = self._parse_npi_result(result, npi)
        except (AttributeError, TypeError, ValidationError) as e:
            raise PermanentError(f"Malformed NPI registry result: {e}", provenance=provenance) from e
        if not profile.provider_name:
            raise NotFoundError(f"NPI {npi} has no usable provider name", provenance=provenance)
        return CacheRecord.resolved(
            npi,
            NpiPayload(profile=profile, extra=result),
            CacheSource.API,
            request_provenance=provenance,
        )

    def _parse_npi_result(self, result: dict, npi: Optional[str] = None) -> NpiProfile:
        """
        Parse NPI API result into a provider profile.

        Args:
            result: Raw result from NPI API
            npi: The requested NPI, used when the result omits ``number``

        Returns:
            NpiProfile with standardized provider fields
        """
        basic = result.get("basic", {}) or {}
        npi_number = str(result.get("number") or npi or "")
        organization_name = basic.get("organization_name") or None
        first_name = basic.get("first_name") or None
        last_name = basic.get("last_name") or None

        # Get primary taxonomy or fallback to first available
        taxonomies = [t for t in result.get("taxonomies") or [] if isinstance(t, dict)]
        taxonomy = next((t for t in taxonomies if t.get("primary")), None)
        if not taxonomy and taxonomies:
            taxonomy = taxonomies[0]

        # Get location address or fallback to first available
        addresses = [a for a in result.get("addresses") or [] if isinstance(a, dict)]
        address = next((a for a in addresses if a.get("address_purpose") == "LOCATION"), None)
        if not address and addresses:
            address = addresses[0]
        address = address or {}

        return NpiProfile(
            npi=npi_number,
            provider_name=derive_provider_name(organization_name, first_name, last_name),
            entity_type=result.get("enumeration_type"),
            organization_name=organization_name,
            first_name=first_name,
            last_name=last_name,
            credential=basic.get("credential") or None,
            taxonomy_code=taxonomy.get("code") if taxonomy else None,
            taxonomy_desc=taxonomy.get("desc") if taxonomy else None,
            address=address.get("address_1") or None,
            city=address.get("city") or None,
            state=address.get("state") or None,
            postal_code=address.get("postal_code") or None,
            phone=address.get("telephone_number") or None,
            last_updated=basic.get("last_updated"),
        )
