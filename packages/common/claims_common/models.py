"""Shared Pydantic models for identifier resolution."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

ERROR_MESSAGE_LIMIT = 300

BULK_PROVENANCE = "bulk:nppes"
FALLBACK_PROVENANCE = "fallback:hcpcs"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentifierFamily(str, Enum):
    """The two identifier namespaces the engine resolves."""

    NPI = "npi"
    HCPCS = "hcpcs"


class ResolutionStatus(str, Enum):
    """Status of one identifier in one cache generation."""

    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    ERROR = "error"
    MISSING_CACHE = "missing_cache"


class CacheSource(str, Enum):
    BULK = "bulk"
    FALLBACK = "fallback"
    API = "api"


class NpiProfile(BaseModel):
    """Provider demographics for one NPI."""

    npi: str = Field(..., description="10-digit National Provider Identifier")
    provider_name: str = Field(..., description="Organization name or 'first last'")
    entity_type: Optional[str] = None
    organization_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    credential: Optional[str] = None
    taxonomy_code: Optional[str] = None
    taxonomy_desc: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    last_updated: Optional[str] = None


class HcpcsRecord(BaseModel):
    """One code-description revision with its validity window."""

    code: str = Field(..., description="5-character HCPCS/CPT code")
    short_desc: str = ""
    long_desc: str = ""
    add_date: Optional[date] = None
    effective_date: Optional[date] = None
    term_date: Optional[date] = None
    is_noc: bool = False
    obsolete: bool = False


class NpiPayload(BaseModel):
    kind: Literal["npi"] = "npi"
    profile: NpiProfile
    # Raw registry result, kept as-is
    extra: Dict[str, Any] = Field(default_factory=dict)


class HcpcsPayload(BaseModel):
    kind: Literal["hcpcs"] = "hcpcs"
    records: List[HcpcsRecord] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)


ResolutionPayload = Annotated[Union[NpiPayload, HcpcsPayload], Field(discriminator="kind")]


class CacheRecord(BaseModel):
    """A cached resolution outcome for one identifier."""

    identifier: str
    status: ResolutionStatus
    error_message: Optional[str] = None
    payload: Optional[ResolutionPayload] = None
    source: Optional[CacheSource] = None
    fetched_at: datetime = Field(default_factory=utcnow)
    request_provenance: Optional[str] = Field(
        None, description="JSON request description for API rows, a sentinel otherwise"
    )

    @classmethod
    def resolved(
        cls,
        identifier: str,
        payload: Union[NpiPayload, HcpcsPayload],
        source: CacheSource,
        request_provenance: Optional[str] = None,
    ) -> "CacheRecord":
        return cls(
            identifier=identifier,
            status=ResolutionStatus.RESOLVED,
            payload=payload,
            source=source,
            request_provenance=request_provenance,
        )

    @classmethod
    def not_found(cls, identifier: str, request_provenance: Optional[str] = None) -> "CacheRecord":
        return cls(
            identifier=identifier,
            status=ResolutionStatus.NOT_FOUND,
            source=CacheSource.API,
            request_provenance=request_provenance,
        )

    @classmethod
    def error(
        cls, identifier: str, reason: str, request_provenance: Optional[str] = None
    ) -> "CacheRecord":
        return cls(
            identifier=identifier,
            status=ResolutionStatus.ERROR,
            error_message=reason[:ERROR_MESSAGE_LIMIT],
            source=CacheSource.API,
            request_provenance=request_provenance,
        )

    @property
    def is_resolved(self) -> bool:
        return self.status == ResolutionStatus.RESOLVED


class UnresolvedEntry(BaseModel):
    """One row of the unresolved-identifiers report."""

    identifier_type: IdentifierFamily
    identifier: str
    status: ResolutionStatus
    error_message: Optional[str] = None
    last_fetch_time: Optional[datetime] = None
