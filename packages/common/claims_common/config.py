"""Configuration settings using pydantic-settings."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

here = Path(__file__).parent.parent

load_dotenv(dotenv_path=here / ".env")

NPI_API_URL = os.getenv("NPI_API_URL") or "https://npiregistry.cms.hhs.gov/api/"
HCPCS_API_URL = os.getenv("HCPCS_API_URL") or "https://clinicaltables.nlm.nih.gov/api/hcpcs/v3/search"

# The HCPCS search API refuses OR queries over more codes than this
HCPCS_BATCH_HARD_CAP = 500


class ResolverSettings(BaseSettings):
    """Settings recognized by the resolution engine.

    Every field can be overridden with a ``CLAIMS_``-prefixed environment
    variable, e.g. ``CLAIMS_REQUESTS_PER_SECOND=5``.
    """

    # Throttling and concurrency, applied per identifier family
    requests_per_second: float = Field(default=2.0, ge=0)
    rate_burst: int = Field(default=1, ge=1)
    concurrency_limit: int = Field(default=2, ge=1)
    hcpcs_batch_size: int = Field(default=100, ge=1)
    max_retries: int = Field(default=5, ge=1)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Deferred retry rounds
    failure_retry_rounds: int = Field(default=2, ge=0)
    failure_retry_delay_seconds: float = Field(default=30.0, ge=0)
    max_new_lookups: Optional[int] = Field(default=None, ge=0)

    # Run modes
    rebuild_map: bool = False
    reset_map: bool = False
    skip_api: bool = False
    skip_nppes_bulk: bool = False

    npi_api_url: str = NPI_API_URL
    npi_api_version: str = "2.1"
    hcpcs_api_url: str = HCPCS_API_URL
    user_agent: str = "claims-identifier-resolver/0.1"

    data_dir: Path = Path("data")
    npi_cache_path: Optional[Path] = None
    hcpcs_cache_path: Optional[Path] = None
    nppes_monthly_dir: Optional[Path] = None
    nppes_weekly_dir: Optional[Path] = None
    hcpcs_fallback_path: Optional[Path] = None
    npi_mapping_path: Optional[Path] = None
    hcpcs_mapping_path: Optional[Path] = None
    unresolved_report_path: Optional[Path] = None
    triage_dir: Optional[Path] = None

    model_config = {"env_prefix": "CLAIMS_", "extra": "ignore"}

    @field_validator("hcpcs_batch_size")
    @classmethod
    def _clamp_batch_size(cls, value: int) -> int:
        if value > HCPCS_BATCH_HARD_CAP:
            logger.warning(
                "hcpcs_batch_size=%s exceeds the API limit, clamping to %s",
                value,
                HCPCS_BATCH_HARD_CAP,
            )
            return HCPCS_BATCH_HARD_CAP
        return value

    @model_validator(mode="after")
    def _derive_paths(self) -> "ResolverSettings":
        cache_dir = self.data_dir / "cache"
        nppes_dir = self.data_dir / "nppes"
        reports_dir = self.data_dir / "reports"
        if self.npi_cache_path is None:
            self.npi_cache_path = cache_dir / "npi_cache.sqlite"
        if self.hcpcs_cache_path is None:
            self.hcpcs_cache_path = cache_dir / "hcpcs_cache.sqlite"
        if self.nppes_monthly_dir is None:
            self.nppes_monthly_dir = nppes_dir / "monthly"
        if self.nppes_weekly_dir is None:
            self.nppes_weekly_dir = nppes_dir / "weekly"
        if self.hcpcs_fallback_path is None:
            self.hcpcs_fallback_path = self.data_dir / "reference" / "hcpcs_fallback.csv"
        if self.npi_mapping_path is None:
            self.npi_mapping_path = reports_dir / "npi_provider_mapping.csv"
        if self.hcpcs_mapping_path is None:
            self.hcpcs_mapping_path = reports_dir / "hcpcs_code_mapping.csv"
        if self.unresolved_report_path is None:
            self.unresolved_report_path = reports_dir / "unresolved_identifiers.csv"
        if self.triage_dir is None:
            self.triage_dir = reports_dir / "triage"
        return self

    def cooldown_for_round(self, round_number: int) -> float:
        """Cooldown before retry round ``round_number`` (1-based), doubling each round."""
        if round_number < 1:
            return 0.0
        return self.failure_retry_delay_seconds * (2 ** (round_number - 1))
