"""Run the identifier resolution engine end to end."""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import aiohttp
import pandas as pd
from pydantic import ValidationError

from claims_common.config import ResolverSettings
from claims_common.models import IdentifierFamily, UnresolvedEntry
from claims_resolver.bulk_preload import load_hcpcs_fallback, preload_hcpcs, preload_npi
from claims_resolver.cache import ResolutionCache
from claims_resolver.coverage import needs_rebuild, unresolved_report, write_unresolved_report
from claims_resolver.enrich import ClaimEnricher, extract_identifiers
from claims_resolver.errors import CacheStorageError, ConfigurationError
from claims_resolver.export import write_mapping_export
from claims_resolver.hcpcs_api_client import HCPCSClient
from claims_resolver.npi_api_client import NPIClient
from claims_resolver.progress import LookupEvent, ProgressStore
from claims_resolver.scheduler import (
    HcpcsLookupFamily,
    LookupScheduler,
    NpiLookupFamily,
    SchedulerReport,
)
from claims_resolver.triage import write_triage

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class RunSummary:
    npi_rebuilt: bool = False
    hcpcs_rebuilt: bool = False
    npi_preloaded: int = 0
    hcpcs_preloaded: int = 0
    npi_report: Optional[SchedulerReport] = None
    hcpcs_report: Optional[SchedulerReport] = None
    cancelled: bool = False
    unresolved: List[UnresolvedEntry] = field(default_factory=list)
    report_path: Optional[Path] = None
    recent_errors: List[LookupEvent] = field(default_factory=list)


class ResolutionService:
    """Owns both family caches and drives one resolution run.

    Flow: coverage gate -> bulk preload -> concurrent NPI/HCPCS lookups ->
    mapping export -> unresolved report and triage. The report is written
    even when the run is interrupted.
    """

    def __init__(
        self,
        settings: ResolverSettings,
        cancel_event: Optional[asyncio.Event] = None,
        npi_client: Optional[NPIClient] = None,
        hcpcs_client: Optional[HCPCSClient] = None,
    ):
        self.settings = settings
        self.cancel_event = cancel_event or asyncio.Event()
        self.npi_cache = ResolutionCache(settings.npi_cache_path, IdentifierFamily.NPI)
        self.hcpcs_cache = ResolutionCache(settings.hcpcs_cache_path, IdentifierFamily.HCPCS)
        self.npi_client = npi_client or NPIClient.from_settings(settings, self.cancel_event)
        self.hcpcs_client = hcpcs_client or HCPCSClient.from_settings(settings, self.cancel_event)
        self.progress = ProgressStore()

    def close(self) -> None:
        self.npi_cache.close()
        self.hcpcs_cache.close()

    def reset(self) -> None:
        """Clear both caches and every derived artifact."""
        self.npi_cache.reset()
        self.hcpcs_cache.reset()
        for path in (
            self.settings.npi_mapping_path,
            self.settings.hcpcs_mapping_path,
            self.settings.unresolved_report_path,
        ):
            if path is not None and Path(path).exists():
                Path(path).unlink()

    async def resolve(self, npis: Iterable[str], codes: Iterable[str]) -> RunSummary:
        settings = self.settings
        npis = sorted(set(npis))
        codes = sorted(set(codes))
        summary = RunSummary()

        if settings.reset_map:
            print("🧹 Resetting resolution caches")
            await asyncio.to_thread(self.reset)

        try:
            await self._resolve_gaps(npis, codes, summary)
        except CacheStorageError:
            raise
        except Exception as e:
            # Whatever was learned before the failure is still reported
            logger.exception("Resolution stopped early: %s", e)
            await self._write_reports(npis, codes, summary)
            raise

        await self._write_reports(npis, codes, summary)
        summary.cancelled = self.cancel_event.is_set()
        for family in IdentifierFamily:
            summary.recent_errors.extend(await self.progress.recent(family, "error"))
        self._print_summary(summary)
        return summary

    async def _resolve_gaps(self, npis: List[str], codes: List[str], summary: RunSummary) -> None:
        settings = self.settings
        fallback = await load_hcpcs_fallback(settings.hcpcs_fallback_path)
        summary.npi_rebuilt = settings.rebuild_map or await asyncio.to_thread(needs_rebuild, self.npi_cache, npis)
        summary.hcpcs_rebuilt = settings.rebuild_map or await asyncio.to_thread(
            needs_rebuild, self.hcpcs_cache, codes, fallback.codes()
        )
        self._print_plan(npis, codes, summary)

        if summary.npi_rebuilt and not settings.skip_nppes_bulk:
            summary.npi_preloaded = await preload_npi(
                self.npi_cache,
                settings.nppes_monthly_dir,
                settings.nppes_weekly_dir,
                npis,
                cancel_event=self.cancel_event,
            )
            print(f"📥 NPPES bulk preload: {summary.npi_preloaded:,} NPI records")
        if summary.hcpcs_rebuilt:
            summary.hcpcs_preloaded = await preload_hcpcs(self.hcpcs_cache, fallback, codes)
            print(f"📥 HCPCS fallback preload: {summary.hcpcs_preloaded:,} codes")

        if settings.skip_api:
            print("⏭️  skip_api set; remaining gaps stay unresolved")
        elif (summary.npi_rebuilt or summary.hcpcs_rebuilt) and not self.cancel_event.is_set():
            await self._run_lookups(npis, codes, summary, fallback)

        if summary.npi_rebuilt:
            records = await asyncio.to_thread(self.npi_cache.export)
            await write_mapping_export(settings.npi_mapping_path, IdentifierFamily.NPI, records)
        if summary.hcpcs_rebuilt:
            records = await asyncio.to_thread(self.hcpcs_cache.export)
            await write_mapping_export(settings.hcpcs_mapping_path, IdentifierFamily.HCPCS, records)

    async def _write_reports(self, npis: List[str], codes: List[str], summary: RunSummary) -> None:
        npi_entries = await asyncio.to_thread(unresolved_report, self.npi_cache, npis)
        hcpcs_entries = await asyncio.to_thread(unresolved_report, self.hcpcs_cache, codes)
        summary.unresolved = npi_entries + hcpcs_entries
        summary.report_path = await write_unresolved_report(self.settings.unresolved_report_path, summary.unresolved)
        try:
            await write_triage(self.settings.triage_dir, summary.unresolved)
        except (OSError, ValueError) as e:
            logger.warning("Unresolved triage failed: %s", e)

    async def _run_lookups(self, npis, codes, summary: RunSummary, fallback) -> None:
        runs = []
        names = []
        async with aiohttp.ClientSession() as session:
            if summary.npi_rebuilt:
                scheduler = LookupScheduler.from_settings(
                    NpiLookupFamily(self.npi_client),
                    self.npi_cache,
                    self.settings,
                    self.cancel_event,
                    progress=self.progress,
                )
                runs.append(scheduler.run(npis, session))
                names.append("npi")
            if summary.hcpcs_rebuilt:
                scheduler = LookupScheduler.from_settings(
                    HcpcsLookupFamily(self.hcpcs_client, self.settings.hcpcs_batch_size, fallback),
                    self.hcpcs_cache,
                    self.settings,
                    self.cancel_event,
                    progress=self.progress,
                )
                runs.append(scheduler.run(codes, session))
                names.append("hcpcs")

            tasks = [asyncio.create_task(run) for run in runs]
            try:
                reports = await asyncio.gather(*tasks)
            except BaseException:
                # One family failed unexpectedly; stop the other before reporting
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        for name, report in zip(names, reports):
            setattr(summary, f"{name}_report", report)

    async def enrich(self, claims: pd.DataFrame) -> pd.DataFrame:
        """Resolve every identifier in ``claims`` and return the enriched rows."""
        npis, codes = extract_identifiers(claims)
        await self.resolve(npis, codes)
        enricher = await asyncio.to_thread(ClaimEnricher.from_caches, self.npi_cache, self.hcpcs_cache, npis, codes)
        return enricher.enrich_frame(claims)

    def _print_plan(self, npis, codes, summary: RunSummary) -> None:
        s = self.settings
        print(f"\n{'='*60}")
        print("IDENTIFIER RESOLUTION")
        print(f"{'='*60}")
        print(f"  NPIs in input:        {len(npis):,} ({'rebuild' if summary.npi_rebuilt else 'cache complete'})")
        print(f"  HCPCS codes in input: {len(codes):,} ({'rebuild' if summary.hcpcs_rebuilt else 'cache complete'})")
        print(f"  Rate limit:           {s.requests_per_second} req/s, {s.concurrency_limit} workers per family")
        print(f"  HCPCS batch size:     {s.hcpcs_batch_size}")
        print(f"  Retry rounds:         {s.failure_retry_rounds} (base cooldown {s.failure_retry_delay_seconds:.0f}s)")
        print(f"{'='*60}\n")

    def _print_summary(self, summary: RunSummary) -> None:
        print(f"\n{'='*60}")
        print("RESOLUTION COMPLETE" if not summary.cancelled else "RESOLUTION INTERRUPTED")
        print(f"{'='*60}")
        for report in (summary.npi_report, summary.hcpcs_report):
            if report is None:
                continue
            print(
                f"  {report.family.value.upper():5} ✅ {report.resolved:,} resolved, "
                f"📚 {report.fallback:,} fallback, 🔍 {report.not_found:,} not found, "
                f"❌ {report.errors:,} errors, rounds={report.rounds}"
            )
        for event in summary.recent_errors:
            print(f"     last error {event.family.value}:{event.identifier}: {event.details.get('error', '')}")
        print(f"  ⚠️  Unresolved identifiers: {len(summary.unresolved):,}")
        if summary.report_path:
            print(f"  📄 Report: {summary.report_path}")
        print(f"{'='*60}\n")


def install_signal_handlers(cancel_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM set ``cancel_event``; repeats are ignored while shutting down."""
    loop = asyncio.get_running_loop()

    def _on_signal(name: str) -> None:
        if cancel_event.is_set():
            logger.warning("%s received again; still finishing in-flight requests", name)
            return
        print(f"\n⏹️  {name} received. Finishing in-flight lookups, then writing reports...")
        cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(_on_signal, signal.Signals(signum).name))


async def run_from_csv(claims_path: Path, output_path: Optional[Path], settings: ResolverSettings) -> RunSummary:
    """Enrich a claims CSV; writes the enriched rows when ``output_path`` is given."""
    try:
        claims = await asyncio.to_thread(pd.read_csv, claims_path, dtype=str, keep_default_na=False)
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise ConfigurationError(f"Cannot read claims file {claims_path}: {e}") from e

    cancel_event = asyncio.Event()
    install_signal_handlers(cancel_event)
    service = ResolutionService(settings, cancel_event=cancel_event)
    try:
        npis, codes = extract_identifiers(claims)
        summary = await service.resolve(npis, codes)
        if output_path is not None and not summary.cancelled:
            enricher = await asyncio.to_thread(
                ClaimEnricher.from_caches, service.npi_cache, service.hcpcs_cache, npis, codes
            )
            enriched = enricher.enrich_frame(claims)
            await asyncio.to_thread(enriched.to_csv, output_path, index=False)
            print(f"💾 Enriched claims written to {output_path}")
        return summary
    finally:
        service.close()


async def main():
    """
    CLI entry point for identifier resolution.

    Usage:
        python -m claims_resolver <claims.csv> [enriched.csv]

    Engine options come from CLAIMS_* environment variables or a .env file.
    """
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    if len(sys.argv) < 2 or sys.argv[1] in {"-h", "--help"}:
        print("Usage: python -m claims_resolver <claims.csv> [enriched.csv]")
        sys.exit(1)
    claims_path = Path(sys.argv[1])
    output_path = Path(sys.argv[2]) if len(sys.argv) > 2 else None

    try:
        settings = ResolverSettings()
    except ValidationError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(1)

    try:
        summary = await run_from_csv(claims_path, output_path, settings)
    except KeyboardInterrupt:
        print("\n⚠️  Resolution interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        logger.exception("Resolution failed: %s", e)
        print(f"\n❌ Resolution failed: {e}")
        sys.exit(1)

    sys.exit(EXIT_INTERRUPTED if summary.cancelled else 0)


def run_cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_cli()
