"""Durable identifier -> CacheRecord store, one instance per identifier family."""

import logging
import threading
from datetime import timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from pydantic import TypeAdapter
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from claims_common.database import ResolutionEntry, create_cache_engine, create_session_factory
from claims_common.models import (
    CacheRecord,
    CacheSource,
    IdentifierFamily,
    ResolutionPayload,
    ResolutionStatus,
)
from claims_resolver.errors import CacheStorageError

logger = logging.getLogger(__name__)

# Stay well below SQLite's bound-parameter limit
_QUERY_CHUNK = 500

_payload_adapter = TypeAdapter(ResolutionPayload)


def _chunks(items: List[str], size: int = _QUERY_CHUNK) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _to_entry(record: CacheRecord) -> ResolutionEntry:
    return ResolutionEntry(
        identifier=record.identifier,
        status=record.status.value,
        error_message=record.error_message,
        payload_json=record.payload.model_dump_json() if record.payload is not None else None,
        source=record.source.value if record.source is not None else None,
        fetched_at=record.fetched_at,
        request_provenance=record.request_provenance,
    )


def _to_record(entry: ResolutionEntry) -> CacheRecord:
    fetched_at = entry.fetched_at
    if fetched_at is not None and fetched_at.tzinfo is None:
        # SQLite drops the offset; values are always written in UTC
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    return CacheRecord(
        identifier=entry.identifier,
        status=ResolutionStatus(entry.status),
        error_message=entry.error_message,
        payload=_payload_adapter.validate_json(entry.payload_json) if entry.payload_json else None,
        source=CacheSource(entry.source) if entry.source else None,
        fetched_at=fetched_at,
        request_provenance=entry.request_provenance,
    )


class ResolutionCache:
    """SQLite-backed resolution cache.

    Each ``put`` commits before returning, so a kill right after a put keeps
    every earlier write. Access is serialized with a lock so the cache can be
    shared by the scheduler's workers and by preload threads.
    """

    def __init__(self, db_path: Path, family: IdentifierFamily):
        self.db_path = Path(db_path)
        self.family = family
        self._lock = threading.RLock()
        try:
            self._engine = create_cache_engine(self.db_path)
        except SQLAlchemyError as e:
            raise CacheStorageError(f"Cannot open {family.value} cache at {self.db_path}: {e}") from e
        self._session_factory = create_session_factory(self._engine)

    def __repr__(self):
        return f"<ResolutionCache(family={self.family.value}, path={self.db_path})>"

    def close(self) -> None:
        self._engine.dispose()

    def get(self, identifier: str) -> Optional[CacheRecord]:
        with self._lock:
            try:
                with self._session_factory() as session:
                    entry = session.get(ResolutionEntry, identifier)
                    return _to_record(entry) if entry is not None else None
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Read of {identifier} failed: {e}") from e

    def get_many(self, identifiers: Iterable[str]) -> Dict[str, CacheRecord]:
        wanted = sorted(set(identifiers))
        found: Dict[str, CacheRecord] = {}
        with self._lock:
            try:
                with self._session_factory() as session:
                    for chunk in _chunks(wanted):
                        rows = session.scalars(
                            select(ResolutionEntry).where(ResolutionEntry.identifier.in_(chunk))
                        )
                        for entry in rows:
                            found[entry.identifier] = _to_record(entry)
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Bulk read from {self.family.value} cache failed: {e}") from e
        return found

    def put(self, identifier: str, record: CacheRecord) -> None:
        """Insert or overwrite the record for ``identifier``."""
        if record.identifier != identifier:
            record = record.model_copy(update={"identifier": identifier})
        self.put_many([record])

    def put_many(self, records: Iterable[CacheRecord]) -> int:
        """Insert or overwrite several records in one committed transaction."""
        records = list(records)
        if not records:
            return 0
        with self._lock:
            try:
                with self._session_factory() as session:
                    for record in records:
                        session.merge(_to_entry(record))
                    session.commit()
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Write to {self.family.value} cache failed: {e}") from e
        return len(records)

    def seed_many(self, records: Iterable[CacheRecord]) -> int:
        """Write bulk/fallback records without clobbering API resolutions.

        A record is written unless the identifier already holds a ``Resolved``
        record that came from the API. Returns the number written.
        """
        records = list(records)
        if not records:
            return 0
        existing = self.get_many(r.identifier for r in records)
        writable = [
            r for r in records
            if not (
                r.identifier in existing
                and existing[r.identifier].is_resolved
                and existing[r.identifier].source == CacheSource.API
            )
        ]
        return self.put_many(writable)

    def missing(self, identifiers: Iterable[str], include_errors: bool = False) -> Set[str]:
        """Identifiers that are not cached or hold ``MissingCache``.

        With ``include_errors`` identifiers cached as ``Error`` are returned too.
        """
        wanted = set(identifiers)
        attempted = set()
        unsettled = {ResolutionStatus.MISSING_CACHE.value}
        if include_errors:
            unsettled.add(ResolutionStatus.ERROR.value)
        with self._lock:
            try:
                with self._session_factory() as session:
                    for chunk in _chunks(sorted(wanted)):
                        rows = session.execute(
                            select(ResolutionEntry.identifier).where(
                                ResolutionEntry.identifier.in_(chunk),
                                ResolutionEntry.status.not_in(unsettled),
                            )
                        )
                        attempted.update(row[0] for row in rows)
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Missing-set query on {self.family.value} cache failed: {e}") from e
        return wanted - attempted

    def export(self) -> List[CacheRecord]:
        """Every cached record, ordered by identifier."""
        with self._lock:
            try:
                with self._session_factory() as session:
                    rows = session.scalars(select(ResolutionEntry).order_by(ResolutionEntry.identifier))
                    return [_to_record(entry) for entry in rows]
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Export of {self.family.value} cache failed: {e}") from e

    def count(self) -> int:
        with self._lock:
            try:
                with self._session_factory() as session:
                    return session.scalar(select(func.count()).select_from(ResolutionEntry)) or 0
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Count on {self.family.value} cache failed: {e}") from e

    def reset(self) -> None:
        """Delete every record."""
        with self._lock:
            try:
                with self._session_factory() as session:
                    session.execute(delete(ResolutionEntry))
                    session.commit()
            except SQLAlchemyError as e:
                raise CacheStorageError(f"Reset of {self.family.value} cache failed: {e}") from e
        logger.info("Cleared %s cache at %s", self.family.value, self.db_path)
