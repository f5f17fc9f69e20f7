"""Database schema for the resolution cache."""

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, DateTime, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResolutionEntry(Base):
    """One cached identifier. A separate database file is kept per family."""

    __tablename__ = "resolution_cache"

    identifier = Column(String(32), primary_key=True)
    status = Column(String(16), nullable=False, index=True)
    error_message = Column(Text)
    payload_json = Column(Text)
    source = Column(String(16))
    fetched_at = Column(DateTime(timezone=True), default=_utcnow)
    request_provenance = Column(Text)

    def __repr__(self):
        return f"<ResolutionEntry(identifier={self.identifier}, status={self.status}, source={self.source})>"


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    # Every commit reaches disk before returning
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.close()


def create_cache_engine(db_path: Path) -> Engine:
    """Create a SQLite engine for a cache file and make sure the schema exists."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    Base.metadata.create_all(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)
