from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from corpus.db import Base
from corpus.errors import StoreUnavailableError
from corpus.models import ManifestRecord
from corpus.services.pipeline.types import ManifestEntry, ManifestStatus, utc_now


class ManifestStore(Protocol):
    def get(self, document_id: str) -> ManifestEntry | None: ...

    def upsert(self, entry: ManifestEntry) -> None: ...

    def remove(self, document_id: str) -> None: ...

    def list_all(self, *, include_removed: bool = False) -> Sequence[ManifestEntry]: ...


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_entry(record: ManifestRecord) -> ManifestEntry:
    return ManifestEntry(
        document_id=record.document_id,
        filename=record.filename,
        fingerprint=record.fingerprint,
        size=record.size,
        discovered_at=_as_utc(record.discovered_at),
        status=ManifestStatus(record.status),
        refined_fingerprint=record.refined_fingerprint,
        refined_file=record.refined_file,
        refined_hash=record.refined_hash,
        ingested_fingerprint=record.ingested_fingerprint,
        error=record.error,
        error_kind=record.error_kind,
        updated_at=_as_utc(record.updated_at),
        removed_at=_as_utc(record.removed_at),
    )


def _to_record(entry: ManifestEntry) -> ManifestRecord:
    return ManifestRecord(
        document_id=entry.document_id,
        filename=entry.filename,
        fingerprint=entry.fingerprint,
        size=entry.size,
        discovered_at=entry.discovered_at,
        status=entry.status.value,
        refined_fingerprint=entry.refined_fingerprint,
        refined_file=entry.refined_file,
        refined_hash=entry.refined_hash,
        ingested_fingerprint=entry.ingested_fingerprint,
        error=entry.error,
        error_kind=entry.error_kind,
        updated_at=entry.updated_at,
        removed_at=entry.removed_at,
    )


class SqlManifestStore:
    """Manifest persisted through SQLAlchemy.

    Every write replaces the whole row. Removal is a tombstone: the row
    stays for history but ``get``/``list_all`` stop returning it, and a
    later upsert for the same id revives it.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._write_lock = Lock()

    def create_schema(self) -> None:
        with self._guard():
            Base.metadata.create_all(bind=self._engine, tables=[ManifestRecord.__table__])

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except OperationalError as exc:
            raise StoreUnavailableError(f"manifest store unavailable: {exc}") from exc

    def get(self, document_id: str) -> ManifestEntry | None:
        with self._guard(), Session(self._engine) as session:
            record = session.get(ManifestRecord, document_id)
            if record is None or record.removed_at is not None:
                return None
            return _to_entry(record)

    def upsert(self, entry: ManifestEntry) -> None:
        record = _to_record(entry)
        record.removed_at = None
        with self._write_lock, self._guard(), Session(self._engine) as session:
            session.merge(record)
            session.commit()

    def remove(self, document_id: str) -> None:
        with self._write_lock, self._guard(), Session(self._engine) as session:
            record = session.get(ManifestRecord, document_id)
            if record is None or record.removed_at is not None:
                return
            now = utc_now()
            record.removed_at = now
            record.updated_at = now
            session.commit()

    def list_all(self, *, include_removed: bool = False) -> list[ManifestEntry]:
        with self._guard(), Session(self._engine) as session:
            stmt = select(ManifestRecord)
            if not include_removed:
                stmt = stmt.where(ManifestRecord.removed_at.is_(None))
            records = session.scalars(
                stmt.order_by(ManifestRecord.filename.asc(), ManifestRecord.document_id.asc())
            ).all()
            return [_to_entry(record) for record in records]


def record_failure(manifest: ManifestStore, document_id: str, message: str, kind: str) -> None:
    """Mark a live entry as failed; a missing entry has nothing to record."""
    entry = manifest.get(document_id)
    if entry is not None:
        manifest.upsert(entry.failed(message, kind))
