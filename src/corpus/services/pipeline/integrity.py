"""Drift detection between the source directory, the manifest and derived data.

The checker is read-only: it never repairs anything, it only classifies each
document. A document counts as ingested only when the corpus store holds a
chunk set written from its current refined fingerprint; chunk sets without a
live manifest entry are reported as orphaned.

Reports are cached because a full check hashes every source file; a cached
report is served only while the source directory listing is unchanged and
nobody has called ``invalidate_cache`` since it was computed.
"""

from __future__ import annotations

from concurrent.futures import Future
from pathlib import Path
from threading import Lock

from cachetools import TTLCache
import structlog

from corpus.services.pipeline.manifest_store import ManifestStore
from corpus.services.pipeline.scanner import SourceScanner, compute_file_hash
from corpus.services.pipeline.sqlite_store import CorpusStore, StoredDocument
from corpus.services.pipeline.types import IntegrityReport, ManifestEntry, SourceFile, utc_now

logger = structlog.get_logger(__name__)

_REPORT_KEY = "integrity_report"


class ReportCache:
    def __init__(self, ttl_seconds: float = 300.0) -> None:
        self._cache: TTLCache[str, IntegrityReport] = TTLCache(maxsize=1, ttl=ttl_seconds)
        self._lock = Lock()

    def get(self) -> IntegrityReport | None:
        with self._lock:
            return self._cache.get(_REPORT_KEY)

    def set(self, report: IntegrityReport) -> None:
        with self._lock:
            self._cache[_REPORT_KEY] = report

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()


class IntegrityChecker:
    def __init__(
        self,
        *,
        scanner: SourceScanner,
        manifest: ManifestStore,
        store: CorpusStore,
        refined_dir: Path,
        cache: ReportCache | None = None,
    ) -> None:
        self._scanner = scanner
        self._manifest = manifest
        self._store = store
        self._refined_dir = refined_dir
        self._cache = cache or ReportCache()
        self._state_lock = Lock()
        self._generation = 0
        self._in_flight: Future[IntegrityReport] | None = None

    def check(self) -> IntegrityReport:
        signature = self._scanner.signature()

        with self._state_lock:
            cached = self._cache.get()
            if cached is not None and cached.source_signature == signature:
                return cached

            if self._in_flight is not None:
                future = self._in_flight
                owner = False
            else:
                future = Future()
                self._in_flight = future
                owner = True
            generation = self._generation

        if not owner:
            return future.result()

        try:
            report = self._compute()
        except BaseException as exc:
            with self._state_lock:
                if self._in_flight is future:
                    self._in_flight = None
            future.set_exception(exc)
            raise

        with self._state_lock:
            if self._in_flight is future:
                self._in_flight = None
            if self._generation == generation:
                self._cache.set(report)
        future.set_result(report)
        return report

    def invalidate_cache(self) -> None:
        with self._state_lock:
            self._generation += 1
            self._in_flight = None
            self._cache.invalidate()

    def _compute(self) -> IntegrityReport:
        signature = self._scanner.signature()
        sources = self._scanner.scan()
        entries = self._manifest.list_all()
        stored = self._store.documents()
        by_id = {entry.document_id: entry for entry in entries}
        live_ids = {source.document_id for source in sources}

        missing_refinement: list[str] = []
        missing_ingestion: list[str] = []
        healthy: list[str] = []
        inconsistent: list[str] = []
        filenames: dict[str, str] = {}

        for source in sources:
            filenames[source.document_id] = source.filename
            entry = by_id.get(source.document_id)
            if entry is None or not self._is_refined(entry, source):
                missing_refinement.append(source.document_id)
                continue

            if entry.ingested_fingerprint != entry.refined_fingerprint:
                missing_ingestion.append(source.document_id)
                if not entry.is_consistent:
                    inconsistent.append(source.document_id)
                    logger.warning(
                        "manifest_inconsistent",
                        document_id=entry.document_id,
                        filename=entry.filename,
                        refined_fingerprint=entry.refined_fingerprint,
                        ingested_fingerprint=entry.ingested_fingerprint,
                    )
                continue

            if not self._is_stored(entry, stored.get(source.document_id)):
                missing_ingestion.append(source.document_id)
                continue

            healthy.append(source.document_id)

        orphaned: list[str] = []
        for entry in entries:
            if entry.document_id not in live_ids:
                orphaned.append(entry.document_id)
                filenames[entry.document_id] = entry.filename

        known_ids = {entry.document_id for entry in entries}
        for document_id in sorted(stored.keys() - known_ids):
            orphaned.append(document_id)
            filenames[document_id] = stored[document_id].source_path

        report = IntegrityReport(
            missing_refinement=missing_refinement,
            missing_ingestion=missing_ingestion,
            orphaned=orphaned,
            healthy=healthy,
            inconsistent=inconsistent,
            filenames=filenames,
            checked_at=utc_now(),
            source_files=len(sources),
            manifest_entries=len(entries),
            stored_documents=len(stored),
            source_signature=signature,
        )
        logger.info(
            "integrity_checked",
            source_files=report.source_files,
            missing_refinement=len(missing_refinement),
            missing_ingestion=len(missing_ingestion),
            orphaned=len(orphaned),
            healthy=len(healthy),
        )
        return report

    def _is_stored(self, entry: ManifestEntry, document: StoredDocument | None) -> bool:
        if (
            document is not None
            and document.chunk_count > 0
            and document.fingerprint == entry.ingested_fingerprint
        ):
            return True
        logger.warning(
            "store_drift",
            document_id=entry.document_id,
            filename=entry.filename,
            ingested_fingerprint=entry.ingested_fingerprint,
            stored_fingerprint=document.fingerprint if document else None,
        )
        return False

    def _is_refined(self, entry: ManifestEntry, source: SourceFile) -> bool:
        if entry.refined_fingerprint != source.fingerprint or not entry.refined_file:
            return False
        derivative = self._refined_dir / entry.refined_file
        if not derivative.is_file():
            return False
        return compute_file_hash(derivative) == entry.refined_hash
