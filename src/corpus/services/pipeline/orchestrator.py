from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from threading import Event, Lock

from sqlalchemy.engine import Engine
import structlog

from corpus.config import Settings, get_settings
from corpus.db import get_engine
from corpus.errors import (
    InputError,
    PER_DOCUMENT_ERRORS,
    PipelineError,
    ReprocessInProgressError,
)
from corpus.llm import OllamaChatClient
from corpus.services.pipeline.embedding_client import (
    EmbeddingClient,
    HashingEmbeddingClient,
    OllamaEmbeddingClient,
)
from corpus.services.pipeline.ingest import IngestionPipeline
from corpus.services.pipeline.integrity import IntegrityChecker, ReportCache
from corpus.services.pipeline.locks import DocumentLockArena
from corpus.services.pipeline.manifest_store import (
    ManifestStore,
    SqlManifestStore,
    record_failure,
)
from corpus.services.pipeline.refiner import (
    DocumentRefinementBackend,
    RefinementBackend,
    Refiner,
)
from corpus.services.pipeline.scanner import SourceScanner, document_id_for
from corpus.services.pipeline.sqlite_store import CorpusStore
from corpus.services.pipeline.types import (
    IntegrityReport,
    ManifestStatus,
    ProcessingResult,
    ReprocessProgress,
    ReprocessSummary,
    utc_now,
)

logger = structlog.get_logger(__name__)


class PipelineOrchestrator:
    """Entry point for every mutating corpus operation.

    Each operation invalidates the integrity cache before it returns, whether
    it succeeded or not.
    """

    def __init__(
        self,
        *,
        scanner: SourceScanner,
        manifest: ManifestStore,
        store: CorpusStore,
        refiner: Refiner,
        ingestion: IngestionPipeline,
        integrity: IntegrityChecker,
        locks: DocumentLockArena,
        batch_size: int = 10,
    ) -> None:
        self._scanner = scanner
        self._manifest = manifest
        self._store = store
        self._refiner = refiner
        self._ingestion = ingestion
        self._integrity = integrity
        self._locks = locks
        self._batch_size = max(1, batch_size)
        self._sweep_lock = Lock()
        self._progress_lock = Lock()
        self._progress = ReprocessProgress()

    def check_integrity(self) -> IntegrityReport:
        return self._integrity.check()

    def repair_file(self, filename: str) -> ProcessingResult:
        try:
            normalized = self._scanner.validate_filename(filename)
            with self._locks.hold(document_id_for(normalized)):
                return self._refine_and_ingest(normalized)
        finally:
            self._integrity.invalidate_cache()

    def reprocess_all(
        self,
        cancel_event: Event | None = None,
        *,
        prune_orphans: bool = True,
    ) -> ReprocessSummary:
        if not self._sweep_lock.acquire(blocking=False):
            raise ReprocessInProgressError("a full reprocess is already running")

        try:
            filenames = self._scanner.list_filenames()
            self._set_progress(
                ReprocessProgress(
                    running=True,
                    phase="reprocessing",
                    total=len(filenames),
                    started_at=utc_now(),
                )
            )
            logger.info("reprocess_started", total=len(filenames))

            with ThreadPoolExecutor(max_workers=self._batch_size) as executor:
                futures: list[Future[ProcessingResult | None]] = [
                    executor.submit(self._reprocess_guarded, filename, cancel_event)
                    for filename in filenames
                ]
                try:
                    outcomes = [future.result() for future in futures]
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

            results = [outcome for outcome in outcomes if outcome is not None]
            cancelled = len(results) < len(filenames)

            removed: list[ProcessingResult] = []
            if prune_orphans and not cancelled:
                self._update_progress(phase="pruning", current_file=None)
                removed = self._prune()

            summary = ReprocessSummary(
                success=sum(1 for result in results if result.ok),
                total=len(filenames),
                results=results,
                removed=removed,
                cancelled=cancelled,
            )
            logger.info(
                "reprocess_completed",
                success=summary.success,
                total=summary.total,
                removed=len(removed),
                cancelled=cancelled,
            )
            return summary
        finally:
            self._integrity.invalidate_cache()
            self._update_progress(
                running=False,
                phase="done",
                current_file=None,
                completed_at=utc_now(),
            )
            self._sweep_lock.release()

    def prune_orphans(self) -> list[ProcessingResult]:
        """Drop derived data for manifest entries whose source file is gone."""
        try:
            return self._prune()
        finally:
            self._integrity.invalidate_cache()

    def progress(self) -> ReprocessProgress:
        with self._progress_lock:
            return self._progress

    def _refine_and_ingest(self, filename: str) -> ProcessingResult:
        outcome = self._refiner.refine(filename)
        if not outcome.ok:
            return ProcessingResult(
                document_id=outcome.document_id,
                filename=outcome.filename,
                status=ManifestStatus.ERROR.value,
                refined_file=outcome.refined_file,
                error=outcome.error,
                error_kind=outcome.error_kind,
            )
        return self._ingestion.ingest_one(outcome.document_id)

    def _reprocess_guarded(
        self, filename: str, cancel_event: Event | None
    ) -> ProcessingResult | None:
        if cancel_event is not None and cancel_event.is_set():
            return None

        self._update_progress(current_file=filename)
        try:
            with self._locks.hold(document_id_for(filename)):
                result = self._refine_and_ingest(filename)
        except (InputError, *PER_DOCUMENT_ERRORS) as exc:
            logger.warning("reprocess_document_failed", filename=filename, error=exc.message)
            result = ProcessingResult(
                document_id=document_id_for(filename),
                filename=filename,
                status=ManifestStatus.ERROR.value,
                error=exc.message,
                error_kind=exc.kind,
            )
        except PipelineError:
            raise
        except Exception as exc:
            logger.exception("reprocess_document_crashed", filename=filename)
            result = self._record_crash(filename, exc)

        with self._progress_lock:
            self._progress = replace(
                self._progress,
                processed=self._progress.processed + 1,
                succeeded=self._progress.succeeded + (1 if result.ok else 0),
                failed=self._progress.failed + (0 if result.ok else 1),
            )
        return result

    def _record_crash(self, filename: str, exc: Exception) -> ProcessingResult:
        document_id = document_id_for(filename)
        message = f"{type(exc).__name__}: {exc}"
        with self._locks.hold(document_id):
            record_failure(self._manifest, document_id, message, PipelineError.kind)
        return ProcessingResult(
            document_id=document_id,
            filename=filename,
            status=ManifestStatus.ERROR.value,
            error=message,
            error_kind=PipelineError.kind,
        )

    def _prune(self) -> list[ProcessingResult]:
        live_ids = {document_id_for(filename) for filename in self._scanner.list_filenames()}
        removed: list[ProcessingResult] = []

        for entry in self._manifest.list_all():
            if entry.document_id in live_ids:
                continue
            with self._locks.hold(entry.document_id):
                if self._scanner.exists(entry.filename):
                    continue
                deleted = self._store.delete_chunks_for_document(entry.document_id)
                if entry.refined_file:
                    self._refiner.derivative_path(entry.refined_file).unlink(missing_ok=True)
                self._manifest.remove(entry.document_id)
            logger.info(
                "orphan_pruned",
                document_id=entry.document_id,
                filename=entry.filename,
                chunks=deleted,
            )
            removed.append(
                ProcessingResult(
                    document_id=entry.document_id,
                    filename=entry.filename,
                    status="removed",
                    refined_file=entry.refined_file,
                    chunks=deleted,
                )
            )

        known_ids = {entry.document_id for entry in self._manifest.list_all()}
        for document_id in sorted(self._store.document_ids() - known_ids):
            with self._locks.hold(document_id):
                deleted = self._store.delete_chunks_for_document(document_id)
            logger.info("stray_chunks_pruned", document_id=document_id, chunks=deleted)
            removed.append(
                ProcessingResult(
                    document_id=document_id,
                    filename=document_id,
                    status="removed",
                    chunks=deleted,
                )
            )

        return removed

    def _set_progress(self, progress: ReprocessProgress) -> None:
        with self._progress_lock:
            self._progress = progress

    def _update_progress(self, **changes: object) -> None:
        with self._progress_lock:
            self._progress = replace(self._progress, **changes)


def _build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embed_backend == "hashing":
        return HashingEmbeddingClient(dimensions=settings.hashing_embedding_dim)
    return OllamaEmbeddingClient(
        base_url=settings.ollama_embed_base_url,
        model=settings.ollama_embed_model,
        timeout_seconds=settings.ollama_timeout_seconds,
    )


def _build_refinement_backend(settings: Settings) -> RefinementBackend:
    structurer = None
    if settings.refine_with_llm:
        structurer = OllamaChatClient(
            base_url=settings.ollama_base_url,
            default_model=settings.ollama_model,
            fallback_model=settings.ollama_fallback_model,
            timeout_seconds=settings.refine_timeout_seconds,
        )
    return DocumentRefinementBackend(
        structurer=structurer,
        max_section_chars=settings.refine_max_section_chars,
    )


def build_orchestrator(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    embedding_client: EmbeddingClient | None = None,
    backend: RefinementBackend | None = None,
) -> PipelineOrchestrator:
    settings = settings or get_settings()

    manifest = SqlManifestStore(engine or get_engine())
    manifest.create_schema()

    source_dir = Path(settings.source_dir)
    refined_dir = Path(settings.refined_dir)
    locks = DocumentLockArena()
    scanner = SourceScanner(source_dir)
    store = CorpusStore(Path(settings.db_path))

    refiner = Refiner(
        scanner=scanner,
        manifest=manifest,
        refined_dir=refined_dir,
        backend=backend or _build_refinement_backend(settings),
        locks=locks,
    )
    ingestion = IngestionPipeline(
        manifest=manifest,
        store=store,
        embedding_client=embedding_client or _build_embedding_client(settings),
        refined_dir=refined_dir,
        locks=locks,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        embed_batch_size=settings.embed_batch_size,
        max_attempts=settings.embed_max_attempts,
        retry_base_seconds=settings.embed_retry_base_seconds,
        retry_max_seconds=settings.embed_retry_max_seconds,
        batch_size=settings.batch_size,
    )
    integrity = IntegrityChecker(
        scanner=scanner,
        manifest=manifest,
        store=store,
        refined_dir=refined_dir,
        cache=ReportCache(ttl_seconds=settings.integrity_cache_ttl_seconds),
    )
    return PipelineOrchestrator(
        scanner=scanner,
        manifest=manifest,
        store=store,
        refiner=refiner,
        ingestion=ingestion,
        integrity=integrity,
        locks=locks,
        batch_size=settings.batch_size,
    )
