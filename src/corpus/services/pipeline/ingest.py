from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from threading import Event

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from corpus.errors import (
    ConsistencyError,
    EmbeddingError,
    InputError,
    PER_DOCUMENT_ERRORS,
    PipelineError,
)
from corpus.services.pipeline.chunker import chunk_document
from corpus.services.pipeline.embedding_client import EmbeddingClient
from corpus.services.pipeline.locks import DocumentLockArena
from corpus.services.pipeline.manifest_store import ManifestStore, record_failure
from corpus.services.pipeline.scanner import compute_hash
from corpus.services.pipeline.sqlite_store import CorpusStore
from corpus.services.pipeline.types import (
    ChunkRecord,
    IngestSummary,
    ManifestEntry,
    ManifestStatus,
    ProcessingResult,
)

logger = structlog.get_logger(__name__)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome is not None else None
    logger.warning("embedding_retry", attempt=state.attempt_number, error=str(exc))


class IngestionPipeline:
    def __init__(
        self,
        *,
        manifest: ManifestStore,
        store: CorpusStore,
        embedding_client: EmbeddingClient,
        refined_dir: Path,
        locks: DocumentLockArena,
        chunk_size: int = 1500,
        chunk_overlap: int = 150,
        embed_batch_size: int = 16,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        batch_size: int = 10,
    ) -> None:
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")

        self._manifest = manifest
        self._store = store
        self._embedding_client = embedding_client
        self._refined_dir = refined_dir
        self._locks = locks
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._embed_batch_size = max(1, embed_batch_size)
        self._max_attempts = max(1, max_attempts)
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._batch_size = max(1, batch_size)

    def ingest_one(self, document_id: str) -> ProcessingResult:
        """Chunk, embed and store one refined document.

        InputError is raised for a blank, unknown or never-refined id.
        Consistency and embedding failures are recorded on the manifest entry
        and returned as a failed result; the previous chunk set stays in place.
        """
        if not document_id or not document_id.strip():
            raise InputError("document_id is required")
        document_id = document_id.strip()

        with self._locks.hold(document_id):
            entry = self._manifest.get(document_id)
            if entry is None:
                raise InputError(f"unknown document: {document_id}")
            if entry.refined_fingerprint is None or entry.refined_file is None:
                raise InputError(f"document has not been refined: {entry.filename}")

            try:
                text = self._verified_derivative(entry)
                entry = entry.transition(ManifestStatus.INGESTING)
            except ConsistencyError as exc:
                return self._quarantine(entry, exc)
            self._manifest.upsert(entry)

            try:
                chunks = self._embed_chunks(
                    chunk_document(
                        document_id=entry.document_id,
                        source_path=entry.filename,
                        text=text,
                        fingerprint=entry.refined_fingerprint,
                        chunk_size=self._chunk_size,
                        chunk_overlap=self._chunk_overlap,
                    )
                )
            except EmbeddingError as exc:
                self._manifest.upsert(entry.failed(exc.message, exc.kind))
                logger.warning(
                    "ingest_failed",
                    document_id=entry.document_id,
                    filename=entry.filename,
                    error=exc.message,
                )
                return ProcessingResult(
                    document_id=entry.document_id,
                    filename=entry.filename,
                    status=ManifestStatus.ERROR.value,
                    refined_file=entry.refined_file,
                    error=exc.message,
                    error_kind=exc.kind,
                )

            written = self._store.replace_chunks(entry.document_id, chunks)
            entry = entry.transition(
                ManifestStatus.INGESTED,
                ingested_fingerprint=entry.refined_fingerprint,
            )
            self._manifest.upsert(entry)
            logger.info(
                "ingest_completed",
                document_id=entry.document_id,
                filename=entry.filename,
                chunks=written,
            )
            return ProcessingResult(
                document_id=entry.document_id,
                filename=entry.filename,
                status=entry.status.value,
                refined_file=entry.refined_file,
                chunks=written,
            )

    def ingest_all(self, cancel_event: Event | None = None) -> IngestSummary:
        entries = [
            entry
            for entry in self._manifest.list_all()
            if entry.refined_fingerprint is not None and entry.refined_file is not None
        ]

        with ThreadPoolExecutor(max_workers=self._batch_size) as executor:
            futures: list[Future[ProcessingResult | None]] = [
                executor.submit(self._ingest_guarded, entry, cancel_event) for entry in entries
            ]
            try:
                outcomes = [future.result() for future in futures]
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        results = [outcome for outcome in outcomes if outcome is not None]
        cancelled = len(results) < len(entries)
        summary = IngestSummary(
            success=sum(1 for result in results if result.ok),
            total=len(entries),
            results=results,
            cancelled=cancelled,
        )
        logger.info(
            "ingest_all_completed",
            success=summary.success,
            total=summary.total,
            cancelled=summary.cancelled,
        )
        return summary

    def _ingest_guarded(
        self, entry: ManifestEntry, cancel_event: Event | None
    ) -> ProcessingResult | None:
        if cancel_event is not None and cancel_event.is_set():
            return None
        try:
            return self.ingest_one(entry.document_id)
        except (InputError, *PER_DOCUMENT_ERRORS) as exc:
            return ProcessingResult(
                document_id=entry.document_id,
                filename=entry.filename,
                status=ManifestStatus.ERROR.value,
                refined_file=entry.refined_file,
                error=exc.message,
                error_kind=exc.kind,
            )
        except PipelineError:
            raise
        except Exception as exc:
            logger.exception("ingest_document_crashed", document_id=entry.document_id)
            message = f"{type(exc).__name__}: {exc}"
            with self._locks.hold(entry.document_id):
                record_failure(self._manifest, entry.document_id, message, PipelineError.kind)
            return ProcessingResult(
                document_id=entry.document_id,
                filename=entry.filename,
                status=ManifestStatus.ERROR.value,
                refined_file=entry.refined_file,
                error=message,
                error_kind=PipelineError.kind,
            )

    def _verified_derivative(self, entry: ManifestEntry) -> str:
        if not entry.is_consistent:
            raise ConsistencyError(
                f"ingested fingerprint {entry.ingested_fingerprint} does not match "
                f"refined fingerprint {entry.refined_fingerprint} for {entry.filename}"
            )

        path = self._refined_dir / entry.refined_file
        try:
            data = path.read_bytes()
        except FileNotFoundError as exc:
            raise ConsistencyError(f"refined derivative is missing: {entry.refined_file}") from exc
        if compute_hash(data) != entry.refined_hash:
            raise ConsistencyError(
                f"refined derivative does not match the manifest: {entry.refined_file}"
            )
        return data.decode("utf-8")

    def _quarantine(self, entry: ManifestEntry, exc: ConsistencyError) -> ProcessingResult:
        logger.error(
            "manifest_consistency_violation",
            document_id=entry.document_id,
            filename=entry.filename,
            status=entry.status.value,
            error=exc.message,
        )
        self._manifest.upsert(entry.failed(exc.message, exc.kind))
        return ProcessingResult(
            document_id=entry.document_id,
            filename=entry.filename,
            status=ManifestStatus.ERROR.value,
            refined_file=entry.refined_file,
            error=exc.message,
            error_kind=exc.kind,
        )

    def _embed_chunks(self, chunks: list[ChunkRecord]) -> list[ChunkRecord]:
        embedded: list[ChunkRecord] = []
        for start in range(0, len(chunks), self._embed_batch_size):
            batch = chunks[start : start + self._embed_batch_size]
            vectors = self._embed_with_retry([chunk.text for chunk in batch])
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"expected {len(batch)} embeddings, got {len(vectors)}"
                )
            embedded.extend(
                replace(chunk, embedding=vector) for chunk, vector in zip(batch, vectors)
            )
        return embedded

    def _embed_with_retry(self, texts: list[str]) -> list[list[float]]:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._retry_base_seconds,
                max=self._retry_max_seconds,
            ),
            retry=retry_if_exception_type(EmbeddingError),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(self._embedding_client.embed_texts, texts)
