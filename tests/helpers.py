"""Shared collaborators for the pipeline tests."""

from dataclasses import dataclass
import io
from pathlib import Path
from threading import Lock
import zipfile

from corpus.errors import EmbeddingError
from corpus.services.pipeline.ingest import IngestionPipeline
from corpus.services.pipeline.integrity import IntegrityChecker
from corpus.services.pipeline.manifest_store import SqlManifestStore
from corpus.services.pipeline.orchestrator import PipelineOrchestrator
from corpus.services.pipeline.refiner import Refiner
from corpus.services.pipeline.scanner import SourceScanner, document_id_for
from corpus.services.pipeline.sqlite_store import CorpusStore


class FakeEmbeddingClient:
    def __init__(self, dimensions: int = 8, *, failures: int = 0) -> None:
        self._dimensions = dimensions
        self.failures = failures
        self._lock = Lock()
        self.calls = 0

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        with self._lock:
            self.calls += 1
            failing = self.calls <= self.failures
        if failing:
            raise EmbeddingError("embedding backend timed out")
        return [
            [float(len(text) % 7 + 1)] + [float(index + 1) for index in range(self._dimensions - 1)]
            for text in texts
        ]


def malformed_package_bytes() -> bytes:
    """A zip that looks like an Office package but has a broken content-types part."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types <broken")
        archive.writestr("ppt/presentation.xml", "<p:presentation/>")
    return buffer.getvalue()


@dataclass
class PipelineHarness:
    source_dir: Path
    refined_dir: Path
    scanner: SourceScanner
    manifest: SqlManifestStore
    store: CorpusStore
    embedding_client: FakeEmbeddingClient
    refiner: Refiner
    ingestion: IngestionPipeline
    integrity: IntegrityChecker
    orchestrator: PipelineOrchestrator

    def write_source(self, filename: str, text: str) -> Path:
        path = self.source_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def write_source_bytes(self, filename: str, content: bytes) -> Path:
        path = self.source_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def id_of(self, filename: str) -> str:
        return document_id_for(filename)
