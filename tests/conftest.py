from collections.abc import Iterator
from pathlib import Path
from typing import Callable

import pytest
from sqlalchemy import create_engine

from corpus.config import get_settings
from corpus.db import get_engine
from corpus.main import get_orchestrator
from corpus.services.pipeline.ingest import IngestionPipeline
from corpus.services.pipeline.integrity import IntegrityChecker, ReportCache
from corpus.services.pipeline.locks import DocumentLockArena
from corpus.services.pipeline.manifest_store import SqlManifestStore
from corpus.services.pipeline.orchestrator import PipelineOrchestrator
from corpus.services.pipeline.refiner import DocumentRefinementBackend, RefinementBackend, Refiner
from corpus.services.pipeline.scanner import SourceScanner
from corpus.services.pipeline.sqlite_store import CorpusStore
from helpers import FakeEmbeddingClient, PipelineHarness


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_orchestrator.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_orchestrator.cache_clear()


@pytest.fixture
def make_harness(tmp_path: Path) -> Iterator[Callable[..., PipelineHarness]]:
    engines = []

    def _make(
        *,
        embedding_client: FakeEmbeddingClient | None = None,
        backend: RefinementBackend | None = None,
        chunk_size: int = 200,
        chunk_overlap: int = 20,
        max_attempts: int = 3,
        batch_size: int = 4,
    ) -> PipelineHarness:
        source_dir = tmp_path / "raw_documents"
        refined_dir = tmp_path / "rag_ready"
        source_dir.mkdir(exist_ok=True)

        engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'manifest.db'}")
        engines.append(engine)
        manifest = SqlManifestStore(engine)
        manifest.create_schema()

        locks = DocumentLockArena()
        scanner = SourceScanner(source_dir)
        store = CorpusStore(tmp_path / "index" / "corpus.db")
        embedding_client = embedding_client or FakeEmbeddingClient()

        refiner = Refiner(
            scanner=scanner,
            manifest=manifest,
            refined_dir=refined_dir,
            backend=backend or DocumentRefinementBackend(structurer=None),
            locks=locks,
        )
        ingestion = IngestionPipeline(
            manifest=manifest,
            store=store,
            embedding_client=embedding_client,
            refined_dir=refined_dir,
            locks=locks,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            embed_batch_size=4,
            max_attempts=max_attempts,
            retry_base_seconds=0.0,
            retry_max_seconds=0.0,
            batch_size=batch_size,
        )
        integrity = IntegrityChecker(
            scanner=scanner,
            manifest=manifest,
            store=store,
            refined_dir=refined_dir,
            cache=ReportCache(ttl_seconds=300),
        )
        orchestrator = PipelineOrchestrator(
            scanner=scanner,
            manifest=manifest,
            store=store,
            refiner=refiner,
            ingestion=ingestion,
            integrity=integrity,
            locks=locks,
            batch_size=batch_size,
        )
        return PipelineHarness(
            source_dir=source_dir,
            refined_dir=refined_dir,
            scanner=scanner,
            manifest=manifest,
            store=store,
            embedding_client=embedding_client,
            refiner=refiner,
            ingestion=ingestion,
            integrity=integrity,
            orchestrator=orchestrator,
        )

    yield _make

    for engine in engines:
        engine.dispose()


@pytest.fixture
def harness(make_harness: Callable[..., PipelineHarness]) -> PipelineHarness:
    return make_harness()
