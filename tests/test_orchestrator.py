from dataclasses import replace
from threading import Event, Thread

import pytest

from corpus.errors import InputError, ReprocessInProgressError, SourceNotFoundError
from corpus.services.pipeline.refiner import DocumentRefinementBackend
from corpus.services.pipeline.types import ManifestStatus
from helpers import FakeEmbeddingClient, PipelineHarness, malformed_package_bytes


class GatedBackend:
    """Plain-text backend that can pause or trigger cancellation on first use."""

    def __init__(self, *, gate: Event | None = None, cancel: Event | None = None) -> None:
        self._inner = DocumentRefinementBackend(structurer=None)
        self._gate = gate
        self._cancel = cancel
        self.started = Event()

    def convert(self, *, filename: str, content: bytes) -> str:
        self.started.set()
        if self._gate is not None:
            self._gate.wait(timeout=5)
        if self._cancel is not None:
            self._cancel.set()
        return self._inner.convert(filename=filename, content=content)


def test_repair_file_refines_and_ingests(harness: PipelineHarness) -> None:
    harness.write_source("manuals/pump.md", "# Pump\n\nCheck seals monthly.")

    result = harness.orchestrator.repair_file("manuals/pump.md")

    assert result.ok
    assert result.status == "ingested"
    assert result.refined_file == "manuals/pump.md.md"
    assert result.chunks == 1
    entry = harness.manifest.get(result.document_id)
    assert entry.ingested_fingerprint == entry.refined_fingerprint


def test_repair_file_skips_ingestion_when_refinement_fails(harness: PipelineHarness) -> None:
    harness.write_source("broken.pdf", "this is not a pdf")

    result = harness.orchestrator.repair_file("broken.pdf")

    assert not result.ok
    assert result.error_kind == "conversion"
    assert harness.embedding_client.calls == 0
    assert harness.store.document_ids() == set()


def test_repair_file_rejects_bad_input(harness: PipelineHarness) -> None:
    report = harness.orchestrator.check_integrity()

    with pytest.raises(InputError):
        harness.orchestrator.repair_file("../outside.txt")
    with pytest.raises(SourceNotFoundError):
        harness.orchestrator.repair_file("missing.txt")

    assert harness.orchestrator.check_integrity() is not report


def test_reprocess_all_survives_one_failing_document(harness: PipelineHarness) -> None:
    for index in range(4):
        harness.write_source(f"doc{index}.txt", f"document number {index}")
    harness.write_source("doc9.pdf", "garbage that no pdf parser accepts")

    summary = harness.orchestrator.reprocess_all()

    assert summary.total == 5
    assert summary.success == 4
    failed = [result for result in summary.results if not result.ok]
    assert [result.filename for result in failed] == ["doc9.pdf"]
    assert failed[0].error_kind == "conversion"
    assert len(harness.store.document_ids()) == 4


def test_reprocess_all_keeps_consistency_invariant(harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")
    harness.write_source("b.txt", "bravo")
    harness.orchestrator.reprocess_all()
    harness.write_source("a.txt", "alpha revised")

    harness.orchestrator.reprocess_all()

    entries = harness.manifest.list_all()
    assert len(entries) == 2
    for entry in entries:
        assert entry.is_consistent
        assert entry.ingested_fingerprint == entry.refined_fingerprint
    assert harness.orchestrator.check_integrity().is_healthy


def test_second_reprocess_is_a_no_op_for_refinement(harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")
    harness.orchestrator.reprocess_all()
    before = harness.manifest.get(harness.id_of("a.txt"))

    summary = harness.orchestrator.reprocess_all()

    after = harness.manifest.get(harness.id_of("a.txt"))
    assert summary.success == 1
    assert after.refined_fingerprint == before.refined_fingerprint
    assert after.refined_hash == before.refined_hash


def test_reprocess_all_prunes_orphans(harness: PipelineHarness) -> None:
    harness.write_source("keep.txt", "keep me")
    gone = harness.write_source("gone.txt", "delete me")
    harness.orchestrator.reprocess_all()
    gone_id = harness.id_of("gone.txt")
    gone.unlink()

    summary = harness.orchestrator.reprocess_all()

    assert [result.document_id for result in summary.removed] == [gone_id]
    assert summary.removed[0].status == "removed"
    assert harness.manifest.get(gone_id) is None
    assert not (harness.refined_dir / "gone.txt.md").exists()
    assert harness.store.document_ids() == {harness.id_of("keep.txt")}
    assert harness.orchestrator.check_integrity().orphaned == []


def test_prune_orphans_removes_stray_chunks(harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")
    result = harness.orchestrator.repair_file("a.txt")
    harness.manifest.remove(result.document_id)

    removed = harness.orchestrator.prune_orphans()

    assert [item.document_id for item in removed] == [result.document_id]
    assert harness.store.document_ids() == set()


def test_reprocess_all_stops_starting_documents_after_cancel(make_harness) -> None:
    cancel = Event()
    harness = make_harness(backend=GatedBackend(cancel=cancel), batch_size=1)
    for name in ("a.txt", "b.txt", "c.txt"):
        harness.write_source(name, f"{name} body")

    summary = harness.orchestrator.reprocess_all(cancel)

    assert summary.cancelled
    assert summary.total == 3
    assert [result.filename for result in summary.results] == ["a.txt"]
    assert summary.removed == []
    progress = harness.orchestrator.progress()
    assert progress.phase == "done"
    assert progress.processed == 1


def test_only_one_reprocess_runs_at_a_time(make_harness) -> None:
    gate = Event()
    backend = GatedBackend(gate=gate)
    harness = make_harness(backend=backend)
    harness.write_source("a.txt", "alpha")
    summaries = []

    worker = Thread(target=lambda: summaries.append(harness.orchestrator.reprocess_all()))
    worker.start()
    try:
        assert backend.started.wait(timeout=5)
        progress = harness.orchestrator.progress()
        assert progress.running
        assert progress.phase == "reprocessing"

        with pytest.raises(ReprocessInProgressError):
            harness.orchestrator.reprocess_all()
    finally:
        gate.set()
        worker.join(timeout=5)

    assert summaries[0].success == 1
    assert harness.orchestrator.reprocess_all().success == 1


def test_progress_reports_finished_sweep(harness: PipelineHarness) -> None:
    assert harness.orchestrator.progress().phase == "idle"
    harness.write_source("a.txt", "alpha")
    harness.write_source("b.pdf", "not a pdf")

    harness.orchestrator.reprocess_all()

    progress = harness.orchestrator.progress()
    assert not progress.running
    assert progress.phase == "done"
    assert progress.total == 2
    assert progress.processed == 2
    assert progress.succeeded == 1
    assert progress.failed == 1
    assert progress.completed_at is not None
    assert progress.to_dict()["started_at"] is not None


def test_quarantined_entry_heals_on_repair(harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")
    document_id = harness.orchestrator.repair_file("a.txt").document_id
    entry = harness.manifest.get(document_id)
    harness.manifest.upsert(replace(entry, ingested_fingerprint="sha256:stale"))
    assert harness.ingestion.ingest_one(document_id).error_kind == "consistency"

    result = harness.orchestrator.repair_file("a.txt")

    assert result.ok
    healed = harness.manifest.get(document_id)
    assert healed.status is ManifestStatus.INGESTED
    assert healed.ingested_fingerprint == healed.refined_fingerprint
    assert harness.orchestrator.check_integrity().healthy == [document_id]


def test_reprocess_all_records_malformed_office_file_and_continues(
    harness: PipelineHarness,
) -> None:
    harness.write_source("a.txt", "alpha")
    harness.write_source_bytes("deck.pptx", malformed_package_bytes())

    summary = harness.orchestrator.reprocess_all()

    assert summary.total == 2
    assert summary.success == 1
    failed = [result for result in summary.results if not result.ok]
    assert [result.filename for result in failed] == ["deck.pptx"]
    assert failed[0].error_kind == "conversion"
    deck = harness.manifest.get(harness.id_of("deck.pptx"))
    assert deck.status is ManifestStatus.ERROR
    assert harness.store.document_ids() == {harness.id_of("a.txt")}
    assert harness.orchestrator.progress().failed == 1


def test_reprocess_all_records_unexpected_ingestion_crash(make_harness) -> None:
    class ExplodingEmbeddingClient(FakeEmbeddingClient):
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            if any("explode" in text for text in texts):
                raise KeyError("embedding")
            return super().embed_texts(texts)

    harness = make_harness(embedding_client=ExplodingEmbeddingClient())
    harness.write_source("a.txt", "alpha")
    harness.write_source("b.txt", "explode here")

    summary = harness.orchestrator.reprocess_all()

    assert summary.success == 1
    failed = [result for result in summary.results if not result.ok]
    assert [result.filename for result in failed] == ["b.txt"]
    assert failed[0].error_kind == "internal"
    assert harness.manifest.get(harness.id_of("b.txt")).status is ManifestStatus.ERROR
    assert harness.orchestrator.check_integrity().missing_ingestion == [harness.id_of("b.txt")]
