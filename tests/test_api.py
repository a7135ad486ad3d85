from collections.abc import Iterator

from fastapi.testclient import TestClient
import pytest

from corpus.errors import StoreUnavailableError
from corpus.main import app, get_orchestrator
from helpers import PipelineHarness


@pytest.fixture
def client(harness: PipelineHarness) -> Iterator[TestClient]:
    app.dependency_overrides[get_orchestrator] = lambda: harness.orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_returns_ok(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_integrity_reports_drift(client: TestClient, harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")

    response = client.get("/corpus/integrity")

    assert response.status_code == 200
    body = response.json()
    assert body["healthy"] is False
    assert body["missing_refinement"] == [harness.id_of("a.txt")]
    assert body["filenames"] == {harness.id_of("a.txt"): "a.txt"}


def test_repair_returns_processing_result(client: TestClient, harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")

    response = client.post("/corpus/integrity/repair", json={"filename": "a.txt"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ingested"
    assert body["error"] is None
    assert client.get("/corpus/integrity").json()["healthy"] is True


def test_repair_maps_input_errors(client: TestClient) -> None:
    invalid = client.post("/corpus/integrity/repair", json={"filename": "../x.txt"})
    missing = client.post("/corpus/integrity/repair", json={"filename": "missing.txt"})
    empty = client.post("/corpus/integrity/repair", json={})

    assert invalid.status_code == 400
    assert missing.status_code == 404
    assert empty.status_code == 422


def test_repair_reports_conversion_failure_in_body(
    client: TestClient, harness: PipelineHarness
) -> None:
    harness.write_source("broken.pdf", "not a pdf")

    response = client.post("/corpus/integrity/repair", json={"filename": "broken.pdf"})

    assert response.status_code == 200
    assert response.json()["error_kind"] == "conversion"


def test_reprocess_and_progress(client: TestClient, harness: PipelineHarness) -> None:
    harness.write_source("a.txt", "alpha")
    harness.write_source("b.txt", "bravo")

    response = client.post("/corpus/reprocess")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] == 2
    assert body["total"] == 2
    assert body["cancelled"] is False

    progress = client.get("/corpus/reprocess/progress").json()
    assert progress["phase"] == "done"
    assert progress["processed"] == 2


def test_reprocess_conflict_returns_409(client: TestClient, harness: PipelineHarness) -> None:
    acquired = harness.orchestrator._sweep_lock.acquire(blocking=False)
    assert acquired
    try:
        response = client.post("/corpus/reprocess")
    finally:
        harness.orchestrator._sweep_lock.release()

    assert response.status_code == 409
    assert "already running" in response.json()["detail"]


def test_prune_returns_removed_entries(client: TestClient, harness: PipelineHarness) -> None:
    path = harness.write_source("gone.txt", "bye")
    client.post("/corpus/integrity/repair", json={"filename": "gone.txt"})
    path.unlink()

    response = client.post("/corpus/prune")

    assert response.status_code == 200
    assert [item["filename"] for item in response.json()["removed"]] == ["gone.txt"]


def test_store_unavailable_maps_to_503(
    client: TestClient, harness: PipelineHarness, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unavailable() -> None:
        raise StoreUnavailableError("manifest store unavailable: disk I/O error")

    monkeypatch.setattr(harness.orchestrator, "check_integrity", unavailable)

    response = client.get("/corpus/integrity")

    assert response.status_code == 503
