from functools import lru_cache
from typing import Annotated, Any, NoReturn

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from corpus.config import get_settings
from corpus.errors import (
    InputError,
    PipelineError,
    ReprocessInProgressError,
    SourceNotFoundError,
    StoreUnavailableError,
)
from corpus.logging_config import configure_logging
from corpus.services.pipeline import PipelineOrchestrator, build_orchestrator

app = FastAPI(title="Corpus Pipeline API", version="0.1.0")


class RepairRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filename: str = Field(min_length=1)


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)


@lru_cache
def get_orchestrator() -> PipelineOrchestrator:
    return build_orchestrator(get_settings())


def _raise_http(exc: PipelineError) -> NoReturn:
    if isinstance(exc, SourceNotFoundError):
        raise HTTPException(status_code=404, detail=exc.message) from exc
    if isinstance(exc, InputError):
        raise HTTPException(status_code=400, detail=exc.message) from exc
    if isinstance(exc, ReprocessInProgressError):
        raise HTTPException(status_code=409, detail=exc.message) from exc
    if isinstance(exc, StoreUnavailableError):
        raise HTTPException(status_code=503, detail=exc.message) from exc
    raise HTTPException(status_code=500, detail=exc.message) from exc


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/corpus/integrity")
def corpus_integrity(
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
) -> dict[str, Any]:
    try:
        report = orchestrator.check_integrity()
    except PipelineError as exc:
        _raise_http(exc)

    return {"healthy": report.is_healthy, **report.to_dict()}


@app.post("/corpus/integrity/repair")
def repair_file(
    request: RepairRequest,
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
) -> dict[str, Any]:
    try:
        result = orchestrator.repair_file(request.filename)
    except PipelineError as exc:
        _raise_http(exc)

    return result.to_dict()


@app.post("/corpus/reprocess")
def reprocess_corpus(
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
) -> dict[str, Any]:
    try:
        summary = orchestrator.reprocess_all()
    except PipelineError as exc:
        _raise_http(exc)

    return summary.to_dict()


@app.get("/corpus/reprocess/progress")
def reprocess_progress(
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
) -> dict[str, Any]:
    return orchestrator.progress().to_dict()


@app.post("/corpus/prune")
def prune_orphans(
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
) -> dict[str, Any]:
    try:
        removed = orchestrator.prune_orphans()
    except PipelineError as exc:
        _raise_http(exc)

    return {"removed": [result.to_dict() for result in removed]}


def run() -> None:
    import uvicorn

    uvicorn.run("corpus.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
