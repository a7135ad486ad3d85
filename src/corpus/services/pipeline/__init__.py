from corpus.services.pipeline.ingest import IngestionPipeline
from corpus.services.pipeline.integrity import IntegrityChecker, ReportCache
from corpus.services.pipeline.orchestrator import PipelineOrchestrator, build_orchestrator
from corpus.services.pipeline.refiner import DocumentRefinementBackend, Refiner
from corpus.services.pipeline.types import (
    IngestSummary,
    IntegrityReport,
    ProcessingResult,
    ReprocessProgress,
    ReprocessSummary,
)

__all__ = [
    "DocumentRefinementBackend",
    "IngestSummary",
    "IngestionPipeline",
    "IntegrityChecker",
    "IntegrityReport",
    "PipelineOrchestrator",
    "ProcessingResult",
    "Refiner",
    "ReportCache",
    "ReprocessProgress",
    "ReprocessSummary",
    "build_orchestrator",
]
