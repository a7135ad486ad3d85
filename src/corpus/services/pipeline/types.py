from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from corpus.errors import ConsistencyError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ManifestStatus(str, Enum):
    PENDING = "pending"
    REFINING = "refining"
    REFINED = "refined"
    INGESTING = "ingesting"
    INGESTED = "ingested"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[ManifestStatus, frozenset[ManifestStatus]] = {
    ManifestStatus.PENDING: frozenset({ManifestStatus.REFINING}),
    ManifestStatus.REFINING: frozenset({ManifestStatus.REFINING, ManifestStatus.REFINED}),
    ManifestStatus.REFINED: frozenset({ManifestStatus.REFINING, ManifestStatus.INGESTING}),
    ManifestStatus.INGESTING: frozenset(
        {ManifestStatus.INGESTING, ManifestStatus.INGESTED, ManifestStatus.REFINING}
    ),
    ManifestStatus.INGESTED: frozenset({ManifestStatus.REFINING, ManifestStatus.INGESTING}),
    ManifestStatus.ERROR: frozenset({ManifestStatus.REFINING, ManifestStatus.INGESTING}),
}


def can_transition(current: ManifestStatus, target: ManifestStatus) -> bool:
    # error is reachable from every state and is never terminal
    if target is ManifestStatus.ERROR:
        return True
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class SourceFile:
    document_id: str
    filename: str
    fingerprint: str
    size: int
    modified_ns: int


@dataclass(frozen=True)
class ManifestEntry:
    document_id: str
    filename: str
    fingerprint: str
    size: int
    discovered_at: datetime
    status: ManifestStatus = ManifestStatus.PENDING
    refined_fingerprint: str | None = None
    refined_file: str | None = None
    refined_hash: str | None = None
    ingested_fingerprint: str | None = None
    error: str | None = None
    error_kind: str | None = None
    updated_at: datetime = field(default_factory=utc_now)
    removed_at: datetime | None = None

    @classmethod
    def discovered(cls, source: SourceFile) -> ManifestEntry:
        now = utc_now()
        return cls(
            document_id=source.document_id,
            filename=source.filename,
            fingerprint=source.fingerprint,
            size=source.size,
            discovered_at=now,
            updated_at=now,
        )

    @property
    def is_consistent(self) -> bool:
        return self.ingested_fingerprint is None or (
            self.ingested_fingerprint == self.refined_fingerprint
        )

    def transition(self, status: ManifestStatus, **changes: Any) -> ManifestEntry:
        if not can_transition(self.status, status):
            raise ConsistencyError(
                f"invalid status transition for {self.document_id}: "
                f"{self.status.value} -> {status.value}"
            )
        if status is not ManifestStatus.ERROR:
            changes.setdefault("error", None)
            changes.setdefault("error_kind", None)
        return replace(self, status=status, updated_at=utc_now(), **changes)

    def failed(self, message: str, kind: str) -> ManifestEntry:
        return self.transition(ManifestStatus.ERROR, error=message, error_kind=kind)


@dataclass(frozen=True)
class ChunkRecord:
    chunk_id: str
    document_id: str
    ordinal: int
    source_path: str
    text: str
    fingerprint: str
    embedding: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class RefineOutcome:
    document_id: str
    filename: str
    status: str
    refined_file: str | None = None
    error: str | None = None
    error_kind: str | None = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class ProcessingResult:
    document_id: str
    filename: str
    status: str
    refined_file: str | None = None
    error: str | None = None
    error_kind: str | None = None
    chunks: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IngestSummary:
    success: int
    total: int
    results: list[ProcessingResult]
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "cancelled": self.cancelled,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True)
class ReprocessSummary:
    success: int
    total: int
    results: list[ProcessingResult]
    removed: list[ProcessingResult] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "cancelled": self.cancelled,
            "results": [result.to_dict() for result in self.results],
            "removed": [result.to_dict() for result in self.removed],
        }


@dataclass(frozen=True)
class IntegrityReport:
    missing_refinement: list[str]
    missing_ingestion: list[str]
    orphaned: list[str]
    healthy: list[str]
    inconsistent: list[str]
    filenames: dict[str, str]
    checked_at: datetime
    source_files: int
    manifest_entries: int
    stored_documents: int
    source_signature: str

    @property
    def is_healthy(self) -> bool:
        return not (self.missing_refinement or self.missing_ingestion or self.orphaned)

    def to_dict(self) -> dict[str, Any]:
        return {
            "missing_refinement": list(self.missing_refinement),
            "missing_ingestion": list(self.missing_ingestion),
            "orphaned": list(self.orphaned),
            "healthy": list(self.healthy),
            "inconsistent": list(self.inconsistent),
            "filenames": dict(self.filenames),
            "checked_at": self.checked_at.isoformat(),
            "source_files": self.source_files,
            "manifest_entries": self.manifest_entries,
            "stored_documents": self.stored_documents,
        }


@dataclass(frozen=True)
class ReprocessProgress:
    running: bool = False
    phase: str = "idle"
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    current_file: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat() if self.started_at else None
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return payload
