from __future__ import annotations

import os
from pathlib import Path
import re
from typing import Protocol

import structlog

from corpus.errors import ConversionError, SourceNotFoundError
from corpus.llm import LLMClient, LLMClientError
from corpus.services.pipeline.extractors import extract_text, needs_structuring
from corpus.services.pipeline.locks import DocumentLockArena
from corpus.services.pipeline.manifest_store import ManifestStore
from corpus.services.pipeline.scanner import (
    SourceScanner,
    compute_file_hash,
    compute_hash,
    document_id_for,
)
from corpus.services.pipeline.types import (
    ManifestEntry,
    ManifestStatus,
    RefineOutcome,
    SourceFile,
)

logger = structlog.get_logger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
_SECTION_BOUNDARY = re.compile(r"(?=\[Slide \d+\])|\n{3,}")


class RefinementBackend(Protocol):
    def convert(self, *, filename: str, content: bytes) -> str: ...


def split_into_sections(text: str, *, max_chars: int) -> list[str]:
    sections: list[str] = []
    current = ""
    for part in _SECTION_BOUNDARY.split(text):
        if current and len(current) + len(part) > max_chars:
            sections.append(current.strip())
            current = ""
        current += part
    if current.strip():
        sections.append(current.strip())

    # a single boundary-free block larger than the limit is cut hard
    bounded: list[str] = []
    for section in sections:
        if len(section) <= max_chars:
            bounded.append(section)
            continue
        bounded.extend(
            section[start : start + max_chars] for start in range(0, len(section), max_chars)
        )
    return [section for section in bounded if section.strip()]


class DocumentRefinementBackend:
    """Extracts text per format, then optionally lets an LLM restructure it as Markdown."""

    def __init__(self, *, structurer: LLMClient | None = None, max_section_chars: int = 60000) -> None:
        self._structurer = structurer
        self._max_section_chars = max_section_chars

    def convert(self, *, filename: str, content: bytes) -> str:
        text = extract_text(filename, content).strip()
        if not text:
            raise ConversionError(f"no text could be extracted from {filename}")

        if self._structurer is None or not needs_structuring(filename):
            return text

        sections = split_into_sections(text, max_chars=self._max_section_chars)
        if len(sections) > 1:
            logger.info("refine_sectioned", filename=filename, sections=len(sections), chars=len(text))

        structured: list[str] = []
        for section in sections:
            try:
                structured.append(self._structurer.structure_markdown(section))
            except LLMClientError as exc:
                raise ConversionError(f"structuring failed for {filename}: {exc}") from exc
        return SECTION_SEPARATOR.join(structured)


def derivative_name(filename: str) -> str:
    return f"{filename}.md"


def _write_atomically(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f"{target.name}.tmp")
    try:
        tmp_path.write_bytes(data)
        os.replace(tmp_path, target)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class Refiner:
    def __init__(
        self,
        *,
        scanner: SourceScanner,
        manifest: ManifestStore,
        refined_dir: Path,
        backend: RefinementBackend,
        locks: DocumentLockArena,
    ) -> None:
        self._scanner = scanner
        self._manifest = manifest
        self._refined_dir = refined_dir
        self._backend = backend
        self._locks = locks

    @property
    def refined_dir(self) -> Path:
        return self._refined_dir

    def derivative_path(self, refined_file: str) -> Path:
        return self._refined_dir / refined_file

    def refine(self, filename: str) -> RefineOutcome:
        """Produce the Markdown derivative for one source file.

        Raises InputError for an invalid or missing filename before anything
        is mutated. Conversion problems are recorded on the manifest entry and
        reported as a failed outcome.
        """
        normalized = self._scanner.validate_filename(filename)
        path = self._scanner.path_for(normalized)
        document_id = document_id_for(normalized)

        with self._locks.hold(document_id):
            try:
                content = path.read_bytes()
                modified_ns = path.stat().st_mtime_ns
            except (FileNotFoundError, IsADirectoryError) as exc:
                raise SourceNotFoundError(f"source file not found: {normalized}") from exc
            source = SourceFile(
                document_id=document_id,
                filename=normalized,
                fingerprint=compute_hash(content),
                size=len(content),
                modified_ns=modified_ns,
            )
            entry = self._manifest.get(source.document_id) or ManifestEntry.discovered(source)

            if self._is_current(entry, source):
                if entry.status is ManifestStatus.REFINING:
                    entry = entry.transition(ManifestStatus.REFINED)
                    self._manifest.upsert(entry)
                logger.debug("refine_skipped", filename=source.filename, document_id=source.document_id)
                return RefineOutcome(
                    document_id=source.document_id,
                    filename=source.filename,
                    status="success",
                    refined_file=entry.refined_file,
                    changed=False,
                )

            previous = entry
            entry = entry.transition(
                ManifestStatus.REFINING,
                filename=source.filename,
                fingerprint=source.fingerprint,
                size=source.size,
            )
            self._manifest.upsert(entry)

            try:
                markdown = self._convert(source.filename, content)
                if not markdown.strip():
                    raise ConversionError(f"conversion produced no text for {source.filename}")
                data = markdown.encode("utf-8")
                refined_file = derivative_name(source.filename)
                try:
                    _write_atomically(self.derivative_path(refined_file), data)
                except OSError as exc:
                    raise ConversionError(f"failed to write derivative: {exc}") from exc
            except ConversionError as exc:
                self._manifest.upsert(entry.failed(exc.message, exc.kind))
                logger.warning(
                    "refine_failed",
                    filename=source.filename,
                    document_id=source.document_id,
                    error=exc.message,
                )
                return RefineOutcome(
                    document_id=source.document_id,
                    filename=source.filename,
                    status="failure",
                    refined_file=previous.refined_file,
                    error=exc.message,
                    error_kind=exc.kind,
                    changed=False,
                )

            refined_hash = compute_hash(data)
            keeps_ingestion = (
                previous.is_consistent
                and previous.refined_fingerprint == source.fingerprint
                and previous.refined_hash == refined_hash
            )
            entry = entry.transition(
                ManifestStatus.REFINED,
                refined_fingerprint=source.fingerprint,
                refined_file=refined_file,
                refined_hash=refined_hash,
                ingested_fingerprint=previous.ingested_fingerprint if keeps_ingestion else None,
            )
            self._manifest.upsert(entry)
            logger.info(
                "refine_completed",
                filename=source.filename,
                document_id=source.document_id,
                refined_file=refined_file,
                chars=len(markdown),
            )
            return RefineOutcome(
                document_id=source.document_id,
                filename=source.filename,
                status="success",
                refined_file=refined_file,
                changed=True,
            )

    def _convert(self, filename: str, content: bytes) -> str:
        try:
            return self._backend.convert(filename=filename, content=content)
        except ConversionError:
            raise
        except Exception as exc:
            logger.exception("refine_backend_crashed", filename=filename)
            raise ConversionError(
                f"conversion failed for {filename}: {type(exc).__name__}: {exc}"
            ) from exc

    def _is_current(self, entry: ManifestEntry, source: SourceFile) -> bool:
        if entry.refined_fingerprint != source.fingerprint or not entry.refined_file:
            return False
        if not entry.is_consistent:
            return False
        path = self.derivative_path(entry.refined_file)
        if not path.is_file():
            return False
        return compute_file_hash(path) == entry.refined_hash
