from __future__ import annotations

import hashlib
from pathlib import Path, PurePosixPath

from corpus.errors import InputError, SourceNotFoundError
from corpus.services.pipeline.types import SourceFile

SUPPORTED_EXTENSIONS = {
    ".pdf",
    ".docx",
    ".pptx",
    ".txt",
    ".md",
    ".csv",
    ".json",
    ".msg",
    ".eml",
    ".doc",
    ".urls",
}


def compute_hash(data: bytes | str) -> str:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    return f"sha256:{hashlib.sha256(payload).hexdigest()}"


def compute_file_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(65536), b""):
            digest.update(block)
    return f"sha256:{digest.hexdigest()}"


def document_id_for(filename: str) -> str:
    return hashlib.sha256(filename.encode("utf-8")).hexdigest()[:16]


def _is_control_file(name: str) -> bool:
    return name.startswith(("_", "."))


class SourceScanner:
    """Enumerates the raw source directory.

    Filenames are POSIX paths relative to the source directory. Files whose
    name starts with ``_`` or ``.`` are manifests, logs or editor droppings
    and are never treated as documents.
    """

    def __init__(self, source_dir: Path, supported_extensions: set[str] | None = None) -> None:
        self._source_dir = source_dir
        self._extensions = supported_extensions or SUPPORTED_EXTENSIONS

    @property
    def source_dir(self) -> Path:
        return self._source_dir

    def validate_filename(self, filename: str | None) -> str:
        if filename is None or not str(filename).strip():
            raise InputError("filename is required")

        normalized = str(filename).strip().replace("\\", "/")
        relative = PurePosixPath(normalized)
        if relative.is_absolute() or any(part in {"", ".", ".."} for part in relative.parts):
            raise InputError(f"invalid filename: {filename}")
        if any(_is_control_file(part) for part in relative.parts):
            raise InputError(f"invalid filename: {filename}")
        return relative.as_posix()

    def path_for(self, filename: str) -> Path:
        return self._source_dir / self.validate_filename(filename)

    def _candidate_paths(self) -> list[Path]:
        if not self._source_dir.exists():
            return []
        if not self._source_dir.is_dir():
            raise NotADirectoryError(f"Source path is not a directory: {self._source_dir}")

        return sorted(
            path
            for path in self._source_dir.rglob("*")
            if path.is_file()
            and not any(
                _is_control_file(part) for part in path.relative_to(self._source_dir).parts
            )
        )

    def list_filenames(self) -> list[str]:
        return [path.relative_to(self._source_dir).as_posix() for path in self._candidate_paths()]

    def exists(self, filename: str) -> bool:
        return self.path_for(filename).is_file()

    def stat(self, filename: str) -> SourceFile:
        """Fingerprint one source file; raises InputError if it does not exist."""
        normalized = self.validate_filename(filename)
        path = self._source_dir / normalized
        if not path.is_file():
            raise SourceNotFoundError(f"source file not found: {normalized}")

        stat = path.stat()
        return SourceFile(
            document_id=document_id_for(normalized),
            filename=normalized,
            fingerprint=compute_file_hash(path),
            size=stat.st_size,
            modified_ns=stat.st_mtime_ns,
        )

    def scan(self) -> list[SourceFile]:
        files: list[SourceFile] = []
        for filename in self.list_filenames():
            try:
                files.append(self.stat(filename))
            except (SourceNotFoundError, FileNotFoundError):
                # removed between listing and hashing
                continue
        return files

    def signature(self) -> str:
        """Cheap fingerprint of the directory listing (names, sizes, mtimes)."""
        digest = hashlib.sha256()
        for path in self._candidate_paths():
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            relative = path.relative_to(self._source_dir).as_posix()
            digest.update(f"{relative}\0{stat.st_size}\0{stat.st_mtime_ns}\n".encode("utf-8"))
        return digest.hexdigest()

    def is_supported(self, filename: str) -> bool:
        return PurePosixPath(filename).suffix.lower() in self._extensions
