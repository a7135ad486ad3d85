from __future__ import annotations

from array import array
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import sqlite3
from threading import Lock

from corpus.errors import StoreUnavailableError
from corpus.services.pipeline.types import ChunkRecord


@dataclass(frozen=True)
class StoredDocument:
    document_id: str
    source_path: str
    fingerprint: str
    chunk_count: int


@dataclass(frozen=True)
class StoredChunk:
    chunk_id: str
    document_id: str
    ordinal: int
    source_path: str
    text: str
    fingerprint: str
    embedding: list[float]


def _encode_embedding(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _ensure_schema(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        PRAGMA journal_mode = WAL;

        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            source_path TEXT NOT NULL,
            fingerprint TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS chunks (
            id TEXT PRIMARY KEY,
            doc_id TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            text TEXT NOT NULL,
            token_count INTEGER,
            fingerprint TEXT NOT NULL,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (doc_id) REFERENCES documents(id) ON DELETE CASCADE,
            UNIQUE (doc_id, chunk_index)
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_doc_id ON chunks(doc_id);
        CREATE INDEX IF NOT EXISTS idx_documents_source_path ON documents(source_path);
        """
    )


class CorpusStore:
    """Chunk store backed by a local SQLite file.

    A document's chunk set only ever changes inside one transaction, so a
    reader sees either the previous set or the new one, never a mix.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._write_lock = Lock()
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            connection = sqlite3.connect(self._db_path, timeout=30.0)
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"corpus store unavailable: {exc}") from exc

        try:
            connection.execute("PRAGMA foreign_keys = ON")
            if not self._schema_ready:
                _ensure_schema(connection)
                self._schema_ready = True
            yield connection
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"corpus store unavailable: {exc}") from exc
        finally:
            connection.close()

    def replace_chunks(self, document_id: str, chunks: list[ChunkRecord]) -> int:
        """Swap in a document's full chunk set; returns the number of chunks written."""
        for chunk in chunks:
            if chunk.document_id != document_id:
                raise ValueError(
                    f"chunk {chunk.chunk_id} belongs to {chunk.document_id}, not {document_id}"
                )
            if not chunk.embedding:
                raise ValueError(f"chunk {chunk.chunk_id} has no embedding")

        source_path = chunks[0].source_path if chunks else ""
        fingerprint = chunks[0].fingerprint if chunks else ""

        with self._write_lock, self._connect() as connection:
            with connection:
                connection.execute("DELETE FROM chunks WHERE doc_id = ?", (document_id,))
                connection.execute("DELETE FROM documents WHERE id = ?", (document_id,))
                if not chunks:
                    return 0

                connection.execute(
                    "INSERT INTO documents (id, source_path, fingerprint) VALUES (?, ?, ?)",
                    (document_id, source_path, fingerprint),
                )
                connection.executemany(
                    """
                    INSERT INTO chunks (
                        id, doc_id, chunk_index, text, token_count, fingerprint,
                        embedding, embedding_dim
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            chunk.chunk_id,
                            document_id,
                            chunk.ordinal,
                            chunk.text,
                            len(chunk.text.split()),
                            chunk.fingerprint,
                            sqlite3.Binary(_encode_embedding(chunk.embedding)),
                            len(chunk.embedding),
                        )
                        for chunk in chunks
                    ],
                )
        return len(chunks)

    def delete_chunks_for_document(self, document_id: str) -> int:
        with self._write_lock, self._connect() as connection:
            with connection:
                deleted = connection.execute(
                    "DELETE FROM chunks WHERE doc_id = ?", (document_id,)
                ).rowcount
                connection.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return deleted

    def load_chunks(self, document_id: str | None = None) -> list[StoredChunk]:
        query = """
            SELECT c.id, c.doc_id, c.chunk_index, d.source_path, c.text, c.fingerprint,
                   c.embedding, c.embedding_dim
            FROM chunks c
            JOIN documents d ON d.id = c.doc_id
        """
        params: tuple[str, ...] = ()
        if document_id is not None:
            query += " WHERE c.doc_id = ?"
            params = (document_id,)
        query += " ORDER BY c.doc_id, c.chunk_index"

        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()

        chunks: list[StoredChunk] = []
        for (
            chunk_id,
            doc_id,
            chunk_index,
            source_path,
            text,
            fingerprint,
            embedding_blob,
            embedding_dim,
        ) in rows:
            embedding = _decode_embedding(embedding_blob)
            if len(embedding) != embedding_dim:
                continue

            chunks.append(
                StoredChunk(
                    chunk_id=chunk_id,
                    document_id=doc_id,
                    ordinal=chunk_index,
                    source_path=source_path,
                    text=text,
                    fingerprint=fingerprint,
                    embedding=embedding,
                )
            )
        return chunks

    def documents(self) -> dict[str, StoredDocument]:
        """Per-document summary of what is stored, keyed by document id."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT d.id, d.source_path, d.fingerprint, COUNT(c.id)
                FROM documents d
                LEFT JOIN chunks c ON c.doc_id = d.id
                GROUP BY d.id, d.source_path, d.fingerprint
                """
            ).fetchall()
        return {
            document_id: StoredDocument(
                document_id=document_id,
                source_path=source_path,
                fingerprint=fingerprint,
                chunk_count=int(chunk_count),
            )
            for document_id, source_path, fingerprint, chunk_count in rows
        }

    def document_ids(self) -> set[str]:
        with self._connect() as connection:
            rows = connection.execute("SELECT DISTINCT doc_id FROM chunks").fetchall()
        return {row[0] for row in rows}

    def count_chunks(self, document_id: str | None = None) -> int:
        with self._connect() as connection:
            if document_id is None:
                row = connection.execute("SELECT COUNT(*) FROM chunks").fetchone()
            else:
                row = connection.execute(
                    "SELECT COUNT(*) FROM chunks WHERE doc_id = ?", (document_id,)
                ).fetchone()
        return int(row[0])
