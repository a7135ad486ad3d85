from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock, RLock


class DocumentLockArena:
    """One reentrant lock per document id.

    Reentrant so the orchestrator can hold a document while calling the
    refiner and the ingestion pipeline, which acquire the same lock.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, RLock] = {}

    def _lock_for(self, document_id: str) -> RLock:
        with self._guard:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = RLock()
                self._locks[document_id] = lock
            return lock

    @contextmanager
    def hold(self, document_id: str) -> Iterator[None]:
        lock = self._lock_for(document_id)
        with lock:
            yield
