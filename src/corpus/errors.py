"""Error taxonomy for the corpus pipeline.

Every error carries a machine-readable ``kind`` next to its human-readable
message so results can be serialized without inspecting exception types:

    PipelineError
    +-- InputError                (bad filename / document id, nothing mutated)
    |   +-- SourceNotFoundError   (well-formed filename, no such source file)
    +-- ConversionError           (refinement failed for one document)
    +-- EmbeddingError            (embedding backend failed or timed out)
    +-- ConsistencyError          (manifest/store invariant violated)
    +-- StoreUnavailableError     (manifest or corpus store unreachable)
    +-- ReprocessInProgressError  (a full sweep is already running)

Per-document kinds (conversion, embedding, consistency) are captured into
that document's result. The others propagate to the caller.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    kind = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputError(PipelineError):
    kind = "input"


class SourceNotFoundError(InputError):
    pass


class ConversionError(PipelineError):
    kind = "conversion"


class EmbeddingError(PipelineError):
    kind = "embedding"


class ConsistencyError(PipelineError):
    kind = "consistency"


class StoreUnavailableError(PipelineError):
    kind = "store_unavailable"


class ReprocessInProgressError(PipelineError):
    kind = "conflict"


PER_DOCUMENT_ERRORS = (ConversionError, EmbeddingError, ConsistencyError)
