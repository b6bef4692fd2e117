"""Error taxonomy for the extraction pipeline.

Synchronous precondition failures (ValidationError, StateError) are raised.
Chunk and batch failures are carried as values on ChunkExtraction and
MaterializationResult so callers handle them explicitly.
"""

from __future__ import annotations


class ExtractionError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(ExtractionError):
    """Malformed input: empty or oversized text, bad chunk size, unknown provider."""


class StateError(ExtractionError):
    """Operation is invalid for the current job or candidate status."""


class NotFoundError(StateError):
    """Referenced job, candidate, match, or entity does not exist."""


class PersistenceError(ExtractionError):
    """The storage layer rejected a read or write."""


class ProviderError(ExtractionError):
    """A generative-text provider call failed."""

    def __init__(
        self, message: str, *, transient: bool = False, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class MalformedResponseError(ProviderError):
    """Provider answered, but the payload could not be parsed into entities."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class ChunkFailure(ExtractionError):
    """A chunk whose extraction exhausted its retries."""

    def __init__(
        self, chunk_index: int, reason: str, *, transient: bool = False, attempts: int = 0
    ) -> None:
        super().__init__(f"Chunk {chunk_index} failed after {attempts} attempt(s): {reason}")
        self.chunk_index = chunk_index
        self.reason = reason
        self.transient = transient
        self.attempts = attempts


class MaterializationError(ExtractionError):
    """A batch materialization was rolled back; names the offending candidate."""

    def __init__(self, candidate_id: int | None, reason: str) -> None:
        target = f"candidate {candidate_id}" if candidate_id is not None else "batch"
        super().__init__(f"Materialization failed for {target}: {reason}")
        self.candidate_id = candidate_id
        self.reason = reason

    def to_dict(self) -> dict[str, object]:
        return {"candidate_id": self.candidate_id, "reason": self.reason}
