"""Extraction job lifecycle: validate, estimate, run chunks, detect duplicates, finish.

Each started job runs on its own background thread. Chunks of a job are extracted
on a bounded thread pool; a cancel request is observed before every dispatch so the
chunk already in flight finishes but no new chunk starts. Duplicate detection runs
once, after every chunk has been extracted and persisted.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from saga_extraction.errors import (
    ChunkFailure,
    ExtractionError,
    PersistenceError,
    StateError,
    ValidationError,
)
from saga_extraction.extraction.cost_estimator import CostEstimator
from saga_extraction.extraction.llm_extractor import ExtractionClient
from saga_extraction.extraction.models import CandidateDraft
from saga_extraction.extraction.quality import assess_quality
from saga_extraction.ingestion.chunker import Chunk, TextChunker
from saga_extraction.normalization.duplicate_detector import DuplicateDetector
from saga_extraction.storage.candidate_store import CandidateStore
from saga_extraction.storage.schemas import (
    CollectionSummary,
    CostEstimate,
    ExtractedEntityCandidate,
    JobProgress,
    JobStatus,
    SourceType,
)
from saga_extraction.utils.config import SUPPORTED_PROVIDERS, Config

DEFAULT_MODELS = {
    "openai": "gpt-4.1-mini",
    "anthropic": "claude-3-5-sonnet-20241022",
}


class JobOptions(BaseModel):
    """Per-job overrides of the configured defaults."""

    chunk_size: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    source_type: SourceType = SourceType.MANUAL
    max_workers: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StartResult(BaseModel):
    """Returned synchronously by ``JobManager.start``."""

    job_id: int
    estimate: CostEstimate


class _ResolvedOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_size: int
    provider: str
    model: str
    max_workers: int


class ChunkProgress:
    """Lightweight chunk progress tracker with heartbeat logging."""

    def __init__(self, job_id: int, total_chunks: int, heartbeat_seconds: float = 15.0) -> None:
        self.job_id = job_id
        self.total_chunks = max(0, total_chunks)
        self.heartbeat_seconds = heartbeat_seconds
        self.done = 0
        self._start = time.time()
        self._last_log = 0.0
        self._lock = threading.Lock()

    def update(self, increment: int = 1) -> None:
        with self._lock:
            self.done = min(self.done + increment, self.total_chunks)
            now = time.time()
            elapsed = max(now - self._start, 1e-6)
            rate = self.done / elapsed

            should_log = (
                self.done == self.total_chunks
                or self._last_log == 0
                or (now - self._last_log) >= self.heartbeat_seconds
            )
            if should_log:
                percent = (self.done / max(self.total_chunks, 1)) * 100
                logger.info(
                    "Job {} extraction: {}/{} chunks ({:.0f}%), {:.2f} chunks/s",
                    self.job_id,
                    self.done,
                    self.total_chunks,
                    percent,
                    rate,
                )
                self._last_log = now


class _JobHandle:
    def __init__(self) -> None:
        self.cancel_event = threading.Event()
        self.finished = threading.Event()
        self.thread: threading.Thread | None = None


class JobManager:
    """Own the extraction job state machine and sequence the pipeline stages.

    Example:
        >>> manager = JobManager(store, config=config)
        >>> started = manager.start(text, target_collection_id=1, requester_id=7)
        >>> manager.wait(started.job_id, timeout=300).status
    """

    def __init__(
        self,
        store: CandidateStore,
        *,
        config: Config | None = None,
        chunker: TextChunker | None = None,
        extraction_client: ExtractionClient | None = None,
        detector: DuplicateDetector | None = None,
        estimator: CostEstimator | None = None,
        background: bool = True,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.chunker = chunker or TextChunker(self.config.chunking)
        self.extraction_client = extraction_client or ExtractionClient(
            self.config.extraction,
            self.config.pricing,
            api_keys={
                "openai": self.config.openai_api_key,
                "anthropic": self.config.anthropic_api_key,
            },
        )
        self.detector = detector or DuplicateDetector(self.config.duplicates)
        self.estimator = estimator or CostEstimator(self.config.pricing, self.chunker)
        self.background = background

        self._handles: Dict[int, _JobHandle] = {}
        self._lock = threading.Lock()

    # -----------------------
    # Public API
    # -----------------------
    def estimate(self, text: str, options: JobOptions | None = None) -> CostEstimate:
        """Validate the request and return the pre-flight estimate without creating a job."""
        resolved = self._resolve_options(options or JobOptions())
        self._validate(text, resolved)
        return self.estimator.estimate(
            text, resolved.chunk_size, provider=resolved.provider, model=resolved.model
        )

    def start(
        self,
        text: str,
        target_collection_id: int,
        requester_id: int,
        options: JobOptions | None = None,
    ) -> StartResult:
        """Create a pending job and begin processing it.

        Raises:
            ValidationError: If the text, chunk size, or provider is invalid;
                no job is created in that case
        """
        options = options or JobOptions()
        resolved = self._resolve_options(options)
        self._validate(text, resolved)

        chunks = self.chunker.split(text, resolved.chunk_size)
        estimate = self.estimator.estimate(
            text, resolved.chunk_size, provider=resolved.provider, model=resolved.model
        )
        job = self.store.create_job(
            target_collection_id=target_collection_id,
            requester_id=requester_id,
            source_text=text,
            chunk_size=resolved.chunk_size,
            total_chunks=len(chunks),
            provider=resolved.provider,
            model=resolved.model,
            source_type=options.source_type,
            estimated_tokens=estimate.tokens,
            estimated_cost_usd=estimate.cost_usd,
            metadata=options.metadata,
        )

        handle = _JobHandle()
        with self._lock:
            # finished handles are dropped; wait() then falls back to the stored status
            self._handles = {
                key: existing
                for key, existing in self._handles.items()
                if not existing.finished.is_set()
            }
            self._handles[job.id] = handle

        logger.info(
            "Starting extraction job {}: {} chunks, estimated {} tokens (${})",
            job.id,
            len(chunks),
            estimate.tokens,
            estimate.cost_usd,
        )

        if self.background:
            handle.thread = threading.Thread(
                target=self._run_job,
                args=(job.id, chunks, resolved, handle),
                name=f"extraction-job-{job.id}",
                daemon=True,
            )
            handle.thread.start()
        else:
            self._run_job(job.id, chunks, resolved, handle)

        return StartResult(job_id=job.id, estimate=estimate)

    def cancel(self, job_id: int) -> bool:
        """Cancel a pending or processing job.

        Returns False without side effects when the job is already terminal.
        Candidates persisted so far are kept.
        """
        job = self.store.get_job(job_id)
        if job.is_terminal:
            logger.info("Job {} is already {}; cancel ignored", job_id, job.status.value)
            return False

        handle = self._handles.get(job_id)
        if handle is not None:
            handle.cancel_event.set()

        try:
            self.store.transition_job(
                job_id, JobStatus.CANCELLED, expected=(JobStatus.PENDING, JobStatus.PROCESSING)
            )
        except StateError:
            logger.info("Job {} reached a terminal state before cancel", job_id)
            return False

        logger.info("Cancelled extraction job {}", job_id)
        return True

    def get_progress(self, job_id: int) -> JobProgress:
        job = self.store.get_job(job_id)
        return JobProgress(
            job_id=job.id,
            status=job.status,
            processed_chunks=job.processed_chunks,
            total_chunks=job.total_chunks,
            candidates_found=self.store.count_candidates(job_id),
            elapsed_seconds=round(job.elapsed_seconds(), 3),
            error_message=job.error_message,
            actual_tokens=job.actual_tokens,
            actual_cost_usd=job.actual_cost_usd,
        )

    def wait(self, job_id: int, timeout: float | None = None) -> JobProgress:
        """Block until this manager's worker for the job has finished (or timeout)."""
        handle = self._handles.get(job_id)
        if handle is not None:
            handle.finished.wait(timeout)
        return self.get_progress(job_id)

    def collection_summary(self, collection_id: int) -> CollectionSummary:
        return self.store.collection_summary(collection_id)

    def shutdown(self, timeout: float | None = None) -> None:
        """Request cancellation of every running job and wait for the workers."""
        with self._lock:
            handles = list(self._handles.items())
        for job_id, handle in handles:
            if not handle.finished.is_set():
                self.cancel(job_id)
        for _, handle in handles:
            handle.finished.wait(timeout)

    # -----------------------
    # Validation
    # -----------------------
    def _resolve_options(self, options: JobOptions) -> _ResolvedOptions:
        llm = self.config.extraction.llm
        provider = options.provider or llm.provider
        if options.model:
            model = options.model
        elif provider == llm.provider:
            model = llm.model
        else:
            model = DEFAULT_MODELS.get(provider, llm.model)

        return _ResolvedOptions(
            chunk_size=(
                options.chunk_size
                if options.chunk_size is not None
                else self.config.chunking.default_chunk_size
            ),
            provider=provider,
            model=model,
            max_workers=options.max_workers or self.config.pipeline.max_workers,
        )

    def _validate(self, text: str, resolved: _ResolvedOptions) -> None:
        chunking = self.config.chunking
        if not text:
            raise ValidationError("Text is empty")
        if len(text) > chunking.max_text_length:
            raise ValidationError(
                f"Text is {len(text)} characters; the maximum is {chunking.max_text_length}"
            )
        if resolved.chunk_size <= 0:
            raise ValidationError(f"Chunk size must be positive, got {resolved.chunk_size}")
        if not chunking.min_chunk_size <= resolved.chunk_size <= chunking.max_chunk_size:
            raise ValidationError(
                f"Chunk size {resolved.chunk_size} outside "
                f"[{chunking.min_chunk_size}, {chunking.max_chunk_size}]"
            )
        if resolved.provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Unsupported LLM provider: {resolved.provider}")

    # -----------------------
    # Job worker
    # -----------------------
    def _run_job(
        self,
        job_id: int,
        chunks: Sequence[Chunk],
        resolved: _ResolvedOptions,
        handle: _JobHandle,
    ) -> None:
        try:
            try:
                self.store.transition_job(job_id, JobStatus.PROCESSING, expected=(JobStatus.PENDING,))
            except StateError:
                logger.info("Job {} was cancelled before processing started", job_id)
                return

            failure = self._process_chunks(job_id, chunks, resolved, handle)
            if failure is not None:
                self._fail(job_id, str(failure))
                return

            if self._cancel_requested(job_id, handle):
                self.store.sync_job_statistics(job_id)
                logger.info("Job {} cancelled; duplicate detection skipped", job_id)
                return

            self._finalize(job_id, handle)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Extraction job {job_id} crashed")
            self._fail(job_id, f"{type(exc).__name__}: {exc}")
        finally:
            handle.finished.set()

    def _process_chunks(
        self,
        job_id: int,
        chunks: Sequence[Chunk],
        resolved: _ResolvedOptions,
        handle: _JobHandle,
    ) -> ExtractionError | None:
        """Extract chunks on a bounded pool; returns the first chunk-level failure."""
        progress = ChunkProgress(job_id, len(chunks), self.config.pipeline.heartbeat_seconds)
        remaining: Iterator[Chunk] = iter(chunks)
        in_flight: Set[Future[int]] = set()
        failure: ExtractionError | None = None

        with ThreadPoolExecutor(
            max_workers=resolved.max_workers, thread_name_prefix=f"job-{job_id}-chunk"
        ) as executor:
            while True:
                while (
                    len(in_flight) < resolved.max_workers
                    and failure is None
                    and not self._cancel_requested(job_id, handle)
                ):
                    chunk = next(remaining, None)
                    if chunk is None:
                        break
                    in_flight.add(
                        executor.submit(
                            self._process_chunk, job_id, chunk, resolved.provider, resolved.model
                        )
                    )

                if not in_flight:
                    break

                done, in_flight = wait_for_futures(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except (ChunkFailure, PersistenceError) as exc:
                        if failure is None:
                            failure = exc
                        continue
                    progress.update()

        return failure

    def _process_chunk(self, job_id: int, chunk: Chunk, provider: str, model: str) -> int:
        result = self.extraction_client.extract(chunk, provider=provider, model=model)
        # Usage is recorded even for failed chunks: every provider call is billed.
        self.store.record_chunk_usage(
            job_id,
            tokens=result.tokens_used,
            cost=result.cost_usd,
            retries=max(0, result.attempts - 1),
        )
        if result.error is not None:
            raise result.error

        self._persist_candidates(job_id, chunk.index, result.candidates)
        self.store.record_chunk_usage(job_id, tokens=0, cost=Decimal("0"), processed=True)
        return len(result.candidates)

    def _persist_candidates(
        self, job_id: int, chunk_index: int, drafts: List[CandidateDraft]
    ) -> List[ExtractedEntityCandidate]:
        attempts = self.config.pipeline.persist_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self.store.replace_chunk_candidates(job_id, chunk_index, drafts)
            except PersistenceError as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Candidate write failed, retrying",
                    job=job_id,
                    chunk=chunk_index,
                    attempt=attempt,
                    error=str(exc),
                )
        return []

    def _finalize(self, job_id: int, handle: _JobHandle) -> None:
        job = self.store.get_job(job_id)
        candidates = self.store.candidates_for_job(job_id)
        corpus = self.store.corpus_for_collection(job.target_collection_id)

        results = self.detector.detect_job(candidates, corpus)
        if self._cancel_requested(job_id, handle):
            self.store.sync_job_statistics(job_id)
            logger.info("Job {} cancelled during duplicate detection; matches discarded", job_id)
            return

        matches = [match for job_matches in results.values() for match in job_matches]
        if matches:
            self.store.save_matches(matches)

        flagged = 0
        for candidate_id, candidate_matches in results.items():
            target = self.detector.auto_flag_target(candidate_matches)
            if target is None:
                continue
            if self.store.mark_candidate_duplicate(
                candidate_id, target.existing_entity_id, target.similarity_score
            ):
                flagged += 1

        quality = assess_quality(candidates)
        duplicate_stats = self.detector.statistics(results.values())
        self.store.update_job(
            job_id,
            accuracy_score=quality.quality_score,
            job_metadata={
                **job.job_metadata,
                "quality": quality.model_dump(),
                "duplicates": {**duplicate_stats, "auto_flagged": flagged},
            },
        )
        self.store.sync_job_statistics(job_id)

        try:
            self.store.transition_job(job_id, JobStatus.COMPLETED, expected=(JobStatus.PROCESSING,))
        except StateError:
            logger.info("Job {} was cancelled during duplicate detection", job_id)
            return

        logger.success(
            f"Job {job_id} completed: {len(candidates)} candidates, "
            f"{len(results)} with duplicate matches ({flagged} auto-flagged), "
            f"quality {quality.quality_score}"
        )

    def _fail(self, job_id: int, message: str) -> None:
        try:
            self.store.transition_job(
                job_id, JobStatus.FAILED, expected=(JobStatus.PROCESSING,), error_message=message
            )
            self.store.sync_job_statistics(job_id)
        except ExtractionError as exc:
            logger.warning("Could not mark job failed", job=job_id, error=str(exc))
            return
        logger.error(f"Job {job_id} failed: {message}")

    def _cancel_requested(self, job_id: int, handle: _JobHandle) -> bool:
        if handle.cancel_event.is_set():
            return True
        # Another manager instance may have cancelled the job in the store.
        if self.store.get_job(job_id).status is JobStatus.CANCELLED:
            handle.cancel_event.set()
            return True
        return False
