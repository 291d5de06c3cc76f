#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Batch generation controller.

Splits the product list into fixed-size chunks, sends them to the generator one
at a time, merges each chunk's results into the session by sku, and settles the
job as completed, stopped, quota_exceeded or failed. Stopped and quota-limited
jobs can be resumed without re-requesting products that already have results.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from meta_generation import BatchOutcome, GenerationFailed, MetaGenerator, QuotaExceeded, default_instructions
from product_records import ProcessedRecord, Record
from session_store import SessionSnapshot, SessionStore
from seo_utils import get_logger

logger = get_logger("orchestrator")

CHUNK_SIZE = 15

NO_DATA_MESSAGE = "No product data to process. Please upload a valid CSV or Excel file."
ALL_DONE_MESSAGE = "✓ All products have been processed!"
STOPPED_MESSAGE = "Generation stopped. Ready to resume."


def progress_message(processed: int, total: int) -> str:
    return f"Processing... ({processed} of {total} products)"

def completed_message(total: int, tokens: int) -> str:
    return f"✓ Generation complete for {total} products! Tokens used: {tokens:,}"

def quota_message(processed: int, total: int) -> str:
    return (f"Daily token limit reached. {processed} of {total} products were processed. "
            "You can download the partial results now or resume later when your quota is reset (midnight UTC).")

def chunked(records: Sequence[Record], size: int) -> List[List[Record]]:
    """Split records into consecutive chunks of at most ``size``."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.STOPPED, JobState.QUOTA_EXCEEDED, JobState.FAILED)


class JobAlreadyRunning(RuntimeError):
    pass


class CancellationToken:
    """Cooperative stop flag. Checked by the orchestrator between chunks only."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class InstructionSettings:
    """User-editable instruction text sent with every generation call."""

    def __init__(self, default: Optional[str] = None):
        self.default = default if default is not None else default_instructions()
        self.text = self.default

    def update(self, text: str) -> None:
        self.text = str(text)

    def reset(self) -> None:
        self.text = self.default

    @property
    def is_default(self) -> bool:
        return self.text == self.default


@dataclass
class JobUpdate:
    state: JobState
    processed: int
    total: int
    message: str
    tokens_used: int = 0

    @property
    def progress(self) -> float:
        return (self.processed / self.total) if self.total else 0.0


@dataclass
class JobResult:
    state: JobState
    message: str
    processed: int
    total: int
    tokens_used: int = 0
    resumable: bool = False
    skipped: int = 0
    calls: int = 0


@dataclass
class Job:
    """One run of the orchestrator, from start/resume until it settles."""
    records: List[Record]
    chunk_size: int
    cancel: CancellationToken
    tokens_used: int = 0
    calls: int = 0
    state: JobState = JobState.RUNNING
    in_flight: FrozenSet[str] = field(default_factory=frozenset)


class MetaSession:
    """
    Working state for one uploaded file: the original records (never reordered),
    the processed records derived from them, and the user-facing status.
    """

    def __init__(self, store: Optional[SessionStore] = None):
        self.store = store
        self.file_name = ""
        self.original_records: List[Record] = []
        self.processed_records: List[ProcessedRecord] = []
        self.resumable = False
        self.progress = 0.0
        self.message: Optional[str] = None
        self.error: Optional[str] = None
        self.lock = threading.RLock()

    @property
    def total(self) -> int:
        return len(self.original_records)

    @property
    def processed_count(self) -> int:
        return len(self.processed_records)

    def load_records(self, file_name: str, records: Sequence[Record]) -> None:
        """A new upload replaces everything, including any saved session."""
        with self.lock:
            if self.store is not None:
                self.store.clear()
            self.file_name = file_name
            self.original_records = list(records)
            self.processed_records = []
            self.resumable = False
            self.progress = 0.0
            self.message = None
            self.error = None

    def restore(self, snapshot: SessionSnapshot) -> None:
        with self.lock:
            self.file_name = snapshot.file_name
            self.original_records = list(snapshot.original_records)
            by_key = {p.key: p.generated for p in snapshot.processed_records}
            self.processed_records = [ProcessedRecord(r, dict(by_key[r.key]))
                                      for r in self.original_records if r.key and r.key in by_key]
            self.resumable = snapshot.resumable
            self.progress = (self.processed_count / self.total) if self.total else 0.0
            self.message = None
            self.error = quota_message(self.processed_count, self.total) if snapshot.resumable else None

    def snapshot(self, resumable: Optional[bool] = None) -> SessionSnapshot:
        with self.lock:
            return SessionSnapshot(
                file_name=self.file_name,
                original_records=list(self.original_records),
                processed_records=list(self.processed_records),
                resumable=self.resumable if resumable is None else resumable,
            )

    def persist(self, resumable: Optional[bool] = None) -> None:
        if self.store is not None and self.original_records:
            self.store.save(self.snapshot(resumable))

    def find(self, key: str) -> Optional[ProcessedRecord]:
        with self.lock:
            for p in self.processed_records:
                if p.key == key:
                    return p
        return None

    def processed_keys(self) -> set:
        with self.lock:
            return {p.key for p in self.processed_records}

    def merge(self, generated_by_key: Mapping[str, Mapping[str, str]]) -> None:
        """
        Last-write-wins merge by key, then re-derive the processed view from the
        original order. Keys with no original record are dropped.
        """
        with self.lock:
            merged: Dict[str, Dict[str, str]] = {p.key: p.generated for p in self.processed_records}
            for key, values in generated_by_key.items():
                if key:
                    merged[key] = dict(values)
            self.processed_records = [ProcessedRecord(r, dict(merged[r.key]))
                                      for r in self.original_records if r.key and r.key in merged]

    def update_generated(self, key: str, values: Mapping[str, str]) -> bool:
        """Overwrite some generated fields of one key. Returns True if anything changed."""
        with self.lock:
            changed = False
            updated = []
            for p in self.processed_records:
                if p.key == key and any(p.generated.get(k) != v for k, v in values.items()):
                    p = p.with_generated(values)
                    changed = True
                updated.append(p)
            self.processed_records = updated
            return changed


UpdateCallback = Callable[[JobUpdate], None]


class BatchOrchestrator:
    """Drives chunked generation for a MetaSession. One job at a time."""

    retry_wait = wait_exponential(1, 1, 60)

    def __init__(self, generator: MetaGenerator, session: MetaSession,
                 chunk_size: int = CHUNK_SIZE,
                 chunk_retries: int = 0,
                 on_update: Optional[UpdateCallback] = None):
        if chunk_size < 1:
            raise ValueError("chunk size must be at least 1")
        self.generator = generator
        self.session = session
        self.chunk_size = chunk_size
        self.chunk_retries = chunk_retries
        self.on_update = on_update
        self.job: Optional[Job] = None
        self._state = JobState.IDLE

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is JobState.RUNNING

    def owns(self, key: str) -> bool:
        """True while ``key`` is part of the chunk currently awaiting the service."""
        job = self.job
        return bool(job and job.state is JobState.RUNNING and key in job.in_flight)

    def stop(self) -> None:
        if self.job is not None and self.running:
            logger.info("Stop requested; finishing the current chunk")
            self.job.cancel.cancel()

    async def start(self, instructions: str, records: Optional[Sequence[Record]] = None,
                    cancel: Optional[CancellationToken] = None) -> JobResult:
        """Fresh run: wipes processed results and generates for every record."""
        self._claim()
        if not self.session.original_records:
            self.session.error = NO_DATA_MESSAGE
            return self._settle(Job([], self.chunk_size, cancel or CancellationToken()),
                                JobState.FAILED, NO_DATA_MESSAGE)
        with self.session.lock:
            self.session.processed_records = []
            self.session.progress = 0.0
        todo = list(records) if records is not None else list(self.session.original_records)
        return await self._run(todo, instructions, cancel)

    async def resume(self, instructions: str, cancel: Optional[CancellationToken] = None) -> JobResult:
        """Generate only for original records whose key has no processed result yet."""
        self._claim()
        done = self.session.processed_keys()
        remaining = [r for r in self.session.original_records if r.key not in done]
        logger.info(f"Resuming: {len(done)} done, {len(remaining)} remaining")
        return await self._run(remaining, instructions, cancel)

    def _claim(self) -> None:
        if self.running:
            raise JobAlreadyRunning("A generation job is already running.")
        self._state = JobState.RUNNING

    def _notify(self, job: Job, message: str) -> None:
        self.session.message = message
        if self.on_update is not None:
            self.on_update(JobUpdate(job.state, self.session.processed_count, self.session.total,
                                     message, job.tokens_used))

    async def _dispatch(self, chunk: List[Record], instructions: str) -> BatchOutcome:
        if not self.chunk_retries:
            return await self.generator.generate_batch(chunk, instructions)
        async for attempt in AsyncRetrying(
                reraise=True, stop=stop_after_attempt(self.chunk_retries + 1),
                wait=self.retry_wait, retry=retry_if_exception_type(GenerationFailed),
                before_sleep=before_sleep_log(logger, logging.WARNING)):
            with attempt:
                outcome = await self.generator.generate_batch(chunk, instructions)
        return outcome

    async def _run(self, records: List[Record], instructions: str,
                   cancel: Optional[CancellationToken]) -> JobResult:
        cancel = cancel or CancellationToken()
        cancel.reset()

        keyed = [r for r in records if r.key]
        skipped = len(records) - len(keyed)
        if skipped:
            logger.warning(f"Skipping {skipped} record(s) with an empty sku")

        job = Job(keyed, self.chunk_size, cancel)
        self.job = job
        with self.session.lock:
            self.session.resumable = False
            self.session.error = None

        if not keyed:
            return self._settle(job, JobState.COMPLETED, ALL_DONE_MESSAGE, skipped=skipped)

        chunks = chunked(keyed, self.chunk_size)
        total = self.session.total
        self._notify(job, progress_message(self.session.processed_count, total))

        try:
            for i, chunk in enumerate(chunks):
                if cancel.cancelled:
                    logger.info(f"Cancelled before chunk {i + 1}/{len(chunks)}")
                    return self._settle(job, JobState.STOPPED, STOPPED_MESSAGE, skipped=skipped)

                job.in_flight = frozenset(r.key for r in chunk)
                logger.info(f"Chunk {i + 1}/{len(chunks)}: sending {len(chunk)} products")
                job.calls += 1
                outcome = await self._dispatch(chunk, instructions)
                job.tokens_used += outcome.tokens_used

                self.session.merge(outcome.results)
                job.in_flight = frozenset()
                processed = self.session.processed_count
                self.session.progress = (processed / total) if total else 0.0
                self.session.persist(resumable=(i < len(chunks) - 1))
                logger.info(f"Chunk {i + 1}/{len(chunks)} merged ({outcome.tokens_used} tokens); "
                            f"{processed}/{total} processed")
                self._notify(job, progress_message(processed, total))

        except QuotaExceeded as e:
            logger.warning(f"Quota exhausted: {e.detail}")
            message = quota_message(self.session.processed_count, total)
            self.session.error = message
            return self._settle(job, JobState.QUOTA_EXCEEDED, message, skipped=skipped)
        except GenerationFailed as e:
            logger.error(f"Generation failed: {e.detail}")
            self.session.error = e.detail
            return self._settle(job, JobState.FAILED, e.detail, skipped=skipped)
        except Exception as e:
            logger.exception("Unexpected error during generation")
            detail = str(e) or e.__class__.__name__
            self.session.error = detail
            return self._settle(job, JobState.FAILED, detail, skipped=skipped)

        return self._settle(job, JobState.COMPLETED, completed_message(total, job.tokens_used), skipped=skipped)

    def _settle(self, job: Job, state: JobState, message: str, skipped: int = 0) -> JobResult:
        resumable = state in (JobState.STOPPED, JobState.QUOTA_EXCEEDED)
        job.state = state
        job.in_flight = frozenset()
        self._state = state
        with self.session.lock:
            self.session.resumable = resumable
            if state is JobState.COMPLETED:
                self.session.error = None
        self.session.persist(resumable=resumable)
        self._notify(job, message)
        logger.info(f"Job settled: {state.value} ({self.session.processed_count}/{self.session.total})")
        return JobResult(state=state, message=message, processed=self.session.processed_count,
                         total=self.session.total, tokens_used=job.tokens_used, resumable=resumable,
                         skipped=skipped, calls=job.calls)
