"""Background polling of submitted generation jobs.

A :class:`PollingWorker` drives one :class:`~cardforge.core.generation_job.GenerationJob`
to a terminal state and persists the outcome.  It runs as an asyncio task
off the request path; the only suspension points are the poll call, the
sleep between polls, and the image downloads on completion.

Attempt Budget
--------------
The worker makes at most ``max_attempts`` polls, sleeping ``poll_interval``
seconds *between* them (never before the first or after the last).  Polls
that raise :class:`~cardforge.core.errors.TransientExternalError` or
:class:`~cardforge.core.errors.DataIntegrityError` consume an attempt and are
retried at the same interval.  A job that never leaves ``processing`` is
timed out after exactly ``max_attempts`` polls, or earlier if the optional
``max_elapsed`` wall-clock ceiling is reached.

Persistence
-----------
While polling, only ``status``, ``progressPercent`` and ``taskId`` of the
current record are touched, so the current record keeps showing the most
recently completed image until a new one is ready.  On completion the new
record is written as a versioned history entry first and then becomes the
current record.

A failed or timed-out attempt never hides completed art: if the key already
has a completed image, the current record returns to the latest completed
version and the attempt's error is kept in ``lastErrorMessage``.  Progress
writes run in a worker thread so the cache file rewrite stays off the event
loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from cardforge.core.cache_store import CacheKind, CacheStore
from cardforge.core.errors import DataIntegrityError, TransientExternalError
from cardforge.core.generation_job import GenerationJob, JobState
from cardforge.core.records import CacheRecord, RecordStatus, utcnow
from cardforge.core.variants import VariantProcessor
from cardforge.services.generation import GenerationBackend

logger = logging.getLogger(__name__)


class PollingWorker:
    """Poll a job to completion and persist the result.

    Args:
        store: Cache store receiving progress and results.
        variants: Variant processor for grids and thumbnails.
        poll_interval: Seconds between two polls.
        max_attempts: Poll attempt ceiling.
        max_elapsed: Optional wall-clock ceiling in seconds.
        sleep: Awaitable sleep function (injected by tests).
        clock: Monotonic clock (injected by tests).
        thumbnails: Whether to create a thumbnail on completion.
        thumbnail_quality: ``"high"`` or ``"low"``.
    """

    def __init__(
        self,
        store: CacheStore,
        variants: VariantProcessor,
        *,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        max_elapsed: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        thumbnails: bool = True,
        thumbnail_quality: str = "high",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.variants = variants
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.max_elapsed = max_elapsed
        self._sleep = sleep
        self._clock = clock
        self.thumbnails = thumbnails
        self.thumbnail_quality = thumbnail_quality

    async def run(self, job: GenerationJob, backend: GenerationBackend) -> JobState:
        """Poll *job* to a terminal state and persist it.

        Never raises: unexpected errors are logged and recorded as a failure
        so that no record is left in ``processing``.
        """
        await self.drive(job, backend)
        return await self.finalize(job, backend)

    async def drive(self, job: GenerationJob, backend: GenerationBackend) -> JobState:
        """Like :meth:`poll`, but converts unexpected errors into a failure."""
        try:
            return await self.poll(job, backend)
        except Exception as e:
            logger.exception("Polling of task %s for key %s crashed", job.task_id, job.key)
            if not job.is_terminal:
                job.fail(f"Internal error while polling: {e}")
            return job.state

    async def poll(self, job: GenerationJob, backend: GenerationBackend) -> JobState:
        """Poll *job* until it is terminal, without persisting the outcome."""
        started = self._clock()

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await self._sleep(self.poll_interval)
            if self.max_elapsed is not None and self._clock() - started >= self.max_elapsed:
                break

            job.attempts = attempt
            try:
                result = await backend.poll_generation_job(job.task_id)
            except (TransientExternalError, DataIntegrityError) as e:
                logger.warning(
                    "Poll %d/%d for task %s failed: %s",
                    attempt,
                    self.max_attempts,
                    job.task_id,
                    e,
                )
                continue

            state = job.apply(result)
            logger.debug(
                "Task %s poll %d: state=%s progress=%d%%",
                job.task_id,
                attempt,
                state.value,
                job.progress,
            )
            if job.is_terminal:
                return state
            await self._record_progress(job, backend)

        job.time_out(
            f"Generation timed out after {job.attempts} status checks for task {job.task_id}"
        )
        logger.error("Task %s for key %s timed out", job.task_id, job.key)
        return job.state

    async def finalize(self, job: GenerationJob, backend: GenerationBackend) -> JobState:
        """Persist the terminal outcome of *job*."""
        try:
            if job.state is JobState.COMPLETED:
                await self._store_completed(job, backend)
            else:
                self._store_terminal(job, backend)
        except Exception as e:
            logger.exception("Persisting task %s for key %s failed", job.task_id, job.key)
            if job.state is JobState.COMPLETED:
                # Completed is terminal; record the failure on the current record only.
                record_failure(
                    self.store, job.key, RecordStatus.FAILED, f"Could not store generated images: {e}"
                )
        return job.state

    # -- Internal -----------------------------------------------------------

    async def _record_progress(self, job: GenerationJob, backend: GenerationBackend) -> None:
        # The cache file rewrite and fsync stay off the event loop.
        await asyncio.to_thread(self._write_progress, job, backend)

    def _write_progress(self, job: GenerationJob, backend: GenerationBackend) -> None:
        updated = self.store.update(
            CacheKind.ART,
            job.key,
            status=job.state.record_status,
            progress_percent=job.progress,
            task_id=job.task_id,
            backend=backend.name,
        )
        if updated is None:
            self.store.put(CacheKind.ART, job.key, self._placeholder(job, backend))

    async def _store_completed(self, job: GenerationJob, backend: GenerationBackend) -> None:
        output = job.output
        urls = list(output.all)

        if backend.returns_grid and len(urls) == 1:
            quadrants = await self.variants.split_grid(urls[0])
            if quadrants:
                urls = quadrants

        variants = self.variants.split_variants(urls)
        thumbnail = None
        if self.thumbnails:
            thumbnail = await self.variants.make_thumbnail(variants[0].url, self.thumbnail_quality)

        now = utcnow()
        record = CacheRecord(
            key=job.key,
            url=variants[0].url,
            all_image_urls=[variant.url for variant in variants],
            thumbnail_url=thumbnail,
            version=job.version,
            created_at=now,
            updated_at=now,
            completed_at=now,
            task_id=job.task_id,
            status=RecordStatus.COMPLETED,
            progress_percent=100,
            output_source=output.source,
            backend=backend.name,
            description=job.description,
        )
        versioned_key = self.store.put_versioned(CacheKind.ART, job.key, record)
        self.store.put(CacheKind.ART, job.key, record)
        logger.info(
            "Generation for key %s completed as %s with %d variants",
            job.key,
            versioned_key,
            len(variants),
        )

    def _store_terminal(self, job: GenerationJob, backend: GenerationBackend) -> None:
        updated = record_failure(
            self.store,
            job.key,
            job.state.record_status,
            job.error_message,
            progress_percent=job.progress,
            task_id=job.task_id,
            backend=backend.name,
        )
        if updated is None:
            placeholder = self._placeholder(job, backend)
            self.store.put(CacheKind.ART, job.key, placeholder)
        logger.error(
            "Generation for key %s ended %s: %s",
            job.key,
            job.state.value,
            job.error_message,
        )

    @staticmethod
    def _placeholder(job: GenerationJob, backend: GenerationBackend) -> CacheRecord:
        return CacheRecord(
            key=job.key,
            version=job.version,
            task_id=job.task_id,
            status=job.state.record_status,
            progress_percent=job.progress,
            error_message=job.error_message,
            backend=backend.name,
            description=job.description,
        )


def record_failure(
    store: CacheStore,
    key: str,
    status: RecordStatus,
    message: str | None,
    **fields: Any,
) -> CacheRecord | None:
    """Record a failed or timed-out attempt on the current art record of *key*.

    When the key already shows completed art, the record goes back to the
    latest completed version and stays ``completed``; *message* is kept in
    ``last_error_message``.  Otherwise the record takes *status*, *message*
    and *fields*.

    Returns:
        The updated current record, or ``None`` if *key* has no record.
    """
    current = store.get(CacheKind.ART, key)
    if current is None:
        return None
    if not current.url:
        return store.update(CacheKind.ART, key, status=status, error_message=message, **fields)

    restored = store.latest_completed(CacheKind.ART, key)
    if restored is None:
        restored = current.model_copy(update={"status": RecordStatus.COMPLETED, "progress_percent": 100})
    restored = restored.model_copy(
        update={"error_message": None, "last_error_message": message, "updated_at": utcnow()}
    )
    store.put(CacheKind.ART, key, restored)
    logger.warning("Key %s keeps version %d after a %s attempt", key, restored.version, status.value)
    return restored
