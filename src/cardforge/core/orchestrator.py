"""Generation orchestrator: the entry point for "generate art for key K".

The orchestrator enforces that **at most one generation is in flight per
key**, submits the job to the primary backend, hands the job to a
:class:`~cardforge.core.polling.PollingWorker` running as a background
asyncio task, and returns a :class:`GenerationHandle` right away.

Request Outcomes
----------------
==============  ================================================================
State           Meaning
==============  ================================================================
``started``     A new job was submitted; poll ``status_endpoint`` for progress.
``in_progress`` A job for the key is already running; its task id is returned.
``cached``      Completed art exists and this was not a regenerate request.
``failed``      Neither backend accepted the submission.
==============  ================================================================

Fallback
--------
If the primary backend rejects the submission, or its job fails before
producing any output, the secondary backend (when configured) is tried once.
When both fail, the record carries the *primary* backend's error message.

A failed attempt on a key that already has completed art leaves that art in
place: the key keeps answering ``cached`` and only a regenerate request
starts another job.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum

from cardforge.core.cache_store import CacheKind, CacheStore
from cardforge.core.errors import CardForgeError
from cardforge.core.generation_job import GenerationJob, JobState
from cardforge.core.polling import PollingWorker, record_failure
from cardforge.core.records import CacheRecord, RecordStatus
from cardforge.services.generation import GenerationBackend

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Generation interrupted by server restart"


class HandleState(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    CACHED = "cached"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationParams:
    """Inputs for one generation request.

    Attributes:
        prompt: Prompt for the primary backend.
        reference_image_url: Optional image the generator should follow.
        description: Character description the prompt was built from.
        fallback_prompt: Prompt for the secondary backend; defaults to
            ``prompt``.
    """

    prompt: str
    reference_image_url: str | None = None
    description: str | None = None
    fallback_prompt: str | None = None


@dataclass(frozen=True)
class GenerationHandle:
    key: str
    state: HandleState
    task_id: str | None
    version: int | None
    status_endpoint: str
    error_message: str | None = None

    @property
    def already_in_progress(self) -> bool:
        return self.state is HandleState.IN_PROGRESS


class GenerationOrchestrator:
    """Start and track background generations.

    Args:
        store: Cache store holding the art records.
        worker: Polling worker used for every job.
        primary: Backend tried first.
        secondary: Optional backend tried when the primary fails.
        submit_timeout: Ceiling in seconds for one submission call.
    """

    def __init__(
        self,
        store: CacheStore,
        worker: PollingWorker,
        primary: GenerationBackend,
        secondary: GenerationBackend | None = None,
        *,
        submit_timeout: float = 15.0,
    ) -> None:
        self.store = store
        self.worker = worker
        self.primary = primary
        self.secondary = secondary
        self.submit_timeout = submit_timeout

        self._lock = threading.Lock()
        # key -> running task, or None while the submission is still in flight.
        self._active: dict[str, asyncio.Task | None] = {}
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def status_endpoint(key: str) -> str:
        return f"/api/art-status/{key}"

    # -- Public API ---------------------------------------------------------

    async def request_generation(
        self,
        key: str,
        params: GenerationParams,
        *,
        regenerate: bool = False,
    ) -> GenerationHandle:
        """Start a generation for *key* unless one is running or cached.

        Args:
            key: Logical token key.
            params: Prompt and reference image.
            regenerate: Start a new version even if completed art exists.

        Returns:
            A handle describing what happened; never blocks on polling.
        """
        handle, version = self._reserve(key, params, regenerate)
        if handle is not None:
            return handle

        try:
            return await self._start(key, version, params)
        except BaseException as e:
            # Never leave the key reserved or its record pending.
            self._fail_submission(key, version, _describe(e))
            raise

    def peek(self, key: str, *, regenerate: bool = False) -> GenerationHandle | None:
        """Return the handle a request would get without starting anything.

        ``None`` means a request would start a new generation.  Callers use
        this to skip preparing a prompt when nothing will be submitted; the
        answer is advisory and :meth:`request_generation` checks again.
        """
        with self._lock:
            current = self.store.get(CacheKind.ART, key)
            return self._existing_handle(key, current, regenerate)

    def active_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for all background generations to finish.

        Returns:
            ``True`` if every task finished within *timeout*.
        """
        with self._lock:
            pending = set(self._tasks)
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("%d generation task(s) still running after drain", len(still_running))
        return not still_running

    def recover_interrupted(self) -> int:
        """Mark records left pending or processing by a previous run as failed.

        A key that still shows completed art keeps it; the interruption is
        recorded as its ``last_error_message``.

        Returns:
            Number of records marked.
        """
        with self._lock:
            active = set(self._active)

        recovered = 0
        for cache_key, record in self.store.list_all(CacheKind.ART).items():
            if not record.status.in_flight or record.key in active:
                continue
            if cache_key == record.key:
                record_failure(self.store, record.key, RecordStatus.FAILED, INTERRUPTED_MESSAGE)
            else:
                self.store.update(
                    CacheKind.ART,
                    cache_key,
                    status=RecordStatus.FAILED,
                    error_message=INTERRUPTED_MESSAGE,
                )
            recovered += 1

        if recovered:
            logger.warning("Marked %d interrupted generation(s) as failed", recovered)
        return recovered

    # -- Internal -----------------------------------------------------------

    async def _start(self, key: str, version: int, params: GenerationParams) -> GenerationHandle:
        backend = self.primary
        prompt = params.prompt
        root_cause = None
        try:
            task_id = await self._submit(backend, prompt, params.reference_image_url)
        except (CardForgeError, asyncio.TimeoutError) as e:
            root_cause = _describe(e)
            logger.warning("Primary backend %s rejected key %s: %s", backend.name, key, root_cause)
            if self.secondary is None:
                return self._fail_submission(key, version, root_cause)

            backend = self.secondary
            prompt = params.fallback_prompt or params.prompt
            try:
                task_id = await self._submit(backend, prompt, params.reference_image_url)
            except (CardForgeError, asyncio.TimeoutError) as e2:
                logger.warning(
                    "Secondary backend %s rejected key %s: %s", backend.name, key, _describe(e2)
                )
                return self._fail_submission(key, version, root_cause)

        job = GenerationJob(
            key=key,
            version=version,
            task_id=task_id,
            backend=backend.name,
            description=params.description,
        )
        self.store.update(CacheKind.ART, key, task_id=task_id, backend=backend.name)

        task = asyncio.create_task(
            self._drive(job, backend, params, root_cause),
            name=f"generation-{key}-v{version}",
        )
        with self._lock:
            self._active[key] = task
            self._tasks.add(task)
        task.add_done_callback(lambda done, key=key: self._release(key, done))

        logger.info(
            "Started generation v%d for key %s on %s (task %s)", version, key, backend.name, task_id
        )
        return GenerationHandle(
            key=key,
            state=HandleState.STARTED,
            task_id=task_id,
            version=version,
            status_endpoint=self.status_endpoint(key),
        )

    def _reserve(
        self, key: str, params: GenerationParams, regenerate: bool
    ) -> tuple[GenerationHandle | None, int]:
        # No await inside: two requests on the same loop cannot interleave here.
        with self._lock:
            current = self.store.get(CacheKind.ART, key)
            existing = self._existing_handle(key, current, regenerate)
            if existing is not None:
                if existing.already_in_progress:
                    logger.info("Generation for key %s already in progress", key)
                return existing, 0

            version = self.store.next_version(CacheKind.ART, key)
            if current is not None and current.url:
                # Keep showing the last completed image while the new one renders.
                self.store.update(
                    CacheKind.ART,
                    key,
                    status=RecordStatus.PENDING,
                    progress_percent=0,
                    task_id=None,
                    error_message=None,
                    last_error_message=None,
                )
            else:
                self.store.put(
                    CacheKind.ART,
                    key,
                    CacheRecord(
                        key=key,
                        version=version,
                        status=RecordStatus.PENDING,
                        description=params.description,
                    ),
                )
            self._active[key] = None

        if regenerate:
            logger.info("Regenerating key %s as version %d", key, version)
        return None, version

    def _existing_handle(
        self, key: str, current: CacheRecord | None, regenerate: bool
    ) -> GenerationHandle | None:
        # Caller holds self._lock.
        if key in self._active or (current is not None and current.status.in_flight):
            return GenerationHandle(
                key=key,
                state=HandleState.IN_PROGRESS,
                task_id=current.task_id if current else None,
                version=current.version if current else None,
                status_endpoint=self.status_endpoint(key),
            )
        if current is not None and current.status is RecordStatus.COMPLETED and not regenerate:
            return GenerationHandle(
                key=key,
                state=HandleState.CACHED,
                task_id=current.task_id,
                version=current.version,
                status_endpoint=self.status_endpoint(key),
            )
        return None

    async def _submit(
        self, backend: GenerationBackend, prompt: str, reference_image_url: str | None
    ) -> str:
        return await asyncio.wait_for(
            backend.submit_generation_job(prompt, reference_image_url),
            timeout=self.submit_timeout,
        )

    async def _drive(
        self,
        job: GenerationJob,
        backend: GenerationBackend,
        params: GenerationParams,
        root_cause: str | None,
    ) -> None:
        try:
            await self._drive_with_fallback(job, backend, params, root_cause)
        except Exception as e:
            logger.exception("Generation task for key %s crashed", job.key)
            record_failure(
                self.store, job.key, RecordStatus.FAILED, root_cause or f"Internal error: {e}"
            )

    async def _drive_with_fallback(
        self,
        job: GenerationJob,
        backend: GenerationBackend,
        params: GenerationParams,
        root_cause: str | None,
    ) -> None:
        state = await self.worker.drive(job, backend)

        can_fall_back = (
            state is JobState.FAILED
            and job.output is None
            and backend is self.primary
            and self.secondary is not None
        )
        if not can_fall_back:
            if root_cause and state is not JobState.COMPLETED:
                job.error_message = root_cause
            await self.worker.finalize(job, backend)
            return

        root_cause = job.error_message
        logger.warning(
            "Primary job %s for key %s failed (%s), trying %s",
            job.task_id,
            job.key,
            root_cause,
            self.secondary.name,
        )
        try:
            task_id = await self._submit(
                self.secondary,
                params.fallback_prompt or params.prompt,
                params.reference_image_url,
            )
        except (CardForgeError, asyncio.TimeoutError) as e:
            logger.warning("Secondary backend %s rejected key %s: %s", self.secondary.name, job.key, _describe(e))
            await self.worker.finalize(job, backend)
            return

        fallback_job = GenerationJob(
            key=job.key,
            version=job.version,
            task_id=task_id,
            backend=self.secondary.name,
            description=job.description,
        )
        self.store.update(
            CacheKind.ART,
            job.key,
            status=RecordStatus.PENDING,
            progress_percent=0,
            task_id=task_id,
            backend=self.secondary.name,
        )

        state = await self.worker.drive(fallback_job, self.secondary)
        if state is not JobState.COMPLETED:
            logger.warning(
                "Secondary job %s for key %s also failed: %s",
                task_id,
                job.key,
                fallback_job.error_message,
            )
            fallback_job.error_message = root_cause
        await self.worker.finalize(fallback_job, self.secondary)

    def _fail_submission(self, key: str, version: int, message: str) -> GenerationHandle:
        updated = record_failure(self.store, key, RecordStatus.FAILED, message, task_id=None)
        if updated is None:
            self.store.put(
                CacheKind.ART,
                key,
                CacheRecord(key=key, version=version, status=RecordStatus.FAILED, error_message=message),
            )
        with self._lock:
            self._active.pop(key, None)
        logger.error("Generation for key %s could not be submitted: %s", key, message)
        return GenerationHandle(
            key=key,
            state=HandleState.FAILED,
            task_id=None,
            version=version,
            status_endpoint=self.status_endpoint(key),
            error_message=message,
        )

    def _release(self, key: str, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.discard(task)
            if self._active.get(key) is task:
                del self._active[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Generation task for key %s crashed: %s", key, task.exception())


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Generation service did not accept the job in time"
    if isinstance(error, asyncio.CancelledError):
        return "Generation request was cancelled"
    if isinstance(error, CardForgeError):
        return str(error)
    return f"Internal error while submitting: {error}"
