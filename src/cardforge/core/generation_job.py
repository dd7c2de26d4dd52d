"""Explicit state machine for one external image-generation job.

States
------
::

    SUBMITTED --> PROCESSING --> COMPLETED
                      |    \\--> FAILED
                      \\-------> TIMED_OUT

``transition`` is a pure function of the current state and one poll result.
The polling worker feeds it poll results; ``GenerationJob`` keeps the
bookkeeping (progress, output, attempts) around it.

Output resolution
-----------------
A completed poll may carry three URL fields.  They are resolved exactly once,
in priority order, into a :class:`GenerationOutput`:

1. temporary URLs (usually the full variant set)
2. permanent URLs
3. the single ``image_url``
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from cardforge.core.errors import JobStateError
from cardforge.core.records import OutputSource, RecordStatus

NO_OUTPUT_MESSAGE = "No image URLs found in completed task response"


class JobState(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT)

    @property
    def record_status(self) -> RecordStatus:
        return _RECORD_STATUS[self]


_RECORD_STATUS = {
    JobState.SUBMITTED: RecordStatus.PENDING,
    JobState.PROCESSING: RecordStatus.PROCESSING,
    JobState.COMPLETED: RecordStatus.COMPLETED,
    JobState.FAILED: RecordStatus.FAILED,
    JobState.TIMED_OUT: RecordStatus.TIMED_OUT,
}


class PollStatus(str, Enum):
    """External job status, already mapped by the backend client."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    """One normalised response from a status endpoint."""

    status: PollStatus
    progress: int | None = None
    temporary_urls: tuple[str, ...] = ()
    permanent_urls: tuple[str, ...] = ()
    single_url: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class GenerationOutput:
    """Resolved output of a completed job."""

    primary: str
    all: tuple[str, ...]
    source: OutputSource


@dataclass(frozen=True)
class Transition:
    state: JobState
    progress: int | None = None
    output: GenerationOutput | None = None
    error_message: str | None = None


def resolve_output(poll: PollResult) -> GenerationOutput | None:
    """Pick the output URLs from a completed poll, or ``None`` if there are none."""
    if poll.temporary_urls:
        urls, source = poll.temporary_urls, OutputSource.TEMPORARY
    elif poll.permanent_urls:
        urls, source = poll.permanent_urls, OutputSource.PERMANENT
    elif poll.single_url:
        urls, source = (poll.single_url,), OutputSource.SINGLE
    else:
        return None
    return GenerationOutput(primary=urls[0], all=tuple(urls), source=source)


def transition(state: JobState, poll: PollResult) -> Transition:
    """Compute the next state of a job from one poll result.

    Raises:
        JobStateError: If *state* is terminal.
    """
    if state.is_terminal:
        raise JobStateError(f"job in terminal state '{state.value}' cannot transition")

    if poll.status is PollStatus.FAILED:
        return Transition(
            JobState.FAILED,
            progress=poll.progress,
            error_message=poll.error_message or "Generation failed",
        )

    if poll.status is PollStatus.COMPLETED:
        output = resolve_output(poll)
        if output is None:
            return Transition(JobState.FAILED, progress=poll.progress, error_message=NO_OUTPUT_MESSAGE)
        return Transition(JobState.COMPLETED, progress=100, output=output)

    # A submitted job is evaluated as processing on its first poll.
    return Transition(JobState.PROCESSING, progress=poll.progress)


@dataclass
class GenerationJob:
    """Bookkeeping for one submitted job.

    Attributes:
        key: Logical token key.
        version: Version reserved for this generation.
        task_id: External task identifier.
        backend: Name of the backend the job was submitted to.
        state: Current FSM state.
        progress: Last reported progress percentage.
        output: Resolved output once completed.
        error_message: Root cause once failed or timed out.
        attempts: Number of polls made so far.
        description: Character description the prompt was built from.
    """

    key: str
    version: int
    task_id: str
    backend: str
    description: str | None = None
    state: JobState = JobState.SUBMITTED
    progress: int = 0
    output: GenerationOutput | None = None
    error_message: str | None = None
    attempts: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def apply(self, poll: PollResult) -> JobState:
        """Advance the job with one poll result and return the new state."""
        result = transition(self.state, poll)
        self.state = result.state
        if result.progress is not None:
            self.progress = max(0, min(100, int(result.progress)))
        if result.output is not None:
            self.output = result.output
        if result.error_message is not None:
            self.error_message = result.error_message
        return self.state

    def time_out(self, message: str) -> None:
        self._terminate(JobState.TIMED_OUT, message)

    def fail(self, message: str) -> None:
        self._terminate(JobState.FAILED, message)

    def _terminate(self, state: JobState, message: str) -> None:
        if self.is_terminal:
            raise JobStateError(f"job in terminal state '{self.state.value}' cannot transition")
        self.state = state
        self.error_message = message
