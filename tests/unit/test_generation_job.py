"""Tests for cardforge.core.generation_job — the job state machine."""

from __future__ import annotations

import pytest

from cardforge.core.errors import JobStateError
from cardforge.core.generation_job import (
    NO_OUTPUT_MESSAGE,
    GenerationJob,
    JobState,
    PollResult,
    PollStatus,
    resolve_output,
    transition,
)
from cardforge.core.records import OutputSource, RecordStatus


class TestResolveOutput:
    """Output URLs are resolved once with a fixed priority."""

    def test_temporary_wins_over_permanent(self):
        poll = PollResult(
            PollStatus.COMPLETED,
            temporary_urls=("t1", "t2"),
            permanent_urls=("p1",),
            single_url="s",
        )
        output = resolve_output(poll)
        assert output.all == ("t1", "t2")
        assert output.primary == "t1"
        assert output.source is OutputSource.TEMPORARY

    def test_permanent_wins_over_single(self):
        output = resolve_output(PollResult(PollStatus.COMPLETED, permanent_urls=("p1",), single_url="s"))
        assert output.all == ("p1",)
        assert output.source is OutputSource.PERMANENT

    def test_single_url_fallback(self):
        output = resolve_output(PollResult(PollStatus.COMPLETED, single_url="s"))
        assert output.all == ("s",)
        assert output.source is OutputSource.SINGLE

    def test_no_urls(self):
        assert resolve_output(PollResult(PollStatus.COMPLETED)) is None


class TestTransition:
    """transition() is a pure function of state and poll."""

    def test_submitted_is_evaluated_as_processing(self):
        result = transition(JobState.SUBMITTED, PollResult(PollStatus.PROCESSING, progress=10))
        assert result.state is JobState.PROCESSING
        assert result.progress == 10

    def test_processing_stays_processing(self):
        result = transition(JobState.PROCESSING, PollResult(PollStatus.PROCESSING, progress=55))
        assert result.state is JobState.PROCESSING
        assert result.progress == 55

    def test_completed_with_output(self):
        result = transition(
            JobState.PROCESSING, PollResult(PollStatus.COMPLETED, permanent_urls=("a", "b"))
        )
        assert result.state is JobState.COMPLETED
        assert result.output.all == ("a", "b")
        assert result.progress == 100

    def test_completed_without_urls_fails(self):
        result = transition(JobState.PROCESSING, PollResult(PollStatus.COMPLETED))
        assert result.state is JobState.FAILED
        assert result.error_message == NO_OUTPUT_MESSAGE

    def test_failed_keeps_message_verbatim(self):
        message = "GoAPI task failed: banned prompt - word 'x' is not allowed"
        result = transition(JobState.PROCESSING, PollResult(PollStatus.FAILED, error_message=message))
        assert result.state is JobState.FAILED
        assert result.error_message == message

    @pytest.mark.parametrize("state", [JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT])
    def test_terminal_states_reject_transitions(self, state):
        with pytest.raises(JobStateError):
            transition(state, PollResult(PollStatus.PROCESSING))


class TestGenerationJob:
    """GenerationJob bookkeeping around the FSM."""

    def _job(self) -> GenerationJob:
        return GenerationJob(key="1834", version=1, task_id="t-1", backend="fake")

    def test_apply_tracks_progress(self):
        job = self._job()
        assert job.apply(PollResult(PollStatus.PROCESSING, progress=30)) is JobState.PROCESSING
        assert job.progress == 30

    def test_missing_progress_keeps_last_value(self):
        job = self._job()
        job.apply(PollResult(PollStatus.PROCESSING, progress=30))
        job.apply(PollResult(PollStatus.PROCESSING))
        assert job.progress == 30

    def test_apply_completed_sets_output(self):
        job = self._job()
        job.apply(PollResult(PollStatus.COMPLETED, temporary_urls=("a",)))
        assert job.is_terminal
        assert job.output.primary == "a"

    def test_time_out(self):
        job = self._job()
        job.time_out("too slow")
        assert job.state is JobState.TIMED_OUT
        assert job.error_message == "too slow"
        assert job.state.record_status is RecordStatus.TIMED_OUT

    def test_fail_after_terminal_raises(self):
        job = self._job()
        job.fail("first")
        with pytest.raises(JobStateError):
            job.fail("second")
        assert job.error_message == "first"

    def test_apply_after_terminal_raises(self):
        job = self._job()
        job.apply(PollResult(PollStatus.COMPLETED, single_url="a"))
        with pytest.raises(JobStateError):
            job.apply(PollResult(PollStatus.PROCESSING))

    def test_record_status_mapping(self):
        assert JobState.SUBMITTED.record_status is RecordStatus.PENDING
        assert JobState.PROCESSING.record_status is RecordStatus.PROCESSING
        assert JobState.COMPLETED.record_status is RecordStatus.COMPLETED
