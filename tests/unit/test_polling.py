"""Tests for cardforge.core.polling — the background polling worker.

The worker fixture uses five attempts, a nominal five-second interval and a
recording sleep, so tests run instantly while still checking how often and
for how long the worker would have slept.
"""

from __future__ import annotations

import pytest

from cardforge.core.cache_store import CacheKind
from cardforge.core.errors import DataIntegrityError, TransientExternalError
from cardforge.core.generation_job import GenerationJob, JobState
from cardforge.core.polling import PollingWorker
from cardforge.core.records import CacheRecord, OutputSource, RecordStatus

URLS = ("https://img/a.png", "https://img/b.png", "https://img/c.png", "https://img/d.png")


def _job(key: str = "1834", version: int = 1) -> GenerationJob:
    return GenerationJob(key=key, version=version, task_id="task-1", backend="fake-primary")


def _seed_pending(store, key: str = "1834", version: int = 1) -> None:
    store.put(CacheKind.ART, key, CacheRecord(key=key, version=version, status=RecordStatus.PENDING))


class TestCompletion:
    """A job that completes is stored as history and as the current record."""

    @pytest.mark.asyncio
    async def test_completes_on_third_poll(self, worker, store, make_backend, polls, sleeps):
        _seed_pending(store)
        backend = make_backend(polls=[polls.processing(20), polls.processing(60), polls.completed(*URLS)])

        state = await worker.run(_job(), backend)

        assert state is JobState.COMPLETED
        assert backend.poll_calls == 3
        assert sleeps == [5.0, 5.0]

        current = store.get(CacheKind.ART, "1834")
        assert current.status is RecordStatus.COMPLETED
        assert current.url == URLS[0]
        assert current.all_image_urls == list(URLS)
        assert current.progress_percent == 100
        assert current.output_source is OutputSource.PERMANENT
        assert current.backend == "fake-primary"

    @pytest.mark.asyncio
    async def test_history_and_subrecords_written(self, worker, store, make_backend, polls):
        _seed_pending(store)
        backend = make_backend(polls=[polls.completed(*URLS)])

        await worker.run(_job(), backend)

        records = store.list_all(CacheKind.ART)
        history = [k for k, r in records.items() if k != "1834" and not r.is_variant]
        subrecords = sorted(r.variant_index for r in records.values() if r.is_variant)
        assert len(history) == 1
        assert history[0].startswith("1834_v1_")
        assert subrecords == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_grid_backend_output_is_split(self, worker, store, make_backend, polls):
        _seed_pending(store)
        backend = make_backend(returns_grid=True, polls=[polls.completed("https://img/grid.png")])

        await worker.run(_job(), backend)

        current = store.get(CacheKind.ART, "1834")
        assert len(current.all_image_urls) == 4
        assert current.url.endswith("-q1.png")
        assert all(url.startswith("/api/split-images/") for url in current.all_image_urls)

    @pytest.mark.asyncio
    async def test_thumbnail_created_when_enabled(self, store, variant_processor, make_backend, polls):
        _seed_pending(store)

        async def no_sleep(seconds):
            return None

        worker = PollingWorker(store, variant_processor, max_attempts=3, sleep=no_sleep, thumbnails=True)
        await worker.run(_job(), make_backend(polls=[polls.completed(*URLS)]))

        current = store.get(CacheKind.ART, "1834")
        assert current.thumbnail_url.startswith("/api/processed-images/")


class TestProgress:
    """Interim polls update status and progress only."""

    @pytest.mark.asyncio
    async def test_progress_visible_during_polling(self, worker, store, make_backend, polls):
        _seed_pending(store)
        observed = []

        class ObservingBackend(make_backend):
            async def poll_generation_job(self, task_id):
                record = store.get(CacheKind.ART, "1834")
                observed.append((record.status, record.progress_percent))
                return await super().poll_generation_job(task_id)

        backend = ObservingBackend(polls=[polls.processing(25), polls.processing(70), polls.completed(*URLS)])
        await worker.run(_job(), backend)

        assert observed == [
            (RecordStatus.PENDING, 0),
            (RecordStatus.PROCESSING, 25),
            (RecordStatus.PROCESSING, 70),
        ]

    @pytest.mark.asyncio
    async def test_current_record_keeps_previous_image_while_running(
        self, worker, store, make_backend, polls
    ):
        store.put(
            CacheKind.ART,
            "1834",
            CacheRecord(key="1834", url="https://img/old.png", status=RecordStatus.COMPLETED),
        )
        seen_urls = []

        class ObservingBackend(make_backend):
            async def poll_generation_job(self, task_id):
                seen_urls.append(store.get(CacheKind.ART, "1834").url)
                return await super().poll_generation_job(task_id)

        backend = ObservingBackend(polls=[polls.processing(10), polls.processing(50), polls.completed(*URLS)])
        await worker.run(_job(version=2), backend)

        assert seen_urls == ["https://img/old.png"] * 3
        current = store.get(CacheKind.ART, "1834")
        assert current.url == URLS[0]
        assert current.version == 2


class TestFailureAndTimeout:
    """Failure, timeout and retry behaviour."""

    @pytest.mark.asyncio
    async def test_times_out_after_exactly_max_attempts(self, worker, store, make_backend, polls, sleeps):
        _seed_pending(store)
        backend = make_backend(polls=[polls.processing(5)])

        state = await worker.run(_job(), backend)

        assert state is JobState.TIMED_OUT
        assert backend.poll_calls == 5
        assert sleeps == [5.0] * 4
        current = store.get(CacheKind.ART, "1834")
        assert current.status is RecordStatus.TIMED_OUT
        assert "timed out" in current.error_message

    @pytest.mark.asyncio
    async def test_transient_errors_consume_attempts(self, worker, store, make_backend, polls):
        _seed_pending(store)
        backend = make_backend(
            polls=[
                TransientExternalError("connection reset"),
                DataIntegrityError("no data object"),
                polls.completed(*URLS),
            ]
        )

        state = await worker.run(_job(), backend)

        assert state is JobState.COMPLETED
        assert backend.poll_calls == 3

    @pytest.mark.asyncio
    async def test_persistent_transient_errors_time_out(self, worker, store, make_backend):
        _seed_pending(store)
        backend = make_backend(polls=[TransientExternalError("down")])

        state = await worker.run(_job(), backend)

        assert state is JobState.TIMED_OUT
        assert backend.poll_calls == 5

    @pytest.mark.asyncio
    async def test_failed_job_records_message(self, worker, store, make_backend, polls):
        _seed_pending(store)
        backend = make_backend(polls=[polls.processing(40), polls.failed("GoAPI task failed: nsfw")])

        state = await worker.run(_job(), backend)

        assert state is JobState.FAILED
        current = store.get(CacheKind.ART, "1834")
        assert current.status is RecordStatus.FAILED
        assert current.error_message == "GoAPI task failed: nsfw"
        assert current.progress_percent == 40

    @pytest.mark.asyncio
    async def test_failed_attempt_keeps_existing_art(self, worker, store, make_backend, polls):
        store.put(
            CacheKind.ART,
            "1834",
            CacheRecord(
                key="1834",
                url="https://img/old.png",
                version=1,
                status=RecordStatus.PROCESSING,
                progress_percent=30,
            ),
        )
        backend = make_backend(polls=[polls.failed("GoAPI task failed: nsfw")])

        state = await worker.run(_job(version=2), backend)

        assert state is JobState.FAILED
        current = store.get(CacheKind.ART, "1834")
        assert current.status is RecordStatus.COMPLETED
        assert current.url == "https://img/old.png"
        assert current.version == 1
        assert current.progress_percent == 100
        assert current.error_message is None
        assert current.last_error_message == "GoAPI task failed: nsfw"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failure(self, worker, store, make_backend):
        _seed_pending(store)
        backend = make_backend(polls=[RuntimeError("bug")])

        state = await worker.run(_job(), backend)

        assert state is JobState.FAILED
        current = store.get(CacheKind.ART, "1834")
        assert current.status is RecordStatus.FAILED
        assert "bug" in current.error_message

    @pytest.mark.asyncio
    async def test_elapsed_ceiling(self, store, variant_processor, make_backend, polls):
        _seed_pending(store)
        ticks = iter(range(0, 1000, 10))

        async def no_sleep(seconds):
            return None

        worker = PollingWorker(
            store,
            variant_processor,
            max_attempts=60,
            max_elapsed=25,
            sleep=no_sleep,
            clock=lambda: next(ticks),
            thumbnails=False,
        )
        backend = make_backend(polls=[polls.processing()])

        state = await worker.run(_job(), backend)

        assert state is JobState.TIMED_OUT
        assert backend.poll_calls == 2

    def test_rejects_zero_attempts(self, store, variant_processor):
        with pytest.raises(ValueError):
            PollingWorker(store, variant_processor, max_attempts=0)
