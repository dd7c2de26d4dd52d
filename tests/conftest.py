"""Shared pytest fixtures for CardForge tests."""

import asyncio
import io
import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from cardforge.api.main import Services, app
from cardforge.core.cache_store import CacheStore
from cardforge.core.cards import CardService
from cardforge.core.config import CardForgeConfig
from cardforge.core.gallery import GalleryAggregator
from cardforge.core.generation_job import PollResult, PollStatus
from cardforge.core.orchestrator import GenerationOrchestrator
from cardforge.core.polling import PollingWorker
from cardforge.core.prompts import DEFAULT_PROMPTS
from cardforge.core.variants import VariantProcessor
from cardforge.services.generation import GenerationBackend
from cardforge.services.metadata import NftMetadata


def png_bytes(width: int = 64, height: int = 96, color: str = "red") -> bytes:
    """Encode a solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def processing(progress: int | None = None) -> PollResult:
    return PollResult(PollStatus.PROCESSING, progress=progress)


def completed(*urls: str, source: str = "permanent") -> PollResult:
    if source == "temporary":
        return PollResult(PollStatus.COMPLETED, progress=100, temporary_urls=tuple(urls))
    if source == "single":
        return PollResult(PollStatus.COMPLETED, progress=100, single_url=urls[0])
    return PollResult(PollStatus.COMPLETED, progress=100, permanent_urls=tuple(urls))


def failed(message: str) -> PollResult:
    return PollResult(PollStatus.FAILED, error_message=message)


class FakeBackend(GenerationBackend):
    """Scripted generation backend.

    ``polls`` is consumed in order; the last entry repeats forever.  An
    entry that is an exception instance is raised instead of returned.
    When ``gate`` is set, every poll waits for it first.
    """

    def __init__(
        self,
        name: str = "fake-primary",
        polls: list | None = None,
        submit_error: Exception | None = None,
        returns_grid: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self.returns_grid = returns_grid
        self.polls = list(polls or [processing()])
        self.submit_error = submit_error
        self.gate = gate
        self.submitted: list[tuple[str, str | None]] = []
        self.poll_calls = 0

    async def submit_generation_job(self, prompt, reference_image_url=None):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((prompt, reference_image_url))
        return f"{self.name}-task-{len(self.submitted)}"

    async def poll_generation_job(self, task_id):
        if self.gate is not None:
            await self.gate.wait()
        self.poll_calls += 1
        item = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeMetadata:
    """Metadata client returning one fixed token, or raising ``error``."""

    def __init__(self, error: Exception | None = None, image_url: str = "https://img/1834.png") -> None:
        self.error = error
        self.image_url = image_url
        self.calls = 0

    async def fetch_metadata(self, key):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return NftMetadata(
            key=key,
            name=f"Token #{key}",
            image_url=self.image_url,
            traits=[{"trait_type": "Hair", "value": "Red"}],
        )


class FakeVision:
    """Vision client with canned answers; each call can be made to fail."""

    def __init__(
        self,
        describe_error: Exception | None = None,
        details_error: Exception | None = None,
    ) -> None:
        self.describe_error = describe_error
        self.details_error = details_error
        self.describe_calls: list[tuple[str, str]] = []
        self.details_calls: list[tuple[str, str]] = []

    async def describe_image(self, image_url, traits):
        self.describe_calls.append((image_url, traits))
        if self.describe_error is not None:
            raise self.describe_error
        return "female, red hair, katana"

    async def generate_card_details(self, traits, description):
        self.details_calls.append((traits, description))
        if self.details_error is not None:
            raise self.details_error
        return {"cardName": "Akane", "hp": "80 HP"}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> CardForgeConfig:
    """Create a test configuration with temporary directories.

    Polling is instantaneous, thumbnails are off and every API key is set.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        CardForgeConfig instance for testing
    """
    return CardForgeConfig(
        _env_file=None,
        cache_dir=temp_dir / "cache",
        processed_dir=temp_dir / "cache" / "processed_images",
        split_dir=temp_dir / "cache" / "split_images",
        data_dir=temp_dir / "data",
        poll_interval_seconds=0.0,
        max_poll_attempts=5,
        thumbnail_enabled=False,
        opensea_api_key="test-opensea",
        openai_api_key="test-openai",
        goapi_api_key="test-goapi",
    )


@pytest.fixture
def store(test_config: CardForgeConfig) -> CacheStore:
    """Empty cache store backed by the temporary cache directory."""
    return CacheStore.from_directory(test_config.cache_dir)


@pytest.fixture
def image_client() -> httpx.AsyncClient:
    """HTTP client whose every GET returns a 1600x2400 PNG."""
    payload = png_bytes(1600, 2400)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=payload, headers={"content-type": "image/png"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def variant_processor(test_config: CardForgeConfig, image_client: httpx.AsyncClient) -> VariantProcessor:
    return VariantProcessor(test_config.processed_dir, test_config.split_dir, image_client)


@pytest.fixture
def sleeps() -> list[float]:
    """Records every delay requested by a worker using :func:`fake_sleep`."""
    return []


@pytest.fixture
def worker(store: CacheStore, variant_processor: VariantProcessor, sleeps: list[float]) -> PollingWorker:
    """Polling worker with five attempts and a recording, non-blocking sleep."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return PollingWorker(
        store,
        variant_processor,
        poll_interval=5.0,
        max_attempts=5,
        sleep=fake_sleep,
        thumbnails=False,
    )


@pytest.fixture
def make_backend():
    """Factory for :class:`FakeBackend` instances."""
    return FakeBackend


@pytest.fixture
def polls() -> SimpleNamespace:
    """Builders for scripted poll results: ``processing``, ``completed``, ``failed``."""
    return SimpleNamespace(processing=processing, completed=completed, failed=failed)


@pytest.fixture
def png() -> bytes:
    return png_bytes()


@pytest.fixture
def make_metadata():
    """Factory for :class:`FakeMetadata` instances."""
    return FakeMetadata


@pytest.fixture
def make_vision():
    """Factory for :class:`FakeVision` instances."""
    return FakeVision


@pytest.fixture
def api_services(test_config, store, worker, make_backend, polls) -> Services:
    """Application services wired with fake external clients.

    The generation backend reports progress once and then completes with
    four images.
    """
    backend = make_backend(
        polls=[
            polls.processing(50),
            polls.completed(
                "https://img/a.png", "https://img/b.png", "https://img/c.png", "https://img/d.png"
            ),
        ]
    )
    orchestrator = GenerationOrchestrator(store, worker, backend, submit_timeout=1.0)
    cards = CardService(
        test_config,
        store,
        FakeMetadata(),
        FakeVision(),
        orchestrator,
        dict(DEFAULT_PROMPTS),
    )
    return Services(
        config=test_config,
        store=store,
        orchestrator=orchestrator,
        gallery=GalleryAggregator(store),
        cards=cards,
    )


@pytest.fixture
def test_client(api_services: Services) -> Generator[TestClient, None, None]:
    """TestClient for the app with :func:`api_services` installed.

    The lifespan runs for the duration of the test, so background
    generations started by a request keep polling until the client closes.
    """
    app.state.services = api_services
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.state.services = None
