"""CardForge — FastAPI Application.

This module is the single entry point for the web service.  It defines the
FastAPI ``app`` instance, the REST routes, and the ``main()`` CLI function
that launches the uvicorn server.

Architecture
------------
- **Configuration** comes from :data:`cardforge.core.config.config`
  (``CARDFORGE_*`` environment variables and ``.env``).
- **Caching** is handled by a single :class:`~cardforge.core.cache_store.CacheStore`
  mirrored to three JSON files.
- **Art generation** runs in background asyncio tasks owned by the
  :class:`~cardforge.core.orchestrator.GenerationOrchestrator`; trigger
  endpoints return right away and clients poll ``/api/art-status/{key}``.
- **Collaborators** live on ``app.state.services`` so tests can install
  fakes before the application starts.

Endpoints
---------
========  ==================================  ===================================
Method    Path                                Purpose
========  ==================================  ===================================
POST      ``/api/generate-art/{key}``         Start art generation (deduplicated)
POST      ``/api/regenerate-art/{key}``       Start a new version of the art
GET       ``/api/art-status/{key}``           Progress and result of the art
GET       ``/api/gallery``                    Paginated gallery listing
GET       ``/api/card/{key}``                 Full card for one token
GET       ``/api/processed-images/{name}``    Thumbnails
GET       ``/api/split-images/{name}``        Grid quadrants
GET       ``/api/tasks/recent``               Ten most recent generation tasks
GET       ``/api/tasks/{task_id}``            Live status of one external task
GET       ``/api/health``                     Service health and configuration
========  ==================================  ===================================

Usage
-----
CLI (installed entry point)::

    cardforge

Direct invocation::

    python -m cardforge.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from cardforge import __version__
from cardforge.api.models import (
    ArtStatusResponse,
    CardResponse,
    GalleryResponse,
    GenerateArtResponse,
    HealthResponse,
    Pagination,
    RecentTask,
    RecentTasksResponse,
    TaskStatusResponse,
)
from cardforge.core.cache_store import CacheKind, CacheStore
from cardforge.core.cards import CardService
from cardforge.core.config import CardForgeConfig, config
from cardforge.core.errors import CardForgeError, ResourceNotFound
from cardforge.core.gallery import GalleryAggregator
from cardforge.core.generation_job import PollStatus, resolve_output
from cardforge.core.orchestrator import GenerationHandle, GenerationOrchestrator, HandleState
from cardforge.core.polling import PollingWorker
from cardforge.core.prompts import load_prompts
from cardforge.core.records import CacheRecord
from cardforge.core.variants import VariantProcessor
from cardforge.services.generation import backend_registry
from cardforge.services.metadata import MetadataClient
from cardforge.services.vision import VisionClient

logger = logging.getLogger(__name__)

# Seconds to wait for running generations on shutdown.  Anything still
# running is marked interrupted on the next start.
SHUTDOWN_DRAIN_SECONDS = 10.0

RECENT_TASK_LIMIT = 10


# ---------------------------------------------------------------------------
# Service wiring.
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Everything the routes need, built once per application lifetime."""

    config: CardForgeConfig
    store: CacheStore
    orchestrator: GenerationOrchestrator
    gallery: GalleryAggregator
    cards: CardService
    client: httpx.AsyncClient | None = None


def build_services(cfg: CardForgeConfig, client: httpx.AsyncClient) -> Services:
    """Wire the cache, workers, backends and clients from configuration.

    Raises:
        KeyError: If a configured backend name is not registered.
    """
    store = CacheStore.from_directory(cfg.cache_dir)
    variants = VariantProcessor(cfg.processed_dir, cfg.split_dir, client)
    worker = PollingWorker(
        store,
        variants,
        poll_interval=cfg.poll_interval_seconds,
        max_attempts=cfg.max_poll_attempts,
        max_elapsed=cfg.max_poll_seconds,
        thumbnails=cfg.thumbnail_enabled,
        thumbnail_quality=cfg.thumbnail_quality,
    )

    primary = backend_registry.instantiate(cfg.primary_backend, cfg, client)
    secondary = None
    if cfg.secondary_backend and cfg.secondary_backend != cfg.primary_backend:
        secondary = backend_registry.instantiate(cfg.secondary_backend, cfg, client)

    orchestrator = GenerationOrchestrator(
        store,
        worker,
        primary,
        secondary,
        submit_timeout=cfg.submit_timeout_seconds,
    )

    prompts = load_prompts(cfg.data_dir)
    cards = CardService(
        cfg,
        store,
        MetadataClient(cfg, client),
        VisionClient(cfg, client, prompts),
        orchestrator,
        prompts,
    )
    return Services(
        config=cfg,
        store=store,
        orchestrator=orchestrator,
        gallery=GalleryAggregator(store),
        cards=cards,
        client=client,
    )


# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle.

    On startup:
        Builds the services (unless already installed on ``app.state``)
        and marks generations interrupted by a previous run as failed.

    On shutdown:
        Waits briefly for running generations and closes the HTTP client
        if this lifespan created it.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    # --- Startup -----------------------------------------------------------
    owned_client: httpx.AsyncClient | None = None
    services: Services | None = getattr(app.state, "services", None)
    if services is None:
        owned_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
        services = build_services(config, owned_client)
        app.state.services = services

    recovered = services.orchestrator.recover_interrupted()
    logger.info(
        "CardForge started: %s cache entries, %d interrupted generations recovered",
        services.store.counts(),
        recovered,
    )

    yield  # Application runs here.

    # --- Shutdown ----------------------------------------------------------
    await services.orchestrator.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    if owned_client is not None:
        await owned_client.aclose()
        app.state.services = None
    logger.info("CardForge stopped.")


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = FastAPI(
    title="CardForge",
    description="Trading-card art generation and caching service for NFT tokens.",
    version=__version__,
    lifespan=lifespan,
)

# The card viewer is served from a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _services() -> Services:
    services: Services | None = getattr(app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


# ---------------------------------------------------------------------------
# Response helpers.
# ---------------------------------------------------------------------------

_HANDLE_MESSAGES = {
    HandleState.STARTED: "Art generation started",
    HandleState.IN_PROGRESS: "Art generation already in progress",
    HandleState.CACHED: "Art already generated",
    HandleState.FAILED: "Art generation could not be started",
}


def _handle_response(handle: GenerationHandle) -> GenerateArtResponse:
    return GenerateArtResponse(
        success=handle.state is not HandleState.FAILED,
        key=handle.key,
        state=handle.state.value,
        already_in_progress=handle.already_in_progress,
        task_id=handle.task_id,
        status_endpoint=handle.status_endpoint,
        version=handle.version,
        message=_HANDLE_MESSAGES[handle.state],
        error_message=handle.error_message,
    )


def _status_response(key: str, record: CacheRecord | None) -> ArtStatusResponse:
    if record is None:
        return ArtStatusResponse(key=key)
    return ArtStatusResponse(
        key=key,
        status=record.status.value,
        progress_percent=record.progress_percent,
        full_art_url=record.url or None,
        all_image_urls=record.all_image_urls,
        thumbnail_url=record.thumbnail_url,
        version=record.version,
        task_id=record.task_id,
        error_message=record.error_message,
        last_error_message=record.last_error_message,
        is_fallback=record.is_fallback,
        updated_at=record.updated_at or record.created_at,
    )


def _external_error(e: CardForgeError) -> HTTPException:
    if isinstance(e, ResourceNotFound):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


def _serve_file(directory: Path, filename: str) -> FileResponse:
    # Only bare file names are served; anything with a path component is refused.
    if not filename or Path(filename).name != filename or filename in (".", ".."):
        raise HTTPException(status_code=404, detail="File not found")
    path = directory / filename
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


async def _trigger_generation(key: str, *, regenerate: bool) -> GenerateArtResponse:
    services = _services()

    # Skip the metadata and vision calls when nothing would be submitted.
    handle = services.orchestrator.peek(key, regenerate=regenerate)
    if handle is None:
        try:
            params = await services.cards.prepare_generation(key)
        except CardForgeError as e:
            logger.warning("Could not prepare generation for key %s: %s", key, e)
            raise _external_error(e) from e
        handle = await services.orchestrator.request_generation(key, params, regenerate=regenerate)

    return _handle_response(handle)


@app.post("/api/generate-art/{key}")
async def generate_art(key: str) -> GenerateArtResponse:
    """Start art generation for *key*.

    Returns right away.  If a generation is already running the existing
    task is reported with ``alreadyInProgress=true``; if art already exists
    the cached version is reported.

    Raises:
        HTTPException: 404 if the token has no image, 502 if the metadata
            or vision service failed while building the prompt.
    """
    return await _trigger_generation(key, regenerate=False)


@app.post("/api/regenerate-art/{key}")
async def regenerate_art(key: str) -> GenerateArtResponse:
    """Start a new art version for *key*, even if art already exists."""
    return await _trigger_generation(key, regenerate=True)


@app.get("/api/art-status/{key}")
async def art_status(key: str) -> ArtStatusResponse:
    """Return the art status of *key*.

    Always answers 200 with ``success=true``; a key that was never
    generated reports ``status="none"``.
    """
    record = _services().store.get(CacheKind.ART, key)
    return _status_response(key, record)


@app.get("/api/gallery")
async def get_gallery(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=12, ge=1, le=100),
    filter: str = Query(default="all"),
    search: str | None = None,
) -> GalleryResponse:
    """Return a paginated listing of generated art.

    Args:
        page: Page number (1-indexed).
        limit: Items per page.
        filter: ``all``, ``recent`` or ``popular``.
        search: Optional substring of the token key.

    Raises:
        HTTPException: 400 for an unknown filter.
    """
    try:
        result = _services().gallery.list(page, limit, filter, search)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return GalleryResponse(
        data=result.items,
        pagination=Pagination(
            page=result.page,
            limit=result.page_size,
            total_items=result.total_items,
            total_pages=result.total_pages,
        ),
    )


@app.get("/api/card/{key}")
async def get_card(key: str) -> CardResponse:
    """Return the full card for *key*, starting art generation if needed.

    Raises:
        HTTPException: 404 if the token has no image, 502 if an upstream
            service failed and placeholders are disabled.
    """
    try:
        view = await _services().cards.get_card(key)
    except CardForgeError as e:
        logger.warning("Card for key %s unavailable: %s", key, e)
        raise _external_error(e) from e

    return CardResponse(
        key=key,
        name=view.metadata.name,
        image_url=view.metadata.image_url,
        traits=view.metadata.traits,
        description=view.analysis.description or "",
        card_details=view.details.card_details,
        art=_status_response(key, view.art),
        generation=_handle_response(view.generation) if view.generation else None,
        is_fallback=view.is_fallback,
    )


@app.get("/api/processed-images/{filename}")
async def processed_image(filename: str) -> FileResponse:
    """Serve a generated thumbnail."""
    return _serve_file(_services().config.processed_dir, filename)


@app.get("/api/split-images/{filename}")
async def split_image(filename: str) -> FileResponse:
    """Serve a quadrant cut out of a grid image."""
    return _serve_file(_services().config.split_dir, filename)


@app.get("/api/tasks/recent")
async def recent_tasks() -> RecentTasksResponse:
    """Return the most recent generation tasks, newest first."""
    records = _services().store.list_all(CacheKind.ART).values()
    with_task = sorted(
        (record for record in records if record.task_id and not record.is_variant),
        key=lambda record: record.updated_at or record.created_at,
        reverse=True,
    )

    tasks: list[RecentTask] = []
    seen: set[str] = set()
    for record in with_task:
        if record.task_id in seen:
            continue
        seen.add(record.task_id)
        tasks.append(
            RecentTask(
                key=record.key,
                task_id=record.task_id,
                status=record.status.value,
                version=record.version,
                backend=record.backend,
                created_at=record.created_at,
            )
        )
        if len(tasks) == RECENT_TASK_LIMIT:
            break

    return RecentTasksResponse(tasks=tasks)


@app.get("/api/tasks/{task_id}")
async def check_task(task_id: str, backend: str | None = None) -> TaskStatusResponse:
    """Look up an external generation task by id, independent of any key.

    Args:
        task_id: External task identifier.
        backend: Name of the backend to ask; defaults to the primary.

    Raises:
        HTTPException: 404 for a backend that is not configured, 502 if the
            generation service failed or answered with a malformed body.
    """
    orchestrator = _services().orchestrator
    configured = {b.name: b for b in (orchestrator.primary, orchestrator.secondary) if b is not None}
    chosen = configured.get(backend or orchestrator.primary.name)
    if chosen is None:
        raise HTTPException(status_code=404, detail=f"Generation backend '{backend}' is not configured")

    try:
        poll = await chosen.poll_generation_job(task_id)
    except CardForgeError as e:
        logger.warning("Lookup of task %s on %s failed: %s", task_id, chosen.name, e)
        raise _external_error(e) from e

    output = resolve_output(poll) if poll.status is PollStatus.COMPLETED else None
    progress = poll.progress
    if progress is None:
        progress = 100 if output is not None else 0
    return TaskStatusResponse(
        task_id=task_id,
        backend=chosen.name,
        status=poll.status.value,
        progress_percent=progress,
        image_url=output.primary if output else None,
        image_urls=list(output.all) if output else [],
        error_message=poll.error_message,
    )


@app.get("/api/health")
async def health() -> HealthResponse:
    """Report configured API keys, cache sizes and running generations."""
    services = _services()
    cfg = services.config
    return HealthResponse(
        version=__version__,
        api_keys={
            "opensea": bool(cfg.opensea_api_key),
            "openai": bool(cfg.openai_api_key),
            "goapi": bool(cfg.goapi_api_key),
        },
        cache=services.store.counts(),
        active_generations=services.orchestrator.active_keys(),
    )


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~cardforge.core.config.config` (which
    loads from ``CARDFORGE_SERVER_HOST`` and ``CARDFORGE_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:3001``.

    This function is registered as the ``cardforge`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "cardforge.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
