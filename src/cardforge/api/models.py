"""Pydantic response models for the CardForge API.

Every response is serialised with camelCase keys so the JSON the browser
sees matches the field names stored in the cache files.

Models
------
GenerateArtResponse
    Result of ``POST /api/generate-art/{key}`` and
    ``POST /api/regenerate-art/{key}``.
ArtStatusResponse
    Result of ``GET /api/art-status/{key}``.  Always ``success=true``; an
    unknown key reports ``status="none"``.
GalleryResponse
    One gallery page plus :class:`Pagination`.
CardResponse
    Metadata, description, card details and art for one token.
TaskStatusResponse
    Live status of one external task, looked up by task id.
RecentTasksResponse, HealthResponse
    Operational endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cardforge.core.records import GalleryItem


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateArtResponse(ApiModel):
    """Response of the generation trigger endpoints.

    Attributes:
        success: ``False`` only when no backend accepted the job.
        state: ``started``, ``in_progress``, ``cached`` or ``failed``.
        already_in_progress: ``True`` when an existing job was found.
        task_id: External task id of the new or running job.
        status_endpoint: URL to poll for progress.
        version: Version the job will produce (or the cached version).
        message: Human-readable summary.
        error_message: Root cause when ``state`` is ``failed``.
    """

    success: bool = True
    key: str
    state: str
    already_in_progress: bool = False
    task_id: str | None = None
    status_endpoint: str
    version: int | None = None
    message: str = ""
    error_message: str | None = None


class ArtStatusResponse(ApiModel):
    success: bool = True
    key: str
    status: str = Field(
        default="none",
        description="pending, processing, completed, failed, timedOut, or none for unknown keys.",
    )
    progress_percent: int = 0
    full_art_url: str | None = None
    all_image_urls: list[str] = Field(default_factory=list)
    thumbnail_url: str | None = None
    version: int | None = None
    task_id: str | None = None
    error_message: str | None = None
    last_error_message: str | None = Field(
        default=None,
        description="Error of the latest attempt that did not replace the art being shown.",
    )
    is_fallback: bool = False
    updated_at: datetime | None = None


class Pagination(ApiModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class GalleryResponse(ApiModel):
    success: bool = True
    data: list[GalleryItem] = Field(default_factory=list)
    pagination: Pagination


class CardResponse(ApiModel):
    """Response of ``GET /api/card/{key}``."""

    success: bool = True
    key: str
    name: str
    image_url: str
    traits: list[dict[str, Any]] = Field(default_factory=list)
    description: str
    card_details: dict[str, Any] = Field(default_factory=dict)
    art: ArtStatusResponse
    generation: GenerateArtResponse | None = None
    is_fallback: bool = False


class RecentTask(ApiModel):
    key: str
    task_id: str
    status: str
    version: int
    backend: str | None = None
    created_at: datetime


class TaskStatusResponse(ApiModel):
    """Status of an external generation task, read straight from its backend."""

    success: bool = True
    task_id: str
    backend: str
    status: str = Field(description="processing, completed or failed, as reported by the backend.")
    progress_percent: int = 0
    image_url: str | None = None
    image_urls: list[str] = Field(default_factory=list)
    error_message: str | None = None


class RecentTasksResponse(ApiModel):
    success: bool = True
    tasks: list[RecentTask] = Field(default_factory=list)


class HealthResponse(ApiModel):
    status: str = "ok"
    version: str
    api_keys: dict[str, bool]
    cache: dict[str, int]
    active_generations: list[str] = Field(default_factory=list)
