"""Cache record models for CardForge.

These Pydantic models are the single on-disk and in-memory representation of
everything the generation pipeline caches.  They are serialised with camelCase
aliases so the JSON cache files read the same way the HTTP API responses do.

Models
------
CacheRecord
    Shared shape for all three cache kinds.  Art records use it directly.
AnalysisRecord
    A cached vision-model description of a token's source image.
CardDetailsRecord
    A cached structured card-detail object.
Variant
    One image of a multi-image generation, with a stable 1-based ordinal.
GalleryItem
    Derived, never stored: the "current + variants" view of one key.
VersionedKey
    Structured composite key for history entries and per-variant sub-records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class RecordStatus(str, Enum):
    """Lifecycle status stored on a cache record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"

    @property
    def in_flight(self) -> bool:
        return self in (RecordStatus.PENDING, RecordStatus.PROCESSING)


class OutputSource(str, Enum):
    """Which field of the external response supplied the result URLs."""

    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    SINGLE = "single"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CacheRecord(_CamelModel):
    """One cached generation result (or in-flight placeholder) for a key.

    Attributes:
        key: Logical token key this record belongs to.  Stored explicitly so
            that history entries never need their cache key parsed.
        url: Primary image URL.  Empty while nothing has completed yet.
        all_image_urls: Every image of the generation, in output order.
        thumbnail_url: Relative URL of a downsized copy of ``url``.
        version: Generation counter for ``key``; starts at 1.
        created_at: When this record (or version) was created.
        task_id: External job identifier.
        status: Lifecycle status.
        progress_percent: Last progress value reported by the service.
        error_message: Root-cause message for failed or timed-out jobs.
        last_error_message: Error of the latest attempt that did not replace
            the completed art this record still shows.
        is_fallback: ``True`` when placeholder content was substituted.
        variant_index: Set only on per-variant sub-records (2, 3, 4, ...).
        output_source: Which response field supplied ``all_image_urls``.
        backend: Name of the generation backend that produced the record.
        description: Character description used to build the prompt.
    """

    key: str
    url: str = ""
    all_image_urls: list[str] = Field(default_factory=list)
    thumbnail_url: str | None = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    task_id: str | None = None
    status: RecordStatus = RecordStatus.PENDING
    progress_percent: int = Field(default=0, ge=0, le=100)
    error_message: str | None = None
    last_error_message: str | None = None
    is_fallback: bool = False
    variant_index: int | None = None
    output_source: OutputSource | None = None
    backend: str | None = None
    description: str | None = None

    @model_validator(mode="after")
    def _completed_requires_url(self) -> CacheRecord:
        if self.status == RecordStatus.COMPLETED and not self.url:
            raise ValueError("a completed record must have a non-empty url")
        return self

    @property
    def is_variant(self) -> bool:
        return self.variant_index is not None


class AnalysisRecord(CacheRecord):
    """Cached vision-model description of a token image.

    ``url`` is the analysed source image and ``description`` holds the text.
    """

    status: RecordStatus = RecordStatus.COMPLETED
    traits: str = ""


class CardDetailsRecord(CacheRecord):
    """Cached structured card details (name, HP, move, rarity, ...)."""

    status: RecordStatus = RecordStatus.COMPLETED
    card_details: dict[str, Any] = Field(default_factory=dict)


class Variant(_CamelModel):
    """One image of a generation job's output."""

    url: str
    ordinal: int = Field(ge=1)


class GalleryItem(_CamelModel):
    """Read-side view of one key: its primary image plus variants."""

    key: str
    primary_url: str
    variants: list[Variant] = Field(default_factory=list)
    version: int = 1
    created_at: datetime
    is_fallback: bool = False
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class VersionedKey:
    """Composite cache key for a history entry or a variant sub-record.

    Rendered as ``<base>_v<version>_<stamp>`` or, for a variant,
    ``<base>_v<version>_img<n>_<stamp>``.  The rendered string is only a
    storage key; the same fields are also carried on the record itself.
    """

    base_key: str
    version: int
    stamp: str
    variant_index: int | None = None

    @classmethod
    def for_record(cls, record: CacheRecord, variant_index: int | None = None) -> VersionedKey:
        return cls(
            base_key=record.key,
            version=record.version,
            stamp=format_stamp(record.created_at),
            variant_index=variant_index,
        )

    def __str__(self) -> str:
        if self.variant_index is None:
            return f"{self.base_key}_v{self.version}_{self.stamp}"
        return f"{self.base_key}_v{self.version}_img{self.variant_index}_{self.stamp}"


def format_stamp(moment: datetime) -> str:
    """Render a timestamp without separators, e.g. ``20250308T235601123456Z``."""
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
