"""Gallery view over the art cache.

The art cache holds several raw records per token: the current record, one
history entry per completed version and one sub-record per extra variant.
:class:`GalleryAggregator` folds them back into one
:class:`~cardforge.core.records.GalleryItem` per key, then filters, sorts and
paginates the result.

Grouping Rules
--------------
- Records are grouped by their ``key`` field, in first-seen order.
- A record is a *variant sub-record* when it has ``variantIndex`` set, or when
  its URL carries a quadrant marker (``-q1.`` .. ``-q4.``) and it lists no
  other images.  Variant sub-records never become the primary.
- The primary is the record with the highest ``version`` that has a URL;
  ties go to the later ``createdAt`` and then to the larger cache key.
- Variants come from the primary's ``allImageUrls``; if that is empty they
  are rebuilt from the same version's sub-records ordered by index.

Pagination is one-based: page ``p`` holds items ``[(p-1)*size, p*size)`` and
``total_pages == ceil(total_items / size)``.  Pages past the end are empty.
"""

from __future__ import annotations

import math
import re
import zlib
from dataclasses import dataclass, field
from enum import Enum

from cardforge.core.cache_store import CacheKind, CacheStore
from cardforge.core.records import CacheRecord, GalleryItem, Variant

QUADRANT_MARKER = re.compile(r"-q(\d+)\.", re.IGNORECASE)


class GalleryFilter(str, Enum):
    ALL = "all"
    RECENT = "recent"
    POPULAR = "popular"


@dataclass
class GalleryPage:
    """One page of gallery items plus pagination metadata."""

    items: list[GalleryItem] = field(default_factory=list)
    total_items: int = 0
    total_pages: int = 0
    page: int = 1
    page_size: int = 12


def variant_ordinal(record: CacheRecord) -> int | None:
    """Return the variant ordinal of a sub-record, or ``None`` for a primary."""
    if record.variant_index is not None:
        return record.variant_index
    if not record.url:
        return None
    match = QUADRANT_MARKER.search(record.url)
    if match and len(record.all_image_urls) <= 1:
        return int(match.group(1))
    return None


def popularity(key: str) -> int:
    """Stable pseudo-popularity score in ``[0, 100)``."""
    try:
        return int(key) % 100
    except ValueError:
        return zlib.crc32(key.encode("utf-8")) % 100


def build_items(records: dict[str, CacheRecord]) -> list[GalleryItem]:
    """Fold raw art records into one gallery item per key.

    Args:
        records: Mapping of cache key to record, in store order.

    Returns:
        Gallery items in first-seen key order.  Keys without any completed
        image are omitted.
    """
    primaries: dict[str, list[tuple[str, CacheRecord]]] = {}
    subrecords: dict[str, list[tuple[int, str, CacheRecord]]] = {}

    for cache_key, record in records.items():
        primaries.setdefault(record.key, [])
        ordinal = variant_ordinal(record)
        if ordinal is None:
            if record.url:
                primaries[record.key].append((cache_key, record))
        else:
            subrecords.setdefault(record.key, []).append((ordinal, cache_key, record))

    items: list[GalleryItem] = []
    for key, candidates in primaries.items():
        if not candidates:
            continue
        cache_key, primary = max(
            candidates,
            key=lambda pair: (pair[1].version, pair[1].created_at, pair[0]),
        )

        urls = list(primary.all_image_urls)
        if not urls:
            siblings = sorted(
                (ordinal, sub_key, sub)
                for ordinal, sub_key, sub in subrecords.get(key, [])
                if sub.version == primary.version
            )
            urls = [primary.url] + [sub.url for _, _, sub in siblings if sub.url != primary.url]

        items.append(
            GalleryItem(
                key=key,
                primary_url=primary.url,
                variants=[Variant(url=url, ordinal=i) for i, url in enumerate(urls, start=1)],
                version=primary.version,
                created_at=primary.created_at,
                is_fallback=primary.is_fallback,
                thumbnail_url=primary.thumbnail_url,
            )
        )
    return items


def filter_items(
    items: list[GalleryItem],
    gallery_filter: GalleryFilter = GalleryFilter.ALL,
    search: str | None = None,
) -> list[GalleryItem]:
    """Apply search and ordering.

    Args:
        items: Source items in insertion order.
        gallery_filter: ``all`` keeps insertion order, ``recent`` sorts by
            ``createdAt`` descending, ``popular`` by popularity descending.
        search: Optional case-insensitive substring of the key.

    Returns:
        A new list; ties are broken by key.
    """
    filtered = items
    if search:
        needle = search.strip().lower()
        filtered = [item for item in filtered if needle in item.key.lower()]

    if gallery_filter is GalleryFilter.RECENT:
        filtered = sorted(filtered, key=lambda item: item.key)
        filtered.sort(key=lambda item: item.created_at, reverse=True)
    elif gallery_filter is GalleryFilter.POPULAR:
        filtered = sorted(filtered, key=lambda item: item.key)
        filtered.sort(key=lambda item: popularity(item.key), reverse=True)
    else:
        filtered = list(filtered)

    return filtered


def paginate_items(items: list[GalleryItem], page: int, page_size: int) -> GalleryPage:
    """Slice one page out of *items*.

    Unlike a clamped paginator, a page past the end is returned empty so
    that walking pages 1..total_pages visits every item exactly once.

    Raises:
        ValueError: If *page* or *page_size* is below 1.
    """
    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1:
        raise ValueError("page_size must be >= 1")

    total = len(items)
    start = (page - 1) * page_size
    end = start + page_size

    return GalleryPage(
        items=items[start:end],
        total_items=total,
        total_pages=math.ceil(total / page_size),
        page=page,
        page_size=page_size,
    )


class GalleryAggregator:
    """Read-only gallery over a :class:`CacheStore`."""

    def __init__(self, store: CacheStore) -> None:
        self.store = store

    def items(self) -> list[GalleryItem]:
        return build_items(self.store.list_all(CacheKind.ART))

    def list(
        self,
        page: int = 1,
        page_size: int = 12,
        gallery_filter: GalleryFilter | str = GalleryFilter.ALL,
        search: str | None = None,
    ) -> GalleryPage:
        """Return one gallery page.

        Raises:
            ValueError: For an unknown filter or invalid page bounds.
        """
        gallery_filter = GalleryFilter(gallery_filter)
        return paginate_items(filter_items(self.items(), gallery_filter, search), page, page_size)
