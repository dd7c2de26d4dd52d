"""File-backed cache storage for CardForge.

The cache keeps three independent record kinds (analysis, card details and
art) in memory and mirrors each one to its own pretty-printed JSON document:

- ``analysis_cache.json``
- ``card_details_cache.json``
- ``art_cache.json``

Every document is a flat mapping from cache key (a bare token key or a
versioned key such as ``1834_v2_20250308T235601000000Z``) to a camelCase
record.  Documents are loaded fully at startup and rewritten in full after
every mutation.

Write Discipline
----------------
Writes go through :class:`JsonFileBackend`, which writes to a temporary file
in the same directory, fsyncs it and then ``os.replace``-s it over the target.
A concurrent reader therefore sees either the previous document or the new
one, never a partial write.

Each kind has its own lock.  A mutation and the write that persists it happen
under that lock, so the on-disk order of writes always matches the in-memory
order.  Locks are never held across an ``await``.

A write failure does not roll back the in-memory change: the failure is logged
and surfaced as a :class:`~cardforge.core.errors.CachePersistenceWarning`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import warnings
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cardforge.core.errors import CachePersistenceWarning
from cardforge.core.records import (
    AnalysisRecord,
    CacheRecord,
    CardDetailsRecord,
    RecordStatus,
    VersionedKey,
    utcnow,
)

logger = logging.getLogger(__name__)


class CacheKind(str, Enum):
    """The three independent record kinds."""

    ANALYSIS = "analysis"
    CARD_DETAILS = "card_details"
    ART = "art"


RECORD_TYPES: dict[CacheKind, type[CacheRecord]] = {
    CacheKind.ANALYSIS: AnalysisRecord,
    CacheKind.CARD_DETAILS: CardDetailsRecord,
    CacheKind.ART: CacheRecord,
}


class JsonFileBackend:
    """Persist one JSON document per cache kind under ``cache_dir``."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, kind: CacheKind) -> Path:
        return self.cache_dir / f"{kind.value}_cache.json"

    def read(self, kind: CacheKind) -> dict[str, Any]:
        """Read the document for *kind*.

        A missing file is created empty.  Unreadable or non-object content is
        logged and treated as an empty cache; the file is left untouched so
        it can be inspected.

        Returns:
            The raw mapping of cache key to record dict.
        """
        path = self.path_for(kind)
        if not path.exists():
            logger.info("No %s cache file at %s, starting fresh", kind.value, path)
            self.write(kind, {})
            return {}

        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Error reading %s cache file %s: %s", kind.value, path, e)
            return {}

        if not isinstance(data, dict):
            logger.error("Ignoring %s cache file %s: top level is not an object", kind.value, path)
            return {}
        return data

    def write(self, kind: CacheKind, data: dict[str, Any]) -> None:
        """Atomically replace the document for *kind*.

        Raises:
            OSError: If the temporary file cannot be written or renamed.
        """
        path = self.path_for(kind)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(self.cache_dir)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


class CacheStore:
    """In-memory, file-mirrored store for analysis, card-detail and art records.

    All readers receive deep copies, so callers can never mutate shared state
    behind the store's back.

    Args:
        backend: Persistence backend.  Anything with ``read(kind)`` and
            ``write(kind, data)`` works.
    """

    def __init__(self, backend: JsonFileBackend) -> None:
        self._backend = backend
        self._data: dict[CacheKind, dict[str, CacheRecord]] = {kind: {} for kind in CacheKind}
        self._locks: dict[CacheKind, threading.RLock] = {kind: threading.RLock() for kind in CacheKind}

    @classmethod
    def from_directory(cls, cache_dir: Path) -> CacheStore:
        store = cls(JsonFileBackend(cache_dir))
        store.load()
        return store

    # -- Lifecycle ----------------------------------------------------------

    def load(self) -> None:
        """Load every kind from the backend, replacing in-memory state."""
        for kind in CacheKind:
            raw = self._backend.read(kind)
            record_type = RECORD_TYPES[kind]
            loaded: dict[str, CacheRecord] = {}

            for cache_key, payload in raw.items():
                try:
                    loaded[cache_key] = record_type.model_validate(payload)
                except ValidationError as e:
                    logger.warning(
                        "Skipping invalid %s cache entry '%s': %s",
                        kind.value,
                        cache_key,
                        e.errors()[0]["msg"] if e.errors() else e,
                    )

            with self._locks[kind]:
                self._data[kind] = loaded
            logger.info("Loaded %d %s cache entries", len(loaded), kind.value)

    # -- Reads --------------------------------------------------------------

    def get(self, kind: CacheKind, key: str) -> CacheRecord | None:
        with self._locks[kind]:
            record = self._data[kind].get(key)
            return record.model_copy(deep=True) if record is not None else None

    def list_all(self, kind: CacheKind) -> dict[str, CacheRecord]:
        """Return a snapshot of every record of *kind*, in insertion order."""
        with self._locks[kind]:
            return {k: r.model_copy(deep=True) for k, r in self._data[kind].items()}

    def counts(self) -> dict[str, int]:
        return {kind.value: len(self._data[kind]) for kind in CacheKind}

    def next_version(self, kind: CacheKind, key: str) -> int:
        """Return the version a new generation for *key* should carry.

        Only completed, non-variant records count, so a failed attempt does
        not burn a version number.
        """
        with self._locks[kind]:
            versions = [
                record.version
                for record in self._data[kind].values()
                if record.key == key
                and not record.is_variant
                and record.status == RecordStatus.COMPLETED
            ]
        return max(versions, default=0) + 1

    def latest_completed(self, kind: CacheKind, key: str) -> CacheRecord | None:
        """Return the newest completed history entry of *key*, if any.

        The bare *key* itself and variant sub-records are not considered.
        """
        with self._locks[kind]:
            history = [
                record
                for cache_key, record in self._data[kind].items()
                if cache_key != key
                and record.key == key
                and not record.is_variant
                and record.status == RecordStatus.COMPLETED
            ]
            if not history:
                return None
            latest = max(history, key=lambda record: (record.version, record.created_at))
            return latest.model_copy(deep=True)

    # -- Writes -------------------------------------------------------------

    def put(self, kind: CacheKind, key: str, record: CacheRecord) -> None:
        """Store *record* under *key* and persist the kind."""
        with self._locks[kind]:
            self._data[kind][key] = record.model_copy(deep=True)
            self._persist(kind)

    def update(self, kind: CacheKind, key: str, **fields: Any) -> CacheRecord | None:
        """Atomically change selected fields of an existing record.

        Args:
            kind: Cache kind.
            key: Cache key of the record.
            **fields: Attribute names and new values.

        Returns:
            A copy of the updated record, or ``None`` if *key* is absent.
        """
        with self._locks[kind]:
            current = self._data[kind].get(key)
            if current is None:
                return None
            updated = current.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
            self._data[kind][key] = updated
            self._persist(kind)
            return updated.model_copy(deep=True)

    def put_versioned(self, kind: CacheKind, key: str, record: CacheRecord) -> str:
        """Store *record* as a new history entry and return its versioned key.

        When the record carries more than one image, one sub-record per
        additional image is written as well (``<key>_v<n>_img<i>_<stamp>``)
        with ``variant_index`` set.  The bare *key* is not touched; callers
        update the current record separately.
        """
        record = record.model_copy(update={"key": key}, deep=True)
        versioned_key = VersionedKey.for_record(record)

        with self._locks[kind]:
            self._data[kind][str(versioned_key)] = record

            for index, url in enumerate(record.all_image_urls[1:], start=2):
                sub_key = VersionedKey.for_record(record, variant_index=index)
                self._data[kind][str(sub_key)] = record.model_copy(
                    update={"url": url, "variant_index": index, "thumbnail_url": None},
                    deep=True,
                )

            self._persist(kind)

        logger.info(
            "Saved %s version %d for key %s as %s (%d images)",
            kind.value,
            record.version,
            key,
            versioned_key,
            len(record.all_image_urls),
        )
        return str(versioned_key)

    # -- Internal -----------------------------------------------------------

    def _persist(self, kind: CacheKind) -> None:
        # Caller holds self._locks[kind].
        snapshot = {k: r.to_json_dict() for k, r in self._data[kind].items()}
        try:
            self._backend.write(kind, snapshot)
        except OSError as e:
            logger.error("Error saving %s cache: %s", kind.value, e)
            warnings.warn(
                f"{kind.value} cache could not be persisted: {e}",
                CachePersistenceWarning,
                stacklevel=3,
            )
