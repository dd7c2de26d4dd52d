"""Core generation-and-caching pipeline.

This package holds everything that does not speak HTTP:

- **config.py**: Configuration management using Pydantic Settings
  (``CARDFORGE_*`` environment variables, ``.env``)
- **records.py**: Cache record models and structured versioned keys
- **errors.py**: Exception taxonomy
- **cache_store.py**: File-backed store for the three cache kinds
- **variants.py**: Variant ordinals, thumbnails and grid splitting
- **generation_job.py**: State machine for one external generation job
- **polling.py**: Background worker that polls a job to completion
- **orchestrator.py**: At-most-one-in-flight generation entry point
- **gallery.py**: Grouped, filtered and paginated gallery view
- **cards.py**: Card assembly from metadata, vision model and art
- **prompts.py**: Prompt templates

Usage Example
-------------
::

    from cardforge.core import CacheKind, CacheStore, config

    store = CacheStore.from_directory(config.cache_dir)
    record = store.get(CacheKind.ART, "1834")

See Also
--------
- cardforge.services: External service clients and generation backends
- cardforge.api.main: HTTP routes
"""

from cardforge.core.cache_store import CacheKind, CacheStore, JsonFileBackend
from cardforge.core.config import CardForgeConfig, config
from cardforge.core.records import CacheRecord, GalleryItem, RecordStatus, Variant, VersionedKey

__all__ = [
    "CacheKind",
    "CacheRecord",
    "CacheStore",
    "CardForgeConfig",
    "GalleryItem",
    "JsonFileBackend",
    "RecordStatus",
    "Variant",
    "VersionedKey",
    "config",
]
