"""Card assembly: metadata, description, card details and art for one token.

:class:`CardService` ties the external clients to the cache:

1. fetch the token's metadata (name, image, traits)
2. describe the token image with the vision model (analysis cache)
3. generate the structured card details (card-details cache)
4. attach the cached art, or start a background generation for it

Descriptions and card details are cache-first.  Placeholder content is
only substituted when ``fallback_enabled`` is set; it is flagged with
``is_fallback`` and never written to the cache, so the next request retries
the real services.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from cardforge.core.cache_store import CacheKind, CacheStore
from cardforge.core.config import CardForgeConfig
from cardforge.core.errors import CardForgeError, ResourceNotFound
from cardforge.core.orchestrator import (
    GenerationHandle,
    GenerationOrchestrator,
    GenerationParams,
)
from cardforge.core.prompts import format_traits, render_prompt
from cardforge.core.records import AnalysisRecord, CacheRecord, CardDetailsRecord
from cardforge.services.metadata import MetadataClient, NftMetadata, fallback_metadata
from cardforge.services.vision import DEFAULT_CARD_DETAILS, DEFAULT_DESCRIPTION, VisionClient

logger = logging.getLogger(__name__)


@dataclass
class CardView:
    """Everything the card endpoint returns for one token."""

    key: str
    metadata: NftMetadata
    analysis: AnalysisRecord
    details: CardDetailsRecord
    art: CacheRecord | None = None
    generation: GenerationHandle | None = None

    @property
    def is_fallback(self) -> bool:
        return self.metadata.is_fallback or self.analysis.is_fallback or self.details.is_fallback


def card_details_key(key: str, traits: str, description: str) -> str:
    """Cache key for card details, tied to the inputs they were generated from."""
    digest = hashlib.sha1(f"{traits}\n{description}".encode("utf-8")).hexdigest()[:10]
    return f"{key}_{digest}"


class CardService:
    """Build card views and generation parameters for tokens.

    Args:
        config: Application configuration (fallback settings).
        store: Cache store.
        metadata: NFT metadata client.
        vision: Vision/text model client.
        orchestrator: Generation orchestrator used for missing art.
        prompts: Prompt templates.
    """

    def __init__(
        self,
        config: CardForgeConfig,
        store: CacheStore,
        metadata: MetadataClient,
        vision: VisionClient,
        orchestrator: GenerationOrchestrator,
        prompts: dict[str, str],
    ) -> None:
        self.config = config
        self.store = store
        self.metadata = metadata
        self.vision = vision
        self.orchestrator = orchestrator
        self.prompts = prompts

    async def get_card(self, key: str) -> CardView:
        """Assemble the card for *key*, starting art generation if needed."""
        metadata = await self.fetch_metadata(key)
        analysis = await self.describe(key, metadata)
        details = await self.card_details(key, metadata, analysis.description or "")

        view = CardView(key=key, metadata=metadata, analysis=analysis, details=details)
        art = self.store.get(CacheKind.ART, key)
        if art is not None and (art.url or art.status.in_flight):
            view.art = art
            return view

        params = self.build_params(metadata, analysis.description or "")
        view.generation = await self.orchestrator.request_generation(key, params)
        view.art = self.store.get(CacheKind.ART, key)
        return view

    async def prepare_generation(self, key: str) -> GenerationParams:
        """Return the prompt and reference image for generating *key*'s art."""
        metadata = await self.fetch_metadata(key)
        analysis = await self.describe(key, metadata)
        return self.build_params(metadata, analysis.description or "")

    def build_params(self, metadata: NftMetadata, description: str) -> GenerationParams:
        return GenerationParams(
            prompt=render_prompt(self.prompts["fullBodyArtV2"], description=description),
            fallback_prompt=render_prompt(self.prompts["fullBodyArt"], description=description),
            reference_image_url=None if metadata.is_fallback else metadata.image_url or None,
            description=description,
        )

    # -- Steps --------------------------------------------------------------

    async def fetch_metadata(self, key: str) -> NftMetadata:
        try:
            return await self.metadata.fetch_metadata(key)
        except CardForgeError as e:
            if not self.config.fallback_enabled:
                raise
            logger.warning("Metadata for token %s unavailable, using placeholder: %s", key, e)
            return fallback_metadata(key, self.config)

    async def describe(self, key: str, metadata: NftMetadata) -> AnalysisRecord:
        """Return the cached description of *key*, creating it if missing."""
        cached = self.store.get(CacheKind.ANALYSIS, key)
        if cached is not None:
            logger.debug("Using cached analysis for token %s", key)
            return cached

        traits = format_traits(metadata.traits)
        try:
            if not metadata.image_url:
                raise ResourceNotFound(f"token {key} has no image to describe")
            description = await self.vision.describe_image(metadata.image_url, traits)
        except CardForgeError as e:
            if not self.config.fallback_enabled:
                raise
            logger.warning("Image analysis for token %s failed, using default: %s", key, e)
            return AnalysisRecord(
                key=key,
                url=metadata.image_url or self.config.fallback_image_url.replace("{key}", key),
                description=DEFAULT_DESCRIPTION,
                traits=traits,
                is_fallback=True,
            )

        record = AnalysisRecord(
            key=key,
            url=metadata.image_url,
            description=description,
            traits=traits,
            is_fallback=metadata.is_fallback,
        )
        if not metadata.is_fallback:
            self.store.put(CacheKind.ANALYSIS, key, record)
        logger.info("Analysed image for token %s", key)
        return record

    async def card_details(
        self, key: str, metadata: NftMetadata, description: str
    ) -> CardDetailsRecord:
        """Return cached card details for these inputs, creating them if missing."""
        traits = format_traits(metadata.traits)
        cache_key = card_details_key(key, traits, description)
        cached = self.store.get(CacheKind.CARD_DETAILS, cache_key)
        if cached is not None:
            logger.debug("Using cached card details for token %s", key)
            return cached

        source_url = metadata.image_url or self.config.fallback_image_url.replace("{key}", key)
        try:
            details: dict[str, Any] = await self.vision.generate_card_details(traits, description)
        except CardForgeError as e:
            if not self.config.fallback_enabled:
                raise
            logger.warning("Card details for token %s failed, using defaults: %s", key, e)
            return CardDetailsRecord(
                key=key,
                url=source_url,
                card_details=dict(DEFAULT_CARD_DETAILS),
                description=description,
                is_fallback=True,
            )

        record = CardDetailsRecord(
            key=key,
            url=source_url,
            card_details=details,
            description=description,
            is_fallback=metadata.is_fallback,
        )
        if not metadata.is_fallback:
            self.store.put(CacheKind.CARD_DETAILS, cache_key, record)
        logger.info("Generated card details for token %s", key)
        return record
