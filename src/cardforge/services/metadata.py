"""NFT metadata provider client (OpenSea API v2)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from cardforge.core.config import CardForgeConfig
from cardforge.core.errors import DataIntegrityError, ResourceNotFound, TerminalExternalFailure
from cardforge.services.http import request_json

logger = logging.getLogger(__name__)

FALLBACK_TRAITS: list[dict[str, str]] = [
    {"trait_type": "Type", "value": "Human"},
    {"trait_type": "Hair", "value": "Basic"},
    {"trait_type": "Clothing", "value": "Kimono"},
    {"trait_type": "Eyes", "value": "Calm"},
    {"trait_type": "Mouth", "value": "Neutral"},
    {"trait_type": "Background", "value": "Off White"},
]


class NftMetadata(BaseModel):
    """Metadata of one token, as used by the card pipeline."""

    key: str
    name: str = ""
    image_url: str = ""
    traits: list[dict[str, Any]] = Field(default_factory=list)
    is_fallback: bool = False


def fallback_metadata(key: str, config: CardForgeConfig) -> NftMetadata:
    """Build placeholder metadata for *key*."""
    return NftMetadata(
        key=key,
        name=f"#{key}",
        image_url=config.fallback_image_url.replace("{key}", key),
        traits=[dict(trait) for trait in FALLBACK_TRAITS],
        is_fallback=True,
    )


class MetadataClient:
    """Fetch token metadata from the OpenSea v2 NFT endpoint.

    Args:
        config: Application configuration (API key, chain, contract).
        client: Shared async HTTP client.
    """

    def __init__(self, config: CardForgeConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    async def fetch_metadata(self, key: str) -> NftMetadata:
        """Return the metadata for token *key*.

        Raises:
            TerminalExternalFailure: No API key is configured.
            ResourceNotFound: OpenSea does not know token *key*.
            TransientExternalError: The request failed or returned non-2xx.
            DataIntegrityError: The response has no ``nft`` object.
        """
        if not self.config.opensea_api_key:
            raise TerminalExternalFailure("OpenSea API key is not configured")

        url = (
            f"{self.config.opensea_base_url.rstrip('/')}/api/v2/chain/{self.config.chain}"
            f"/contract/{self.config.contract_address}/nfts/{key}"
        )
        body = await request_json(
            self.client,
            "GET",
            url,
            service="OpenSea",
            not_found_error=ResourceNotFound,
            headers={"X-API-KEY": self.config.opensea_api_key, "Accept": "application/json"},
            timeout=self.config.http_timeout_seconds,
        )

        nft = body.get("nft")
        if not isinstance(nft, dict):
            raise DataIntegrityError("OpenSea response has no nft object")

        traits = [
            {"trait_type": trait.get("trait_type", ""), "value": trait.get("value", "")}
            for trait in nft.get("traits") or []
            if isinstance(trait, dict)
        ]
        metadata = NftMetadata(
            key=str(nft.get("identifier") or key),
            name=nft.get("name") or f"#{key}",
            image_url=nft.get("image_url") or "",
            traits=traits,
        )
        logger.info("Fetched metadata for token %s (%d traits)", key, len(traits))
        return metadata
