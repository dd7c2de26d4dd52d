"""Vision/text model client (OpenAI chat completions).

Two calls are made per token:

- :meth:`VisionClient.describe_image` sends the token image (inlined as a
  ``data:`` URL) together with the ``imageAnalysis`` prompt and returns a
  free-text character description.
- :meth:`VisionClient.generate_card_details` sends the ``cardDetails`` prompt
  and parses the model's answer as a JSON card object.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import unicodedata
from typing import Any

import httpx

from cardforge.core.config import CardForgeConfig
from cardforge.core.errors import (
    DataIntegrityError,
    TerminalExternalFailure,
    TransientExternalError,
)
from cardforge.core.prompts import DEFAULT_PROMPTS, render_prompt
from cardforge.services.http import request_json

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "A character with a modern anime style, featuring unique hair and clothing."

DEFAULT_CARD_DETAILS: dict[str, Any] = {
    "cardName": "Default Character",
    "typeIcon": "\U0001fad8",
    "hp": "100 HP",
    "move": {"name": "Basic Attack", "atk": "30"},
    "weakness": "\U0001f525 x2",
    "resistance": "\U0001f4a7 -20",
    "retreatCost": "\U0001f31f",
    "rarity": "★",
}

# Card fields that carry emoji or star glyphs.
_GLYPH_FIELDS = ("typeIcon", "weakness", "resistance", "retreatCost", "rarity")

_JSON_FENCE = re.compile(r"```json\s*|\s*```")


def parse_card_details(text: str) -> dict[str, Any]:
    """Parse the model's card answer, tolerating Markdown code fences.

    Glyph fields are NFC-normalised.

    Raises:
        DataIntegrityError: If the text is not a JSON object.
    """
    cleaned = _JSON_FENCE.sub("", text).strip()
    try:
        card = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise DataIntegrityError(f"card details are not valid JSON: {e}") from e
    if not isinstance(card, dict):
        raise DataIntegrityError("card details must be a JSON object")

    for field in _GLYPH_FIELDS:
        if isinstance(card.get(field), str):
            card[field] = unicodedata.normalize("NFC", card[field])
    return card


class VisionClient:
    """Thin client for the chat-completions endpoint.

    Args:
        config: Application configuration (API key, model, base URL).
        client: Shared async HTTP client.
        prompts: Prompt templates; defaults to the built-in set.
    """

    def __init__(
        self,
        config: CardForgeConfig,
        client: httpx.AsyncClient,
        prompts: dict[str, str] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.prompts = prompts or dict(DEFAULT_PROMPTS)

    async def describe_image(self, image_url: str, traits: str) -> str:
        """Describe the character in *image_url*.

        Args:
            image_url: Source image; it is downloaded and inlined.
            traits: Pre-formatted trait string.

        Returns:
            The model's description, stripped.
        """
        data_url = await self._inline_image(image_url)
        prompt = render_prompt(self.prompts["imageAnalysis"], traits=traits)
        content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": data_url}},
        ]
        description = await self._complete(content, max_tokens=350)
        if not description:
            raise DataIntegrityError("vision model returned an empty description")
        return description

    async def generate_card_details(self, traits: str, description: str) -> dict[str, Any]:
        """Generate the structured card for a character."""
        prompt = render_prompt(self.prompts["cardDetails"], traits=traits, description=description)
        text = await self._complete(prompt, max_tokens=300)
        return parse_card_details(text)

    # -- Internal -----------------------------------------------------------

    async def _complete(self, content: Any, *, max_tokens: int) -> str:
        if not self.config.openai_api_key:
            raise TerminalExternalFailure("OpenAI API key is not configured")

        body = await request_json(
            self.client,
            "POST",
            f"{self.config.openai_base_url.rstrip('/')}/v1/chat/completions",
            service="OpenAI",
            headers={"Authorization": f"Bearer {self.config.openai_api_key}"},
            json={
                "model": self.config.vision_model,
                "messages": [{"role": "user", "content": content}],
                "max_tokens": max_tokens,
            },
            timeout=self.config.http_timeout_seconds,
        )

        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise DataIntegrityError("OpenAI response has no choices[0].message.content") from e
        return (text or "").strip()

    async def _inline_image(self, image_url: str) -> str:
        try:
            response = await self.client.get(
                image_url, follow_redirects=True, timeout=self.config.http_timeout_seconds
            )
        except httpx.HTTPError as e:
            raise TransientExternalError(f"image fetch failed for {image_url}: {e}") from e
        if response.status_code >= 400:
            raise TransientExternalError(
                f"image fetch failed for {image_url}: HTTP {response.status_code}"
            )

        mime_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
        encoded = base64.b64encode(response.content).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"
