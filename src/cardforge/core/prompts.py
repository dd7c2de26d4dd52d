"""Prompt templates for the vision model and the image generator.

Templates are opaque strings loaded from ``prompts.json`` in the data
directory.  Four templates are used:

==================  ===========================================  =============
Template            Purpose                                      Placeholders
==================  ===========================================  =============
``imageAnalysis``   Describe the token image                     ``{traits}``
``cardDetails``     Produce the card JSON                        ``{traits}``,
                                                                 ``{description}``
``fullBodyArt``     Generation prompt for the secondary backend  ``{description}``
``fullBodyArtV2``   Generation prompt for the primary backend    ``{description}``
==================  ===========================================  =============

Missing or unreadable files fall back to the built-in defaults below, and a
file that only defines some templates is merged over the defaults.

Usage
-----
::

    prompts = load_prompts(config.data_dir)
    prompt = render_prompt(prompts["fullBodyArtV2"], description="female, red hair")
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Built-in defaults.
# ---------------------------------------------------------------------------

_IMAGE_ANALYSIS = (
    "Describe the character in the image with given cues {traits} focus on appearance, "
    "specify male or female, output like this: "
    '"female, hairstyle, eyes, facial features, outfit, weapon, anything special in the background"'
)

_CARD_DETAILS = (
    "You are an imaginative card designer for an anime trading card game similar to Pokemon. "
    "Using the character traits and description below, generate a creative and balanced card "
    "as a single JSON object with the structure "
    "{ cardName, typeIcon, hp, move: { name, atk }, moveDescription, weakness, resistance, "
    "retreatCost, rarity }.\n"
    "- typeIcon is one of \U0001f525 (fire), \U0001f4a7 (water), ⚡ (lightning), "
    "\U0001faa8 (earth) or \U0001fad8 (default).\n"
    "- atk is 10-30 plus bonuses for weapon, gold and elemental traits.\n"
    "- hp is 50-80 plus bonuses for clothing and headgear traits.\n"
    "- weakness and resistance follow the type; retreatCost is \U0001f31f or \U0001f31f\U0001f31f.\n"
    "- rarity ranges from ★ to ★★★★★.\n"
    "Ignore the Background trait. Output only the JSON object.\n"
    "Traits: {traits}\n"
    "Description: {description}"
)

DEFAULT_PROMPTS: dict[str, str] = {
    "imageAnalysis": _IMAGE_ANALYSIS,
    "cardDetails": _CARD_DETAILS,
    "fullBodyArt": "a full-body anime episode wide angle shot of {description} --niji 6 --ar 5:8",
    "fullBodyArtV2": (
        "a full-body anime episode wide angle shot of {description} --niji 6 --ar 5:8 --p mx5sxok"
    ),
}


def load_prompts(data_dir: Path) -> dict[str, str]:
    """Load ``prompts.json`` from *data_dir*, merged over the defaults.

    Non-string values are ignored with a warning.

    Args:
        data_dir: Directory expected to contain ``prompts.json``.

    Returns:
        Mapping of template name to template text.
    """
    prompts = dict(DEFAULT_PROMPTS)
    path = Path(data_dir) / "prompts.json"

    if not path.exists():
        logger.info("No prompts.json at %s, using built-in prompts", path)
        return prompts

    try:
        with open(path, encoding="utf-8") as handle:
            loaded = json.load(handle)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Error loading prompts from %s, using defaults: %s", path, e)
        return prompts

    if not isinstance(loaded, dict):
        logger.warning("prompts.json must contain an object, using defaults")
        return prompts

    for name, template in loaded.items():
        if isinstance(template, str):
            prompts[name] = template
        else:
            logger.warning("Ignoring non-string prompt template '%s'", name)

    logger.info("Loaded %d prompt templates from %s", len(loaded), path)
    return prompts


def render_prompt(template: str, **values: Any) -> str:
    """Replace ``{name}`` placeholders literally.

    Unlike ``str.format`` this leaves other braces alone, so templates may
    contain JSON examples.
    """
    rendered = template
    for name, value in values.items():
        rendered = rendered.replace("{" + name + "}", str(value))
    return rendered


def format_traits(traits: list[dict[str, Any]]) -> str:
    """Render traits as ``"Type: Human, Hair: Basic, ..."``."""
    return ", ".join(
        f"{trait.get('trait_type', '')}: {trait.get('value', '')}"
        for trait in traits
        if isinstance(trait, dict)
    )
