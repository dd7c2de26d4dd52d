"""Normalisation of multi-image generation output.

A finished generation job yields a list of image URLs.  This module turns
that list into ordered :class:`~cardforge.core.records.Variant` values and
produces the derived assets the gallery serves locally:

- a downsized WebP thumbnail of the primary image
- four quadrant PNGs cut out of a 2x2 grid image, for backends whose output
  is a single grid rather than discrete images

Both derived assets are optional.  Every failure is logged and reported as
"no asset" so that a completed generation is never lost because a thumbnail
could not be produced.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
import uuid
from pathlib import Path

import httpx
from PIL import Image, UnidentifiedImageError

from cardforge.core.records import Variant

logger = logging.getLogger(__name__)

# Longest-edge bound and WebP quality per thumbnail quality level.
THUMBNAIL_PRESETS: dict[str, tuple[int, int]] = {
    "high": (800, 90),
    "low": (400, 70),
}


def split_variants(raw_urls: list[str]) -> list[Variant]:
    """Wrap raw output URLs as variants with 1-based ordinals.

    Order and length are preserved; duplicates are kept.
    """
    return [Variant(url=url, ordinal=index) for index, url in enumerate(raw_urls, start=1)]


class VariantProcessor:
    """Fetch generated images and derive thumbnails and grid quadrants.

    Args:
        processed_dir: Directory for thumbnails.
        split_dir: Directory for grid quadrants.
        client: Shared HTTP client used to download source images.
        processed_prefix: URL prefix thumbnails are served under.
        split_prefix: URL prefix quadrants are served under.
    """

    def __init__(
        self,
        processed_dir: Path,
        split_dir: Path,
        client: httpx.AsyncClient,
        *,
        processed_prefix: str = "/api/processed-images",
        split_prefix: str = "/api/split-images",
    ) -> None:
        self.processed_dir = Path(processed_dir)
        self.split_dir = Path(split_dir)
        self.client = client
        self.processed_prefix = processed_prefix.rstrip("/")
        self.split_prefix = split_prefix.rstrip("/")

        self.processed_dir.mkdir(parents=True, exist_ok=True)
        self.split_dir.mkdir(parents=True, exist_ok=True)

    split_variants = staticmethod(split_variants)

    async def make_thumbnail(self, url: str, quality: str = "high") -> str | None:
        """Create a WebP thumbnail of *url*.

        The image is shrunk so its longest edge fits the preset bound and is
        never enlarged.

        Args:
            url: Absolute URL of the source image.
            quality: ``"high"`` (800px, q90) or ``"low"`` (400px, q70).

        Returns:
            Relative URL of the thumbnail, or ``None`` on any failure.
        """
        if quality not in THUMBNAIL_PRESETS:
            logger.warning("Unknown thumbnail quality '%s', using 'high'", quality)
            quality = "high"
        max_edge, webp_quality = THUMBNAIL_PRESETS[quality]

        try:
            payload = await self._download(url)
            filename = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:5]}-thumb.webp"
            target = self.processed_dir / filename
            await asyncio.to_thread(_write_thumbnail, payload, target, max_edge, webp_quality)
        except Exception as e:
            logger.warning("Thumbnail creation failed for %s: %s", url, e)
            return None

        logger.info("Created %s thumbnail %s", quality, filename)
        return f"{self.processed_prefix}/{filename}"

    async def split_grid(self, url: str) -> list[str]:
        """Cut a 2x2 grid image into four quadrant PNGs.

        Quadrants are numbered left to right, top to bottom, and written as
        ``<id>-q1.png`` through ``<id>-q4.png``.

        Returns:
            The four quadrant URLs, or an empty list on any failure.
        """
        try:
            payload = await self._download(url)
            grid_id = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
            filenames = await asyncio.to_thread(_write_quadrants, payload, self.split_dir, grid_id)
        except Exception as e:
            logger.warning("Grid split failed for %s: %s", url, e)
            return []

        logger.info("Split grid %s into %d quadrants", url, len(filenames))
        return [f"{self.split_prefix}/{name}" for name in filenames]

    async def _download(self, url: str) -> bytes:
        # Quadrants produced by split_grid are read back from disk.
        local_prefix = f"{self.split_prefix}/"
        if url.startswith(local_prefix):
            path = self.split_dir / Path(url[len(local_prefix):]).name
            return await asyncio.to_thread(path.read_bytes)

        response = await self.client.get(url, follow_redirects=True)
        response.raise_for_status()
        return response.content


# ---------------------------------------------------------------------------
# Pillow helpers (run in a worker thread).
# ---------------------------------------------------------------------------


def _open_image(payload: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(payload))
        image.load()
    except UnidentifiedImageError as e:
        raise ValueError("downloaded content is not an image") from e
    return image


def _write_thumbnail(payload: bytes, target: Path, max_edge: int, quality: int) -> None:
    image = _open_image(payload)
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
    # thumbnail() keeps the aspect ratio and never enlarges.
    image.thumbnail((max_edge, max_edge))
    image.save(target, format="WEBP", quality=quality)


def _write_quadrants(payload: bytes, directory: Path, grid_id: str) -> list[str]:
    image = _open_image(payload)
    width, height = image.size
    half_w, half_h = width // 2, height // 2
    if half_w == 0 or half_h == 0:
        raise ValueError(f"grid image too small to split: {width}x{height}")

    boxes = [
        (0, 0, half_w, half_h),
        (half_w, 0, width, half_h),
        (0, half_h, half_w, height),
        (half_w, half_h, width, height),
    ]
    filenames = []
    for number, box in enumerate(boxes, start=1):
        name = f"{grid_id}-q{number}.png"
        image.crop(box).save(directory / name, format="PNG")
        filenames.append(name)
    return filenames
