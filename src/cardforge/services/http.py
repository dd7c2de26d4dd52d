"""Shared httpx helpers for the external service clients.

Every outbound call goes through :func:`request_json`, which maps transport
problems onto the CardForge error taxonomy:

- connection errors and timeouts raise
  :class:`~cardforge.core.errors.TransientExternalError`
- non-2xx responses raise the caller-chosen error class
- a body that is not a JSON object raises
  :class:`~cardforge.core.errors.DataIntegrityError`
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from cardforge.core.errors import (
    CardForgeError,
    DataIntegrityError,
    TransientExternalError,
)

logger = logging.getLogger(__name__)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    status_error: type[CardForgeError] = TransientExternalError,
    not_found_error: type[CardForgeError] | None = None,
    timeout: float | None = None,
    **kwargs: Any,
) -> dict[str, Any]:
    """Perform one request and return the decoded JSON object.

    Args:
        client: Shared async HTTP client.
        method: HTTP method.
        url: Absolute URL.
        service: Short service name used in log and error messages.
        status_error: Exception class raised for non-2xx responses.
        not_found_error: Exception class raised instead for HTTP 404, when
            the service uses 404 for an unknown resource.
        timeout: Optional per-request timeout in seconds.
        **kwargs: Passed through to ``client.request`` (headers, json, ...).

    Returns:
        The decoded response body.
    """
    if timeout is not None:
        kwargs["timeout"] = timeout

    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientExternalError(f"{service} request timed out: {e}") from e
    except httpx.TransportError as e:
        raise TransientExternalError(f"{service} request failed: {e}") from e

    if response.status_code >= 400:
        logger.warning("%s returned HTTP %d for %s %s", service, response.status_code, method, url)
        if response.status_code == 404 and not_found_error is not None:
            raise not_found_error(f"{service} has no such resource: {url}")
        raise status_error(
            f"{service} returned HTTP {response.status_code}: {_short_text(response)}"
        )

    try:
        body = response.json()
    except ValueError as e:
        raise DataIntegrityError(f"{service} returned a non-JSON body") from e

    if not isinstance(body, dict):
        raise DataIntegrityError(f"{service} returned a JSON {type(body).__name__}, expected object")
    return body


def _short_text(response: httpx.Response, limit: int = 200) -> str:
    text = response.text.strip()
    return text if len(text) <= limit else text[:limit] + "..."
