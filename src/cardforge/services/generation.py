"""Generation backends for the asynchronous image-generation service.

A backend knows how to submit one prompt and how to read back the job's
status.  Two GoAPI Midjourney endpoints are provided:

========================  =========================  =====================
Backend                   Submit endpoint            Output
========================  =========================  =====================
``goapi-imagine``         ``POST /mj/v2/imagine``    discrete images
``goapi-task``            ``POST /api/v1/task``      one 2x2 grid image
========================  =========================  =====================

Both are polled through ``GET /api/v1/task/{task_id}``.

Registry
--------
Backends register themselves with the global :data:`backend_registry`, and
the application instantiates them by the names configured in
``primary_backend`` and ``secondary_backend``::

    >>> from cardforge.services.generation import backend_registry
    >>> backend = backend_registry.instantiate("goapi-imagine", config, client)
    >>> task_id = await backend.submit_generation_job("a knight", None)
    >>> poll = await backend.poll_generation_job(task_id)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from cardforge.core.config import CardForgeConfig
from cardforge.core.errors import (
    DataIntegrityError,
    TerminalExternalFailure,
)
from cardforge.core.generation_job import PollResult, PollStatus
from cardforge.services.http import request_json

logger = logging.getLogger(__name__)


class GenerationBackend(ABC):
    """Base class for image-generation backends.

    Subclasses must define:

    - ``name``: registry name
    - ``description``: human-readable description
    - ``returns_grid``: ``True`` if completed output is a single 2x2 grid
      that has to be split into quadrants
    """

    name: str = "base"
    description: str = ""
    returns_grid: bool = False

    def __init__(self, config: CardForgeConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    @abstractmethod
    async def submit_generation_job(self, prompt: str, reference_image_url: str | None = None) -> str:
        """Submit a job and return its external task id.

        Raises:
            TerminalExternalFailure: The service rejected the submission.
            TransientExternalError: The request did not reach the service.
            DataIntegrityError: The response carried no task id.
        """

    @abstractmethod
    async def poll_generation_job(self, task_id: str) -> PollResult:
        """Return the normalised status of *task_id*."""


class GoApiBackend(GenerationBackend):
    """Shared GoAPI plumbing: headers and the task status endpoint."""

    name = "goapi"

    @property
    def headers(self) -> dict[str, str]:
        if not self.config.goapi_api_key:
            raise TerminalExternalFailure("GoAPI key is not configured")
        return {"x-api-key": self.config.goapi_api_key, "Content-Type": "application/json"}

    def url(self, path: str) -> str:
        return f"{self.config.goapi_base_url.rstrip('/')}{path}"

    async def poll_generation_job(self, task_id: str) -> PollResult:
        body = await request_json(
            self.client,
            "GET",
            self.url(f"/api/v1/task/{task_id}"),
            service="GoAPI",
            headers=self.headers,
            timeout=self.config.http_timeout_seconds,
        )
        return parse_task_status(body)

    async def _submit(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await request_json(
            self.client,
            "POST",
            self.url(path),
            service="GoAPI",
            status_error=TerminalExternalFailure,
            headers=self.headers,
            json=payload,
            timeout=self.config.submit_timeout_seconds,
        )


class GoApiImagineBackend(GoApiBackend):
    """Midjourney v2 imagine endpoint; returns discrete images."""

    name = "goapi-imagine"
    description = "GoAPI Midjourney v2 imagine (discrete variants)"

    async def submit_generation_job(self, prompt: str, reference_image_url: str | None = None) -> str:
        payload: dict[str, Any] = {
            "prompt": prompt,
            "process_mode": "fast",
            "aspect_ratio": "5:8",
            "skip_prompt_check": True,
            "webhook_endpoint": "",
            "webhook_secret": "",
        }
        if reference_image_url:
            payload["reference_image_url"] = reference_image_url

        body = await self._submit("/mj/v2/imagine", payload)
        task_id = body.get("task_id") or _data_object(body).get("task_id")
        if not task_id:
            raise DataIntegrityError("GoAPI imagine response has no task_id")

        logger.info("Submitted %s task %s", self.name, task_id)
        return str(task_id)


class GoApiTaskBackend(GoApiBackend):
    """Unified task endpoint; completed output is one 2x2 grid."""

    name = "goapi-task"
    description = "GoAPI Midjourney task API (2x2 grid output)"
    returns_grid = True

    async def submit_generation_job(self, prompt: str, reference_image_url: str | None = None) -> str:
        if reference_image_url:
            prompt = f"{reference_image_url} {prompt}"
        payload = {
            "model": "midjourney",
            "task_type": "imagine",
            "input": {
                "prompt": prompt,
                "process_mode": "fast",
                "skip_prompt_check": True,
                "bot_id": 0,
            },
            "config": {
                "service_mode": "public",
                "webhook_config": {"endpoint": "", "secret": ""},
            },
        }

        body = await self._submit("/api/v1/task", payload)
        if body.get("code") not in (None, 200):
            raise TerminalExternalFailure(
                f"GoAPI task submission rejected: {body.get('message') or body.get('code')}"
            )
        task_id = _data_object(body).get("task_id")
        if not task_id:
            raise DataIntegrityError("GoAPI task response has no data.task_id")

        logger.info("Submitted %s task %s", self.name, task_id)
        return str(task_id)


def parse_task_status(body: dict[str, Any]) -> PollResult:
    """Normalise a ``GET /api/v1/task/{id}`` response.

    Raises:
        DataIntegrityError: If the body has no ``data`` object.
    """
    data = body.get("data")
    if not isinstance(data, dict):
        raise DataIntegrityError("GoAPI status response has no data object")

    raw_status = str(data.get("status") or "").lower()
    output = data.get("output") or {}
    if not isinstance(output, dict):
        raise DataIntegrityError("GoAPI status output is not an object")

    progress = _parse_progress(output.get("progress"))

    if raw_status == "failed":
        return PollResult(
            PollStatus.FAILED, progress=progress, error_message=_failure_detail(data.get("error"))
        )

    if raw_status == "completed":
        return PollResult(
            PollStatus.COMPLETED,
            progress=progress,
            temporary_urls=_url_list(output.get("temporary_image_urls")),
            permanent_urls=_url_list(output.get("image_urls")),
            single_url=output.get("image_url") or None,
        )

    return PollResult(PollStatus.PROCESSING, progress=progress)


def _data_object(body: dict[str, Any]) -> dict[str, Any]:
    data = body.get("data")
    return data if isinstance(data, dict) else {}


def _failure_detail(error: Any) -> str:
    # GoAPI sends either {"message", "raw_message"} or a bare string.
    if isinstance(error, dict):
        message = error.get("message") or "unknown error"
        raw_message = error.get("raw_message")
    else:
        message = str(error) if error else "unknown error"
        raw_message = None
    detail = f"GoAPI task failed: {message}"
    if raw_message:
        detail = f"{detail} - {raw_message}"
    return detail


def _parse_progress(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return max(0, min(100, int(float(str(value).rstrip("%")))))
    except ValueError:
        return None


def _url_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(url for url in value if isinstance(url, str) and url)


# ---------------------------------------------------------------------------
# Registry.
# ---------------------------------------------------------------------------


class BackendRegistry:
    """Registry of available generation backends.

    Backends register their class once; the application instantiates them
    by name with the shared configuration and HTTP client.
    """

    def __init__(self) -> None:
        self._backends: dict[str, type[GenerationBackend]] = {}

    def register(self, backend_class: type[GenerationBackend]) -> type[GenerationBackend]:
        """Register a backend class under its ``name``.

        Returns the class so this can be used as a decorator.
        """
        if backend_class.name in self._backends:
            logger.warning("Generation backend '%s' is already registered, overwriting", backend_class.name)
        self._backends[backend_class.name] = backend_class
        logger.debug("Registered generation backend: %s", backend_class.name)
        return backend_class

    def instantiate(
        self, name: str, config: CardForgeConfig, client: httpx.AsyncClient
    ) -> GenerationBackend:
        """Create an instance of a registered backend.

        Raises:
            KeyError: If *name* is not registered.
        """
        if name not in self._backends:
            available = ", ".join(self.list_available())
            raise KeyError(f"Generation backend '{name}' not found. Available backends: {available}")
        return self._backends[name](config, client)

    def get_backend_class(self, name: str) -> type[GenerationBackend] | None:
        return self._backends.get(name)

    def list_available(self) -> list[str]:
        return list(self._backends.keys())


# Global backend registry instance
backend_registry = BackendRegistry()
backend_registry.register(GoApiImagineBackend)
backend_registry.register(GoApiTaskBackend)
