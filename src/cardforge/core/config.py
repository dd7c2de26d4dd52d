"""Configuration management for CardForge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the CARDFORGE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (CARDFORGE_* prefix)
2. .env file in the project root
3. Default values defined in CardForgeConfig

Example .env file:
    CARDFORGE_OPENSEA_API_KEY=...
    CARDFORGE_OPENAI_API_KEY=...
    CARDFORGE_GOAPI_API_KEY=...
    CARDFORGE_POLL_INTERVAL_SECONDS=5
    CARDFORGE_CACHE_DIR=cache

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from cardforge.core.config import config

    print(config.cache_dir)
    print(config.max_poll_attempts)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- cache_dir: JSON cache files (analysis, card details, art)
- processed_dir: Downsized thumbnails served under /api/processed-images
- split_dir: Grid quadrants served under /api/split-images
- data_dir: prompts.json and other static data

Polling Budget
--------------
A generation job is polled every ``poll_interval_seconds`` for at most
``max_poll_attempts`` attempts (60 x 5s = roughly five minutes by default).
``max_poll_seconds`` adds an optional wall-clock ceiling on top of that.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CardForgeConfig(BaseSettings):
    """Main configuration for CardForge.

    Attributes
    ----------
    Paths:
        cache_dir : Path
            Directory holding the three JSON cache files
        processed_dir : Path
            Directory for generated thumbnails
        split_dir : Path
            Directory for quadrants cut out of grid images
        data_dir : Path
            Directory containing prompts.json

    Server:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn (1024-65535)

    Polling:
        poll_interval_seconds : float
            Delay between two status polls of one job
        max_poll_attempts : int
            Attempt ceiling before a job is timed out
        max_poll_seconds : float | None
            Optional wall-clock ceiling before a job is timed out
        submit_timeout_seconds : float
            Timeout for the job submission call made on the request path
        http_timeout_seconds : float
            Timeout for every other outbound HTTP call

    External services:
        opensea_api_key, chain, contract_address
            NFT metadata provider
        openai_api_key, vision_model
            Vision/text model used for descriptions and card details
        goapi_api_key, goapi_base_url
            Asynchronous image-generation service
        primary_backend, secondary_backend
            Registered generation backend names (see services.generation)

    Fallbacks:
        fallback_enabled : bool
            Substitute placeholder metadata/text when upstream calls fail
        fallback_image_url : str
            Placeholder image template; ``{key}`` is replaced by the token key
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CARDFORGE_",
        case_sensitive=False,
    )

    # Paths
    cache_dir: Path = Field(
        default=Path("cache"),
        description="Directory holding the JSON cache files",
    )
    processed_dir: Path = Field(
        default=Path("cache/processed_images"),
        description="Directory for generated thumbnails",
    )
    split_dir: Path = Field(
        default=Path("cache/split_images"),
        description="Directory for quadrants cut out of grid images",
    )
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory containing prompts.json",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=3001,
        description="Server port",
        ge=1024,
        le=65535,
    )

    # Polling settings
    poll_interval_seconds: float = Field(default=5.0, ge=0.0)
    max_poll_attempts: int = Field(default=60, ge=1)
    max_poll_seconds: float | None = Field(
        default=None,
        description="Optional wall-clock ceiling for one job (None = attempts only)",
    )
    submit_timeout_seconds: float = Field(default=15.0, gt=0.0)
    http_timeout_seconds: float = Field(default=30.0, gt=0.0)

    # Thumbnails
    thumbnail_enabled: bool = Field(default=True)
    thumbnail_quality: Literal["high", "low"] = Field(default="high")

    # NFT metadata provider
    opensea_api_key: str | None = Field(default=None)
    opensea_base_url: str = Field(default="https://api.opensea.io")
    chain: str = Field(default="ethereum")
    contract_address: str = Field(default="0xed5af388653567af2f388e6224dc7c4b3241c544")

    # Vision/text model
    openai_api_key: str | None = Field(default=None)
    openai_base_url: str = Field(default="https://api.openai.com")
    vision_model: str = Field(default="gpt-4-turbo")

    # Image generation service
    goapi_api_key: str | None = Field(default=None)
    goapi_base_url: str = Field(default="https://api.goapi.ai")
    primary_backend: str = Field(default="goapi-imagine")
    secondary_backend: str | None = Field(
        default="goapi-task",
        description="Backend tried when the primary fails before producing output",
    )

    # Placeholder content
    fallback_enabled: bool = Field(
        default=False,
        description="Substitute placeholder metadata and card text on upstream failure",
    )
    fallback_image_url: str = Field(
        default="https://placehold.co/600x600/f8f3e6/222222/png?text=Token+%23{key}",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.processed_dir.mkdir(parents=True, exist_ok=True)
        self.split_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance
# Loads values from environment variables (CARDFORGE_* prefix) and .env file.
config = CardForgeConfig()
