"""CardForge - trading-card art generation and caching for NFT tokens."""

__version__ = "0.1.0"

from cardforge.core.config import CardForgeConfig, config

__all__ = [
    "CardForgeConfig",
    "config",
]
