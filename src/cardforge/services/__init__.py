"""Clients for the external services CardForge depends on.

Modules
-------
http
    Shared httpx request helper and error mapping.
metadata
    NFT metadata provider (OpenSea v2).
vision
    Vision/text model (OpenAI chat completions).
generation
    Image-generation backends (GoAPI) and the backend registry.
"""
