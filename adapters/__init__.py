"""HTTP adapter factory and exports."""
from typing import Type

from adapters.base import HealthTracker, ProviderGateway
from adapters.base_http import BaseHTTPAdapter
from adapters.ollama import OllamaAdapter
from adapters.openai import OpenAIAdapter
from adapters.openrouter import OpenRouterAdapter
from adapters.pool import ProviderPool
from models.config import HTTPAdapterConfig

# Registry of HTTP adapters
HTTP_ADAPTERS: dict[str, Type[BaseHTTPAdapter]] = {
    "ollama": OllamaAdapter,
    "openai": OpenAIAdapter,
    "openrouter": OpenRouterAdapter,
}


def create_adapter(name: str, config: HTTPAdapterConfig) -> BaseHTTPAdapter:
    """
    Factory function to create an HTTP adapter.

    Args:
        name: Adapter name as configured (used as provider id in health reports)
        config: Adapter configuration; ``config.type`` selects the class

    Returns:
        Adapter instance

    Raises:
        ValueError: If adapter type is not supported
        TypeError: If config is not an HTTPAdapterConfig
    """
    if not isinstance(config, HTTPAdapterConfig):
        raise TypeError(
            f"Invalid config type: {type(config)}. Expected HTTPAdapterConfig"
        )

    if config.type not in HTTP_ADAPTERS:
        raise ValueError(
            f"Unknown HTTP adapter type: '{config.type}'. "
            f"Supported types: {', '.join(HTTP_ADAPTERS.keys())}"
        )

    return HTTP_ADAPTERS[config.type](
        base_url=config.base_url,
        timeout=config.timeout,
        api_key=config.api_key,
        headers=config.headers,
        provider_id=name,
    )


def create_pool(adapters: dict[str, HTTPAdapterConfig]) -> ProviderPool:
    """Build a ProviderPool with one adapter per configured entry."""
    return ProviderPool({name: create_adapter(name, cfg) for name, cfg in adapters.items()})


__all__ = [
    "BaseHTTPAdapter",
    "HealthTracker",
    "OllamaAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "ProviderGateway",
    "ProviderPool",
    "create_adapter",
    "create_pool",
]
