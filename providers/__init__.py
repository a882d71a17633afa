"""LLM provider interface and shared types.

A provider turns persona blocks plus one user prompt into a completion.
Providers are built per call with the tenant's own key and closed after
use. Provider-specific features (prompt caching) stay inside the
implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass
class LLMResponse:
    text: str | None
    usage: Usage
    truncated: bool = False  # Stopped at max_tokens


class LLMProvider(Protocol):
    def format_system(self, blocks: list[dict]) -> Any:
        """Convert tiered persona blocks to the provider's system format."""
        ...

    async def complete(self, system: Any, prompt: str) -> LLMResponse: ...

    def close(self) -> None: ...


def create_provider(model_config: dict, api_key: str = "") -> LLMProvider:
    """Factory: create provider from a ``[models.*]`` section."""
    provider_type = model_config.get("provider", "")

    if provider_type == "anthropic-compat":
        from .anthropic_compat import AnthropicCompatProvider
        return AnthropicCompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 1024),
            base_url=model_config.get("base_url", ""),
            cache_control=model_config.get("cache_control", False),
        )
    if provider_type == "openai-compat":
        from .openai_compat import OpenAICompatProvider
        return OpenAICompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 1024),
            base_url=model_config.get("base_url", "https://api.openai.com/v1"),
        )
    raise ValueError(f"Unknown provider type: {provider_type!r}")
