"""Anthropic-compatible provider.

Persona blocks map onto Anthropic system blocks; with ``cache_control``
enabled the stable and semi-stable tiers are marked for prompt caching, so
the persona files and people facts are reused across a room's replies.
"""

from __future__ import annotations

import asyncio
from typing import Any

from . import LLMResponse, Usage

try:
    import anthropic
except ImportError:
    anthropic = None  # type: ignore[assignment]

_CACHED_TIERS = ("stable", "semi_stable")


class AnthropicCompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 1024,
        base_url: str = "",
        cache_control: bool = False,
    ):
        if anthropic is None:
            raise RuntimeError("anthropic-compat provider requires: pip install anthropic")
        if base_url:
            self.client = anthropic.Anthropic(api_key=api_key, base_url=base_url)
        else:
            self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.cache_control = cache_control

    def format_system(self, blocks: list[dict]) -> list[dict]:
        """Each block: {"text": str, "tier": "stable"|"semi_stable"|"dynamic"}."""
        result = []
        for block in blocks:
            entry: dict[str, Any] = {"type": "text", "text": block["text"]}
            if self.cache_control and block.get("tier") in _CACHED_TIERS:
                entry["cache_control"] = {"type": "ephemeral"}
            result.append(entry)
        return result

    async def complete(self, system: list[dict], prompt: str) -> LLMResponse:
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            params["system"] = system

        response = await asyncio.to_thread(self.client.messages.create, **params)

        text_parts = [block.text for block in response.content if block.type == "text"]
        return LLMResponse(
            text="\n".join(text_parts) if text_parts else None,
            usage=Usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                cache_read_tokens=getattr(response.usage, "cache_read_input_tokens", 0) or 0,
            ),
            truncated=response.stop_reason == "max_tokens",
        )

    def close(self) -> None:
        self.client.close()
