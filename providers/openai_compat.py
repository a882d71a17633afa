"""OpenAI-compatible provider.

Used for Gemini's OpenAI endpoint by default; any server speaking the chat
completions API works. The SDK client is synchronous, so calls run in a
worker thread.
"""

from __future__ import annotations

import asyncio

from . import LLMResponse, Usage

try:
    import openai
except ImportError:
    openai = None  # type: ignore[assignment]


class OpenAICompatProvider:
    def __init__(self, api_key: str, model: str, max_tokens: int = 1024, base_url: str = ""):
        if openai is None:
            raise RuntimeError("openai-compat provider requires: pip install openai")
        if base_url:
            self.client = openai.OpenAI(api_key=api_key, base_url=base_url)
        else:
            self.client = openai.OpenAI(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    def format_system(self, blocks: list[dict]) -> str:
        # No client-side cache tiers; the blocks collapse into one system message
        return "\n\n".join(b["text"] for b in blocks)

    async def complete(self, system: str, prompt: str) -> LLMResponse:
        messages = [{"role": "user", "content": prompt}]
        if system:
            messages.insert(0, {"role": "system", "content": system})

        response = await asyncio.to_thread(
            self.client.chat.completions.create,
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
        )

        choice = response.choices[0]
        u = response.usage
        return LLMResponse(
            text=choice.message.content,
            usage=Usage(
                input_tokens=u.prompt_tokens if u else 0,
                output_tokens=u.completion_tokens if u else 0,
            ),
            truncated=choice.finish_reason == "length",
        )

    def close(self) -> None:
        self.client.close()
