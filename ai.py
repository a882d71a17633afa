"""AI collaborator — reply generation and media suggestions.

Each call builds a provider for the tenant's own API key and closes it
afterwards, so no key or HTTP client outlives the call. Every failure (SDK error, timeout, empty answer)
surfaces as AiServiceError; callers turn that into silence.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable

from providers import LLMProvider, create_provider
from rooms import ChatEvent

log = logging.getLogger(__name__)

_NUMBERING_RE = re.compile(r"^\d+\.\s*")
MAX_SUGGESTIONS = 5


class AiServiceError(Exception):
    """The AI collaborator failed or returned nothing usable."""


def _close_quietly(provider: LLMProvider) -> None:
    try:
        provider.close()
    except Exception as e:
        log.debug("provider close failed: %s", e)


def format_dialog(history: Iterable[ChatEvent]) -> str:
    return "\n".join(f"{e.author}: {e.text}" for e in history)


class AIService:
    def __init__(
        self,
        reply_model: dict,
        suggest_model: dict | None = None,
        timeout: float = 30.0,
        provider_factory: Callable[[dict, str], LLMProvider] = create_provider,
    ):
        self.reply_model = reply_model
        self.suggest_model = suggest_model or reply_model
        self.timeout = timeout
        self._factory = provider_factory

    async def reply(
        self,
        api_key: str,
        persona: list[dict],
        history: list[ChatEvent],
        author: str,
        text: str,
        agent_name: str,
    ) -> str:
        """Generate a reply to ``author`` given recent room history."""
        dialog = format_dialog(history)
        prompt = (
            f"Recent conversation:\n{dialog}\n\n"
            f"{author}: {text}\n{agent_name}:"
        )
        answer = await self._complete(self.reply_model, api_key, persona, prompt)
        return answer.strip()

    async def suggest(self, api_key: str, seed: str) -> list[str]:
        """Up to five songs similar to ``seed``, numbering stripped."""
        prompt = (
            f'Suggest 5 popular songs similar to "{seed}". '
            "Return only song names with artists, one per line."
        )
        answer = await self._complete(self.suggest_model, api_key, [], prompt)
        lines = []
        for line in answer.splitlines():
            line = _NUMBERING_RE.sub("", line.strip())
            if line:
                lines.append(line)
        return lines[:MAX_SUGGESTIONS]

    async def _complete(
        self, model_cfg: dict, api_key: str, system_blocks: list[dict], prompt: str,
    ) -> str:
        provider = None
        try:
            provider = self._factory(model_cfg, api_key)
            system = provider.format_system(system_blocks)
            response = await asyncio.wait_for(
                provider.complete(system, prompt), timeout=self.timeout,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            raise AiServiceError(f"model call timed out after {self.timeout}s") from e
        except Exception as e:
            raise AiServiceError(f"model call failed: {type(e).__name__}: {e}") from e
        finally:
            if provider is not None:
                _close_quietly(provider)

        log.debug("AI usage: in=%d out=%d cache_read=%d",
                  response.usage.input_tokens, response.usage.output_tokens,
                  response.usage.cache_read_tokens)
        if response.truncated:
            log.warning("%s answer hit max_tokens", model_cfg.get("model", "?"))
        if not response.text or not response.text.strip():
            raise AiServiceError("model returned an empty response")
        return response.text
