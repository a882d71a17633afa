"""Persona builder — assembles the agent's system prompt from workspace files.

Organizes content into cache tiers for provider-level optimization:
persona files are stable, people facts semi-stable, and the per-speaker
framing is dynamic.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

log = logging.getLogger(__name__)


class PersonaBuilder:
    """Builds system prompt blocks for a reply addressed to one speaker."""

    def __init__(
        self,
        workspace: Path,
        persona_files: list[str],
        owner: str = "",
        people: dict[str, str] | None = None,
        max_chars: int = 120,
    ):
        self.workspace = workspace
        self.persona_files = persona_files
        self.owner = owner
        self.people = dict(people or {})
        self.max_chars = max_chars
        self._persona_text = ""
        self.reload()

    def reload(self) -> None:
        """Re-read persona files from the workspace (SIGUSR1)."""
        self._persona_text = self._read_files(self.persona_files)
        log.debug("Persona loaded: %d chars from %d files",
                  len(self._persona_text), len(self.persona_files))

    def build(self, author: str) -> list[dict]:
        """Build system prompt blocks for a reply to ``author``.

        Returns list of {"text": str, "tier": "stable"|"semi_stable"|"dynamic"}
        """
        blocks = []
        if self._persona_text.strip():
            blocks.append({"text": self._persona_text, "tier": "stable"})

        semi = self._people_section(author)
        if semi.strip():
            blocks.append({"text": semi, "tier": "semi_stable"})

        blocks.append({"text": self._build_dynamic(author), "tier": "dynamic"})
        return blocks

    def _people_section(self, author: str) -> str:
        parts = []
        owner_fact = self.people.get(self.owner, "") if self.owner else ""
        if owner_fact:
            parts.append(f"About {self.owner} (your creator): {owner_fact}")

        if self.owner and author == self.owner:
            others = [(p, f) for p, f in self.people.items() if p != self.owner]
            if others:
                lines = [f"- {p}: {f}" for p, f in others]
                parts.append(
                    "People you know (reference naturally when relevant):\n"
                    + "\n".join(lines)
                )
        elif author in self.people:
            parts.append(f"About {author}: {self.people[author]}")
            parts.append(
                "Only reference other people if the conversation naturally "
                "leads there or they are directly mentioned."
            )
        else:
            who = self.owner or "your creator"
            parts.append(
                f"New person: you only know {who} personally. "
                "Greet warmly and build connection naturally."
            )
        return "\n\n".join(parts)

    def _build_dynamic(self, author: str) -> str:
        now = time.strftime("%a, %d. %b %Y - %H:%M %Z")
        parts = [
            f"Current date/time: {now}",
            f"You are replying to: {author}",
        ]
        if self.max_chars:
            parts.append(
                f"Keep casual replies under {self.max_chars} characters "
                "unless giving serious advice."
            )
        return "\n".join(parts)

    def _read_files(self, file_names: list[str]) -> str:
        """Read and concatenate workspace files."""
        parts = []
        for name in file_names:
            path = self.workspace / name
            if path.exists():
                try:
                    parts.append(path.read_text(encoding="utf-8").strip())
                except Exception as e:
                    log.warning("Failed to read %s: %s", path, e)
            else:
                log.debug("Persona file not found: %s", path)
        return "\n\n".join(p for p in parts if p)
