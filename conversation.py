"""Conversation store — bounded per-agent history for multi-turn continuity.

In-memory only. A daemon restart starts every agent with an empty history.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass

log = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 40  # keep last N turns per agent


@dataclass(frozen=True)
class Turn:
    role: str      # "user" | "assistant"
    content: str

    def to_message(self) -> dict:
        """Chat-completion message dict."""
        return {"role": self.role, "content": self.content}


class ConversationStore:
    """Per-agent ordered turns, trimmed oldest-first at the cap."""

    def __init__(self, max_messages: int = MAX_HISTORY_MESSAGES):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self._histories: dict[str, list[Turn]] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, agent_id: str) -> list[Turn]:
        return list(self._histories.get(agent_id, ()))

    def append(self, agent_id: str, turn: Turn) -> None:
        history = self._histories.setdefault(agent_id, [])
        history.append(turn)
        overflow = len(history) - self.max_messages
        if overflow > 0:
            del history[:overflow]

    def reset(self, agent_id: str) -> None:
        if self._histories.get(agent_id):
            log.info("Reset conversation for agent: %s", agent_id)
        self._histories[agent_id] = []

    def lock(self, agent_id: str) -> asyncio.Lock:
        """Mutual exclusion for one agent's history. Agents never share a lock."""
        return self._locks[agent_id]

    def agents(self) -> list[str]:
        return sorted(a for a, h in self._histories.items() if h)
