"""Channel interface and shared types.

Defines the contract between chat transports and the queue. A channel
yields inbound messages and sends replies; channels/relay.py moves them
in and out of the work queue. Connectors running as separate processes
can skip this module and write/read the queue directories directly.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config


@dataclass
class InboundMessage:
    text: str
    sender: str           # Platform user id, "cli", etc.
    timestamp: float
    source: str           # Channel name: "discord", "telegram", "cli", ...
    agent_id: str = ""    # Empty: dispatcher routes by @mention or default agent
    reset: bool = False   # Start a fresh conversation with this message
    sender_name: str = ""
    message_id: str = ""


class Channel(Protocol):
    name: str

    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    def receive(self) -> AsyncIterator[InboundMessage]: ...
    async def send(self, target: str, text: str, attachments: list[str] | None = None) -> None: ...


def create_channel(config: Config, channel_type: str | None = None) -> Channel | None:
    """Factory: create the in-process channel, or None for queue-only mode."""
    ch_type = channel_type or config.raw("channel", "type", default="none")

    if ch_type == "none":
        return None
    if ch_type == "cli":
        from .cli import CLIChannel
        return CLIChannel(agent_id=config.raw("channel", "cli", "agent", default=""))
    raise ValueError(f"Unknown channel type: {ch_type!r}")
