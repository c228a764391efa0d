"""CLI channel — stdin/stdout for testing.

The simplest possible channel, for interactive use. stdin is read on a
daemon thread, so a pending read never delays daemon shutdown.
`/reset <text>` starts a fresh conversation; `@agent <text>` picks an agent.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator

from . import InboundMessage

_RESET_PREFIX = "/reset"


class CLIChannel:
    name = "cli"

    def __init__(self, agent_id: str = ""):
        self.agent_id = agent_id

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def receive(self) -> AsyncIterator[InboundMessage]:
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue[str | None] = asyncio.Queue()
        reader = threading.Thread(target=_read_stdin, args=(loop, lines),
                                  name="cli-stdin", daemon=True)
        reader.start()
        while True:
            text = await lines.get()
            if text is None:
                return
            msg = parse_line(text, self.agent_id)
            if msg is not None:
                yield msg

    async def send(self, target: str, text: str, attachments: list[str] | None = None) -> None:
        if text:
            print(f"Agent> {text}", flush=True)
        if attachments:
            for a in attachments:
                print(f"Agent> [attachment: {a}]", flush=True)


def _read_stdin(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    """Feed stdin lines to the loop; None marks end of input."""
    while True:
        try:
            text = input("You> ")
        except (EOFError, KeyboardInterrupt):
            text = None
        try:
            loop.call_soon_threadsafe(lines.put_nowait, text)
        except RuntimeError:
            return  # loop closed
        if text is None:
            return


def parse_line(text: str, agent_id: str = "") -> InboundMessage | None:
    text = text.strip()
    reset = False
    if text == _RESET_PREFIX or text.startswith(_RESET_PREFIX + " "):
        reset = True
        text = text[len(_RESET_PREFIX):].strip()
    if not text:
        return None
    return InboundMessage(
        text=text,
        sender="cli",
        timestamp=time.time(),
        source="cli",
        agent_id=agent_id,
        reset=reset,
    )
