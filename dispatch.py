"""Dispatch loop — claims queued messages and runs them through providers.

Claimed records go to a per-agent lane. A lane processes its records one
at a time in claim (receipt) order, so an agent's history is always
appended in arrival order; lanes of different agents run concurrently,
bounded by a global semaphore.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import re

from config import AgentConfig, Config, ConfigurationError
from conversation import ConversationStore
from directives import resolve_directives
from providers import ProviderError, ProviderInvoker
from workqueue import MessageDescriptor, QueueError, QueueItem, WorkQueue

log = logging.getLogger(__name__)

# "@agent_id message" routes to agent_id when the record names no agent
_MENTION_RE = re.compile(r"^@(\S+)\s+(.*)$", re.DOTALL)


class Dispatcher:
    def __init__(
        self,
        config: Config,
        queue: WorkQueue,
        store: ConversationStore,
        invoker: ProviderInvoker | None = None,
    ):
        self.config = config
        self.queue = queue
        self.store = store
        self.invoker = invoker or ProviderInvoker(config, store)
        self.running = False
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._lanes: dict[str, collections.deque[QueueItem]] = {}
        self._lane_tasks: dict[str, asyncio.Task] = {}
        self._wake: asyncio.Event | None = None

    # ─── Routing ─────────────────────────────────────────────────

    def resolve_agent(self, descriptor: MessageDescriptor) -> tuple[str, AgentConfig, str]:
        """Return (agent_id, agent_config, message_text) for a record."""
        agent_id = descriptor.agent_id
        message = descriptor.body
        if not agent_id:
            m = _MENTION_RE.match(message)
            if m and self.config.agent(m.group(1)) is not None:
                agent_id, message = m.group(1), m.group(2)
        if not agent_id:
            agent_id = self.config.default_agent_id
        agent = self.config.agent(agent_id)
        if agent is None:
            raise ConfigurationError(f"Unknown agent: {agent_id!r}")
        return agent_id, agent, message

    def _lane_key(self, item: QueueItem) -> str:
        try:
            return self.resolve_agent(item.descriptor)[0]
        except ConfigurationError:
            return item.descriptor.agent_id

    # ─── Processing ──────────────────────────────────────────────

    async def process(self, item: QueueItem) -> QueueItem:
        """Invoke the provider for one claimed record and move it on.

        Returns the record in its final state (outgoing or failed), or in
        processing if even the failure move could not be written.
        """
        d = item.descriptor
        timeout = self.config.agent_timeout
        try:
            agent_id, agent, message = self.resolve_agent(d)
            async with self._semaphore:
                response = await asyncio.wait_for(
                    self.invoker.invoke(
                        agent, agent_id, message, self.config.workspace, d.reset,
                        agents=self.config.agents, teams=self.config.teams,
                    ),
                    timeout=timeout,
                )
        except TimeoutError:
            return await self._fail(item, ProviderError(
                f"Provider call timed out after {timeout:.0f}s", code="timeout",
            ))
        except (ProviderError, ConfigurationError) as e:
            return await self._fail(item, e)
        except Exception as e:
            log.exception("Unexpected error processing %s", d.id)
            return await self._fail(item, e)

        text, files = resolve_directives(response, self.config.files_dir)
        try:
            done = await asyncio.to_thread(self.queue.complete, item, text, files)
        except QueueError as e:
            log.error("Could not complete %s: %s", d.id, e)
            return await self._fail(item, e)
        log.info("Completed %s (agent: %s, %d chars, %d files)",
                 d.id, agent_id, len(text), len(files))
        return done

    async def _fail(self, item: QueueItem, error: BaseException) -> QueueItem:
        try:
            failed = await asyncio.to_thread(self.queue.fail, item, error)
        except QueueError as e:
            log.error("Could not move %s to failed (%s); left in processing", item.id, e)
            return item
        log.error("Failed %s: %s: %s", item.id, type(error).__name__, error)
        if self.config.notify_on_failure:
            try:
                await asyncio.to_thread(self.queue.post_notice, failed, self.config.error_message)
            except QueueError as e:
                log.error("Could not post failure notice for %s: %s", item.id, e)
        return failed

    # ─── Lanes ───────────────────────────────────────────────────

    def _submit(self, item: QueueItem) -> None:
        key = self._lane_key(item)
        self._lanes.setdefault(key, collections.deque()).append(item)
        task = self._lane_tasks.get(key)
        if task is None or task.done():
            self._lane_tasks[key] = asyncio.create_task(self._run_lane(key))

    async def _run_lane(self, key: str) -> None:
        lane = self._lanes[key]
        while lane:
            await self.process(lane.popleft())

    async def wait_idle(self) -> None:
        """Wait until every lane has emptied."""
        while True:
            active = [t for t in self._lane_tasks.values() if not t.done()]
            if not active:
                return
            await asyncio.gather(*active)

    async def poll_once(self) -> int:
        """Claim everything pending and hand it to lanes. Returns claimed count."""
        claimed = 0
        for item_id in await asyncio.to_thread(self.queue.pending):
            item = await asyncio.to_thread(self.queue.claim, item_id)
            if item is None:
                continue
            log.debug("Claimed %s", item_id)
            self._submit(item)
            claimed += 1
        return claimed

    async def drain(self) -> int:
        """Process everything currently pending, then return."""
        claimed = await self.poll_once()
        await self.wait_idle()
        return claimed

    async def recover(self) -> dict[str, int]:
        return await asyncio.to_thread(self.queue.recover, self.config.stranded_policy)

    # ─── Main loop ───────────────────────────────────────────────

    async def run(self) -> None:
        """Poll until stop(); in-flight records finish before returning."""
        self._wake = asyncio.Event()
        self.running = True
        try:
            await self.recover()
        except QueueError as e:
            log.error("Queue recovery failed: %s", e)
        log.info("Dispatcher polling %s every %.1fs (max concurrency %d)",
                 self.queue.root, self.config.poll_interval, self.config.max_concurrency)
        while self.running:
            try:
                await self.poll_once()
            except QueueError as e:
                log.error("Queue poll failed: %s", e)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.poll_interval)
            except TimeoutError:
                pass
            self._wake.clear()
        await self.wait_idle()
        log.info("Dispatcher stopped")

    def stop(self) -> None:
        self.running = False
        if self._wake is not None:
            self._wake.set()

    def wake(self) -> None:
        """Poll immediately instead of waiting for the interval."""
        if self._wake is not None:
            self._wake.set()

    async def close(self) -> None:
        await self.invoker.close()
