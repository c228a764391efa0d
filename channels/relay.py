"""Queue relay — connects an in-process channel to the work queue.

Inbound messages are written to incoming/. Outgoing records addressed to
the channel are sent and then acked (deleted). A failed send leaves the
record in place, so delivery is at-least-once.
"""

from __future__ import annotations

import asyncio
import logging
import time

from workqueue import MessageDescriptor, QueueError, QueueItem, WorkQueue, new_message_id

from . import Channel, InboundMessage

log = logging.getLogger(__name__)


class ChannelRelay:
    def __init__(self, channel: Channel, queue: WorkQueue, poll_interval: float = 1.0):
        self.channel = channel
        self.queue = queue
        self.poll_interval = poll_interval
        self.running = True

    def to_descriptor(self, msg: InboundMessage) -> MessageDescriptor:
        return MessageDescriptor(
            id=new_message_id(),
            channel=msg.source or self.channel.name,
            agent_id=msg.agent_id,
            sender_id=msg.sender,
            body=msg.text,
            received_at=msg.timestamp or time.time(),
            reset=msg.reset,
            sender_name=msg.sender_name,
            message_id=msg.message_id,
        )

    async def accept(self, msg: InboundMessage) -> QueueItem:
        return await asyncio.to_thread(self.queue.enqueue, self.to_descriptor(msg))

    async def inbound(self) -> None:
        """Enqueue every message the channel yields until it is exhausted."""
        async for msg in self.channel.receive():
            item = await self.accept(msg)
            log.debug("Queued inbound %s from %s", item.id, msg.sender)

    async def deliver_once(self) -> int:
        """Send pending outgoing records for this channel. Returns delivered count."""
        delivered = 0
        for item in await asyncio.to_thread(self.queue.outgoing):
            if item.descriptor.channel != self.channel.name:
                continue
            try:
                await self.channel.send(item.descriptor.sender_id, item.response or "",
                                        item.files or None)
            except Exception as e:
                log.warning("Delivery of %s failed, will retry: %s", item.id, e)
                continue
            await asyncio.to_thread(self.queue.ack, item.id)
            delivered += 1
        return delivered

    async def outbound(self) -> None:
        while self.running:
            try:
                await self.deliver_once()
            except QueueError as e:
                log.error("Outgoing delivery pass failed: %s", e)
            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self.running = False
