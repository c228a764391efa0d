"""Tests for channels/ — CLI parsing, factory, queue relay."""

import asyncio
import threading
from unittest.mock import AsyncMock, patch

import pytest

from channels import InboundMessage, create_channel
from channels.cli import CLIChannel, parse_line
from channels.relay import ChannelRelay
from workqueue import QueueError, QueueState, new_descriptor


class FakeChannel:
    name = "fake"

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.send = AsyncMock()

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    async def receive(self):
        for msg in self.messages:
            yield msg


def _outgoing(queue, channel, sender="u1", response="reply"):
    item = queue.enqueue(new_descriptor(body="q", sender_id=sender, channel=channel))
    return queue.complete(queue.claim(item.id), response)


# ─── CLI Channel ─────────────────────────────────────────────────

class TestParseLine:
    def test_plain(self):
        msg = parse_line("  hello  ")
        assert msg.text == "hello"
        assert msg.source == "cli"
        assert msg.reset is False

    def test_reset_prefix(self):
        msg = parse_line("/reset start over", agent_id="coder")
        assert msg.text == "start over"
        assert msg.reset is True
        assert msg.agent_id == "coder"

    def test_reset_needs_word_boundary(self):
        assert parse_line("/resetting").reset is False

    def test_empty_ignored(self):
        assert parse_line("   ") is None
        assert parse_line("/reset") is None


class TestCreateChannel:
    def test_none_by_default(self, config):
        assert create_channel(config) is None

    def test_cli(self, config):
        assert isinstance(create_channel(config, "cli"), CLIChannel)

    def test_unknown(self, config):
        with pytest.raises(ValueError, match="Unknown channel type"):
            create_channel(config, "carrier-pigeon")


# ─── Relay ───────────────────────────────────────────────────────

class TestRelay:
    @pytest.mark.asyncio
    async def test_inbound_enqueues(self, tmp_queue):
        channel = FakeChannel([
            InboundMessage(text="hi", sender="u1", timestamp=1.0, source="fake",
                           agent_id="coder", reset=True),
        ])
        relay = ChannelRelay(channel, tmp_queue)
        await relay.inbound()
        [item_id] = tmp_queue.pending()
        record = tmp_queue.read_record(QueueState.INCOMING, item_id)
        assert record["body"] == "hi"
        assert record["channel"] == "fake"
        assert record["agent_id"] == "coder"
        assert record["reset"] is True

    @pytest.mark.asyncio
    async def test_deliver_sends_and_acks(self, tmp_queue):
        channel = FakeChannel()
        done = _outgoing(tmp_queue, "fake")
        relay = ChannelRelay(channel, tmp_queue)
        assert await relay.deliver_once() == 1
        channel.send.assert_awaited_once_with("u1", "reply", None)
        assert tmp_queue.locate(done.id) is None

    @pytest.mark.asyncio
    async def test_other_channels_untouched(self, tmp_queue):
        channel = FakeChannel()
        other = _outgoing(tmp_queue, "telegram")
        relay = ChannelRelay(channel, tmp_queue)
        assert await relay.deliver_once() == 0
        channel.send.assert_not_awaited()
        assert tmp_queue.locate(other.id) is QueueState.OUTGOING

    @pytest.mark.asyncio
    async def test_failed_send_kept_for_retry(self, tmp_queue):
        channel = FakeChannel()
        channel.send.side_effect = [ConnectionError("down"), None]
        done = _outgoing(tmp_queue, "fake")
        relay = ChannelRelay(channel, tmp_queue)
        assert await relay.deliver_once() == 0
        assert tmp_queue.locate(done.id) is QueueState.OUTGOING
        assert await relay.deliver_once() == 1
        assert tmp_queue.locate(done.id) is None

    @pytest.mark.asyncio
    async def test_unreadable_record_skipped(self, tmp_queue):
        channel = FakeChannel()
        (tmp_queue.dir(QueueState.OUTGOING) / "0001-bad.json").mkdir()
        done = _outgoing(tmp_queue, "fake")
        relay = ChannelRelay(channel, tmp_queue)
        assert await relay.deliver_once() == 1
        channel.send.assert_awaited_once_with("u1", "reply", None)
        assert tmp_queue.locate(done.id) is None

    @pytest.mark.asyncio
    async def test_outbound_survives_queue_error(self, tmp_queue):
        relay = ChannelRelay(FakeChannel(), tmp_queue, poll_interval=0)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise QueueError("disk gone")
            relay.stop()
            return 0

        relay.deliver_once = flaky
        await asyncio.wait_for(relay.outbound(), timeout=2)
        assert len(calls) == 2


class TestCLIReceive:
    @pytest.mark.asyncio
    async def test_reads_until_eof(self):
        channel = CLIChannel()
        with patch("builtins.input", side_effect=["hello", "   ", "/reset again", EOFError()]):
            messages = [msg async for msg in channel.receive()]
        assert [m.text for m in messages] == ["hello", "again"]
        assert [m.reset for m in messages] == [False, True]

    @pytest.mark.asyncio
    async def test_pending_read_does_not_hold_shutdown(self):
        release = threading.Event()

        def blocking(prompt):
            release.wait(5)
            raise EOFError

        async def first(channel):
            async for msg in channel.receive():
                return msg

        with patch("builtins.input", side_effect=blocking):
            task = asyncio.create_task(first(CLIChannel()))
            await asyncio.sleep(0.05)
            readers = [t for t in threading.enumerate() if t.name == "cli-stdin"]
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            release.set()
        assert readers
        assert all(t.daemon for t in readers)
