#!/usr/bin/env python3
"""clawd — a queue-driven router between chat channels and AI agents.

Entry point. Wires config → queue → conversation store → dispatcher
(and optionally an in-process channel relay). Handles the PID file,
Unix signals, logging, and the operator CLI.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path

# Add clawd directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from channels import create_channel
from channels.relay import ChannelRelay
from config import Config, ConfigurationError, load_config
from conversation import ConversationStore
from dispatch import Dispatcher
from workqueue import QueueError, QueueState, WorkQueue, new_descriptor

log = logging.getLogger("clawd")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning("Could not remove PID file %s: %s", path, e)


def _make_queue(config: Config) -> WorkQueue:
    return WorkQueue(config.queue_dir, io_retries=config.queue_io_retries)


# ─── Daemon ──────────────────────────────────────────────────────

class ClawDaemon:
    def __init__(self, config: Config, channel_type: str | None = None):
        self.config = config
        self.channel_type = channel_type
        self.start_time = time.time()
        self.queue: WorkQueue | None = None
        self.store: ConversationStore | None = None
        self.dispatcher: Dispatcher | None = None
        self.relay: ChannelRelay | None = None
        self._relay_task: asyncio.Task | None = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald / docker logs)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _init_core(self) -> None:
        self.queue = _make_queue(self.config)
        self.store = ConversationStore(max_messages=self.config.max_history_messages)
        self.dispatcher = Dispatcher(self.config, self.queue, self.store)
        self.config.workspace.mkdir(parents=True, exist_ok=True)
        self.config.files_dir.mkdir(parents=True, exist_ok=True)

    def _init_channel(self) -> None:
        channel = create_channel(self.config, self.channel_type)
        if channel is not None:
            self.relay = ChannelRelay(channel, self.queue, poll_interval=self.config.poll_interval)

    def _build_status(self) -> dict:
        """Status dict for SIGUSR2 and `clawd status`."""
        return {
            "pid": os.getpid(),
            "uptime_seconds": round(time.time() - self.start_time),
            "agents": sorted(self.config.agents),
            "active_conversations": self.store.agents() if self.store else [],
            "queue": self.queue.counts() if self.queue else {},
        }

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.write_text(json.dumps(self._build_status(), indent=2))

        def handle_sigterm():
            log.info("Shutdown signal received, finishing in-flight messages")
            if self.dispatcher:
                self.dispatcher.stop()
            if self._relay_task is not None:
                # Inbound read may be blocked on the transport
                self._relay_task.cancel()

        try:
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def _run_relay(self) -> None:
        channel = self.relay.channel
        await channel.connect()
        log.info("Channel connected: %s", channel.name)
        outbound = asyncio.create_task(self.relay.outbound())
        try:
            await self.relay.inbound()
        finally:
            # Channel exhausted (e.g. stdin EOF): stop taking new work
            self.dispatcher.stop()
            await self.dispatcher.wait_idle()
            await self.relay.deliver_once()
            self.relay.stop()
            outbound.cancel()
            try:
                await outbound
            except asyncio.CancelledError:
                pass
            await channel.disconnect()

    async def run(self, once: bool = False) -> None:
        """Main entry point — runs until signalled (or until drained with once)."""
        cfg = self.config
        pid_path = cfg.state_dir / "clawd.pid"

        self._setup_logging()
        log.info("Starting clawd (agents: %s)", ", ".join(sorted(cfg.agents)))

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            self._init_core()
            if once:
                await self.dispatcher.recover()
                n = await self.dispatcher.drain()
                log.info("Processed %d queued message(s)", n)
                return

            self._init_channel()
            self._setup_signals(asyncio.get_running_loop())
            log.info("clawd running (PID %d), queue: %s", os.getpid(), cfg.queue_dir)

            if self.relay is not None:
                self._relay_task = asyncio.create_task(self._run_relay())
                await self.dispatcher.run()
                try:
                    await self._relay_task
                except asyncio.CancelledError:
                    pass
            else:
                await self.dispatcher.run()
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self.dispatcher is not None:
                await self.dispatcher.close()
            _remove_pid_file(pid_path)
            log.info("clawd stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def _cmd_run(config: Config, args: argparse.Namespace) -> int:
    daemon = ClawDaemon(config, channel_type=args.channel)
    try:
        asyncio.run(daemon.run(once=args.once))
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_enqueue(config: Config, args: argparse.Namespace) -> int:
    queue = _make_queue(config)
    item = queue.enqueue(new_descriptor(
        body=args.text,
        sender_id=args.sender,
        agent_id=args.agent,
        channel=args.channel,
        reset=args.reset,
    ))
    print(item.id)
    return 0


def _cmd_requeue(config: Config, args: argparse.Namespace) -> int:
    queue = _make_queue(config)
    for item_id in args.ids:
        queue.requeue(item_id)
        print(f"requeued {item_id}")
    return 0


def _cmd_status(config: Config, args: argparse.Namespace) -> int:
    queue = _make_queue(config)
    status = {"queue": queue.counts()}
    if args.failed:
        status["failed"] = [
            {"id": item_id,
             "error": queue.read_record(QueueState.FAILED, item_id).get("error")}
            for item_id in queue.ids(QueueState.FAILED)
        ]
    print(json.dumps(status, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="clawd — route chat messages to AI agents through a durable queue",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("CLAWD_CONFIG", "./clawd.toml"),
        help="Path to config file (default: $CLAWD_CONFIG or ./clawd.toml)",
    )
    sub = parser.add_subparsers(dest="command")

    p_run = sub.add_parser("run", help="Run the daemon")
    p_run.add_argument("--channel", help="In-process channel (e.g. 'cli' for testing)")
    p_run.add_argument("--once", action="store_true",
                       help="Process what is queued, then exit")
    p_run.set_defaults(func=_cmd_run)

    p_enq = sub.add_parser("enqueue", help="Queue a message for an agent")
    p_enq.add_argument("text")
    p_enq.add_argument("--agent", default="", help="Target agent id (default: routing)")
    p_enq.add_argument("--sender", default="operator")
    p_enq.add_argument("--channel", default="cli", help="Channel name for the reply")
    p_enq.add_argument("--reset", action="store_true", help="Start a fresh conversation")
    p_enq.set_defaults(func=_cmd_enqueue)

    p_req = sub.add_parser("requeue", help="Move failed records back to incoming")
    p_req.add_argument("ids", nargs="+")
    p_req.set_defaults(func=_cmd_requeue)

    p_stat = sub.add_parser("status", help="Show queue counts")
    p_stat.add_argument("--failed", action="store_true", help="List failed records")
    p_stat.set_defaults(func=_cmd_status)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        # No subcommand: run the daemon
        raw = sys.argv[1:] if argv is None else argv
        args = parser.parse_args([*raw, "run"])

    try:
        config = load_config(args.config)
        return args.func(config, args)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 1
    except QueueError as e:
        print(f"Queue error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
