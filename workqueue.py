"""Durable work queue — JSON records moved between state directories.

Layout under the queue root:

    incoming/    producers append here (any connector)
    processing/  claimed by the dispatcher
    outgoing/    responses awaiting delivery (connector acks by deleting)
    failed/      errors kept for operator inspection

Every state change is a single rename of `<id>.json`, so a record is in
exactly one directory at any time. Content changes (adding the response
or the error) are written in place inside processing/ via temp file +
replace before the rename. Claims are serialized by an flock on
`.claim.lock` so concurrent dispatchers never take the same record.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import re
import time
import uuid
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_RECORD_SUFFIX = ".json"
_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")
_DESCRIPTOR_FIELDS = ("id", "channel", "agent_id", "sender_id", "sender_name",
                      "message_id", "body", "received_at", "reset")
_REQUIRED_FIELDS = ("id", "sender_id", "body", "received_at")


class QueueError(Exception):
    """Raised when a queue record cannot be moved, read or written."""
    pass


class QueueState(str, Enum):
    INCOMING = "incoming"
    PROCESSING = "processing"
    OUTGOING = "outgoing"
    FAILED = "failed"


def new_message_id() -> str:
    """Epoch-ms prefix keeps lexical order close to receipt order."""
    return f"{int(time.time() * 1000):013d}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class MessageDescriptor:
    id: str
    channel: str
    agent_id: str
    sender_id: str
    body: str
    received_at: float
    reset: bool = False
    sender_name: str = ""
    message_id: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> MessageDescriptor:
        missing = [k for k in _REQUIRED_FIELDS if k not in data]
        if missing:
            raise ValueError(f"descriptor missing fields: {', '.join(missing)}")
        return cls(
            id=str(data["id"]),
            channel=str(data.get("channel", "")),
            agent_id=str(data.get("agent_id") or ""),
            sender_id=str(data["sender_id"]),
            body=str(data["body"]),
            received_at=float(data["received_at"]),
            reset=bool(data.get("reset", False)),
            sender_name=str(data.get("sender_name", "")),
            message_id=str(data.get("message_id", "")),
        )


def new_descriptor(
    body: str,
    sender_id: str,
    agent_id: str = "",
    channel: str = "",
    reset: bool = False,
    sender_name: str = "",
    message_id: str = "",
) -> MessageDescriptor:
    return MessageDescriptor(
        id=new_message_id(),
        channel=channel,
        agent_id=agent_id,
        sender_id=sender_id,
        body=body,
        received_at=time.time(),
        reset=reset,
        sender_name=sender_name,
        message_id=message_id,
    )


@dataclass
class QueueItem:
    descriptor: MessageDescriptor
    state: QueueState
    path: Path
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def response(self) -> str | None:
        return self.extra.get("response")

    @property
    def files(self) -> list[str]:
        return list(self.extra.get("files", []))

    @property
    def error(self) -> dict | None:
        return self.extra.get("error")

    def record(self) -> dict:
        return {**self.descriptor.to_dict(), **self.extra}


def _error_detail(error: BaseException | dict) -> dict:
    if isinstance(error, dict):
        return dict(error)
    return {
        "type": type(error).__name__,
        "message": str(error) or type(error).__name__,
        "status": getattr(error, "status", None),
        "code": getattr(error, "code", None),
        "detail": getattr(error, "detail", ""),
    }


class WorkQueue:
    """Directory-backed queue with atomic state transitions."""

    def __init__(self, root: Path, io_retries: int = 3, retry_delay: float = 0.05):
        self.root = Path(root)
        self.io_retries = max(0, io_retries)
        self.retry_delay = retry_delay
        self.lock_path = self.root / ".claim.lock"
        for state in QueueState:
            self.dir(state).mkdir(parents=True, exist_ok=True)

    def dir(self, state: QueueState) -> Path:
        return self.root / state.value

    def _path(self, state: QueueState, item_id: str) -> Path:
        return self.dir(state) / f"{item_id}{_RECORD_SUFFIX}"

    # ─── Low-level I/O ───────────────────────────────────────────

    def _retry(self, what: str, fn, *args):
        """Run an I/O call, retrying OSError. FileNotFoundError is not retried."""
        attempts = 1 + self.io_retries
        last: OSError | None = None
        for attempt in range(attempts):
            try:
                return fn(*args)
            except FileNotFoundError:
                raise
            except OSError as e:
                last = e
                log.warning("Queue %s failed (attempt %d/%d): %s", what, attempt + 1, attempts, e)
                if attempt + 1 < attempts:
                    time.sleep(self.retry_delay * (2 ** attempt))
        raise QueueError(f"{what} failed after {attempts} attempts: {last}") from last

    @staticmethod
    def _write_file(path: Path, data: dict) -> None:
        tmp = path.parent / f".{path.name}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _write(self, path: Path, data: dict) -> None:
        self._retry(f"write {path.name}", self._write_file, path, data)

    def _move(self, src: Path, dst: Path) -> None:
        self._retry(f"move {src.name} to {dst.parent.name}", os.rename, src, dst)

    @staticmethod
    def _read_file(path: Path) -> dict:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("record is not a JSON object")
        return data

    def _load(self, state: QueueState, path: Path) -> QueueItem:
        data = self._retry(f"read {path.name}", self._read_file, path)
        descriptor = MessageDescriptor.from_dict(data)
        extra = {k: v for k, v in data.items() if k not in _DESCRIPTOR_FIELDS}
        return QueueItem(descriptor=descriptor, state=state, path=path, extra=extra)

    def ids(self, state: QueueState) -> list[str]:
        return sorted(
            p.name[:-len(_RECORD_SUFFIX)]
            for p in self.dir(state).iterdir()
            if p.name.endswith(_RECORD_SUFFIX) and not p.name.startswith(".")
        )

    @contextlib.contextmanager
    def _claim_lock(self) -> Iterator[None]:
        """Exclusive across processes and threads (flock per open file)."""
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    # ─── Producer side ───────────────────────────────────────────

    def enqueue(self, descriptor: MessageDescriptor) -> QueueItem:
        """Append a descriptor to incoming/."""
        if not _ID_RE.fullmatch(descriptor.id):
            raise QueueError(f"Invalid queue id: {descriptor.id!r}")
        existing = self.locate(descriptor.id)
        if existing is not None:
            raise QueueError(f"Duplicate queue id {descriptor.id} (already {existing.value})")
        path = self._path(QueueState.INCOMING, descriptor.id)
        self._write(path, descriptor.to_dict())
        log.debug("Enqueued %s for agent %r", descriptor.id, descriptor.agent_id)
        return QueueItem(descriptor=descriptor, state=QueueState.INCOMING, path=path)

    # ─── Dispatcher side ─────────────────────────────────────────

    def pending(self) -> list[str]:
        """Ids waiting in incoming/, oldest first."""
        return self.ids(QueueState.INCOMING)

    def claim(self, item_id: str) -> QueueItem | None:
        """Move incoming → processing. None if another claimer got it first."""
        src = self._path(QueueState.INCOMING, item_id)
        dst = self._path(QueueState.PROCESSING, item_id)
        with self._claim_lock():
            if not src.exists():
                return None
            try:
                self._move(src, dst)
            except FileNotFoundError:
                return None
        try:
            return self._load(QueueState.PROCESSING, dst)
        except (ValueError, TypeError, QueueError) as e:
            self._quarantine(dst, e)
            return None

    def claim_next(self) -> QueueItem | None:
        for item_id in self.pending():
            item = self.claim(item_id)
            if item is not None:
                return item
        return None

    def _quarantine(self, path: Path, error: Exception) -> bool:
        """Move an unusable processing record to failed/ with the error.

        The original is kept as `failed/<id>.raw` next to a failure record
        `failed/<id>.json`. Never raises; returns False if the record could
        not be moved and was left where it is.
        """
        item_id = path.name[:-len(_RECORD_SUFFIX)]
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            raw = None
        try:
            self._move(path, self.dir(QueueState.FAILED) / f"{item_id}.raw")
        except (QueueError, FileNotFoundError) as e:
            log.error("Unusable queue record %s could not be quarantined, left in %s: %s",
                      item_id, path.parent.name, e)
            return False
        log.error("Unusable queue record %s moved to failed: %s", item_id, error)
        try:
            self._write(self._path(QueueState.FAILED, item_id), {
                "id": item_id,
                "raw": raw,
                "raw_path": f"{item_id}.raw",
                "error": _error_detail(error),
                "failed_at": time.time(),
            })
        except QueueError as e:
            log.error("Could not write failure record for %s: %s", item_id, e)
        return True

    def _transition(self, item: QueueItem, target: QueueState, extra: dict) -> QueueItem:
        if item.state is not QueueState.PROCESSING:
            raise QueueError(f"{item.id} is {item.state.value}, not processing")
        src = self._path(QueueState.PROCESSING, item.id)
        merged = {**item.extra, **extra}
        self._write(src, {**item.descriptor.to_dict(), **merged})
        dst = self._path(target, item.id)
        self._move(src, dst)
        return QueueItem(descriptor=item.descriptor, state=target, path=dst, extra=merged)

    def complete(self, item: QueueItem, response: str, files: list[str] | None = None) -> QueueItem:
        """processing → outgoing, carrying the response text."""
        return self._transition(item, QueueState.OUTGOING, {
            "response": response,
            "files": list(files or []),
            "completed_at": time.time(),
        })

    def fail(self, item: QueueItem, error: BaseException | dict) -> QueueItem:
        """processing → failed, keeping the error detail. Never retried automatically."""
        return self._transition(item, QueueState.FAILED, {
            "error": _error_detail(error),
            "failed_at": time.time(),
        })

    def post_notice(self, item: QueueItem, text: str) -> QueueItem:
        """Write a separate outgoing record replying to item with text."""
        notice_id = f"{item.id}.notice"
        descriptor = MessageDescriptor.from_dict({**item.descriptor.to_dict(), "id": notice_id})
        extra = {"response": text, "files": [], "notice": True,
                 "reply_to": item.id, "completed_at": time.time()}
        path = self._path(QueueState.OUTGOING, notice_id)
        self._write(path, {**descriptor.to_dict(), **extra})
        return QueueItem(descriptor=descriptor, state=QueueState.OUTGOING, path=path, extra=extra)

    def recover(self, policy: str = "requeue") -> dict[str, int]:
        """Resolve records stranded in processing/ by a crash.

        Records already carrying a response or an error finish their
        interrupted move. The rest go back to incoming/ under "requeue"
        and stay put under "leave".
        """
        counts = {"requeued": 0, "completed": 0, "failed": 0, "left": 0}
        for item_id in self.ids(QueueState.PROCESSING):
            path = self._path(QueueState.PROCESSING, item_id)
            try:
                data = self._retry(f"read {path.name}", self._read_file, path)
                MessageDescriptor.from_dict(data)
            except FileNotFoundError:
                continue
            except (ValueError, TypeError, QueueError) as e:
                counts["failed" if self._quarantine(path, e) else "left"] += 1
                continue
            if "response" in data:
                target, outcome = QueueState.OUTGOING, "completed"
            elif "error" in data:
                target, outcome = QueueState.FAILED, "failed"
            elif policy == "requeue":
                target, outcome = QueueState.INCOMING, "requeued"
            else:
                counts["left"] += 1
                continue
            try:
                self._move(path, self._path(target, item_id))
            except QueueError as e:
                log.error("Could not recover %s to %s, left in processing: %s",
                          item_id, target.value, e)
                counts["left"] += 1
                continue
            counts[outcome] += 1
        if any(counts.values()):
            log.warning("Recovered stranded queue records: %s", counts)
        return counts

    # ─── Connector side ──────────────────────────────────────────

    def outgoing(self) -> list[QueueItem]:
        items = []
        for item_id in self.ids(QueueState.OUTGOING):
            path = self._path(QueueState.OUTGOING, item_id)
            try:
                items.append(self._load(QueueState.OUTGOING, path))
            except FileNotFoundError:
                continue  # acked concurrently
            except (ValueError, TypeError, QueueError) as e:
                log.error("Skipping unreadable outgoing record %s: %s", item_id, e)
        return items

    def ack(self, item_id: str) -> bool:
        """Delete a delivered outgoing record. False if already gone."""
        try:
            self._retry(f"ack {item_id}", os.unlink, self._path(QueueState.OUTGOING, item_id))
        except FileNotFoundError:
            return False
        return True

    # ─── Operator side ───────────────────────────────────────────

    def requeue(self, item_id: str) -> QueueItem:
        """Send a failed record back to incoming/ without its failure fields."""
        path = self._path(QueueState.FAILED, item_id)
        if not path.exists():
            raise QueueError(f"No failed record with id {item_id}")
        try:
            item = self._load(QueueState.FAILED, path)
        except (ValueError, TypeError) as e:
            raise QueueError(f"Failed record {item_id} is not a valid descriptor: {e}") from e
        self._write(path, item.descriptor.to_dict())
        dst = self._path(QueueState.INCOMING, item_id)
        self._move(path, dst)
        log.info("Requeued failed record %s", item_id)
        return QueueItem(descriptor=item.descriptor, state=QueueState.INCOMING, path=dst)

    def load(self, state: QueueState, item_id: str) -> QueueItem:
        return self._load(state, self._path(state, item_id))

    def read_record(self, state: QueueState, item_id: str) -> dict:
        """Raw record, including quarantined records with no valid descriptor."""
        return self._retry(f"read {item_id}", self._read_file, self._path(state, item_id))

    def locate(self, item_id: str) -> QueueState | None:
        for state in QueueState:
            if self._path(state, item_id).exists():
                return state
        return None

    def counts(self) -> dict[str, int]:
        return {state.value: len(self.ids(state)) for state in QueueState}
