"""Response directives — `[send_file: path]` markers in agent replies.

Targets are resolved against a fixed files root. Anything that is not a
relative path to an existing regular file inside that root is rejected
and the directive is dropped; the reason goes to the log, never to the chat.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

log = logging.getLogger(__name__)

SEND_FILE_RE = re.compile(r"\[send_file:\s*([^\]\n]*?)\s*\]")


class ValidationError(Exception):
    """Raised when a directive target is not allowed."""
    pass


def check_path(target: str, root: Path) -> Path:
    """Resolve target inside root. Raises ValidationError otherwise."""
    if not target:
        raise ValidationError("Empty path")
    if os.path.isabs(target) or target.startswith("~"):
        raise ValidationError(f"Absolute path not allowed: {target}")
    if ".." in Path(target).parts:
        raise ValidationError(f"Parent traversal not allowed: {target}")
    try:
        base = root.resolve()
        # resolve() follows symlinks, so a link pointing outside fails below
        resolved = (base / target).resolve()
    except (OSError, RuntimeError) as e:
        raise ValidationError(f"Invalid path: {target} ({e})") from e
    if not resolved.is_relative_to(base):
        raise ValidationError(f"Path escapes files root: {target}")
    if not resolved.is_file():
        raise ValidationError(f"Not a file: {target}")
    return resolved


def resolve_directives(text: str, files_root: Path) -> tuple[str, list[str]]:
    """Strip send_file markers from text.

    Returns (cleaned_text, accepted_file_paths). Rejected targets are logged.
    """
    files: list[str] = []

    def _replace(match: re.Match) -> str:
        target = match.group(1)
        try:
            path = check_path(target, files_root)
        except ValidationError as e:
            log.warning("Dropped send_file directive: %s", e)
            return ""
        if str(path) not in files:
            files.append(str(path))
        return ""

    cleaned = SEND_FILE_RE.sub(_replace, text)
    if cleaned != text:
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    return cleaned, files
