"""Agent workspace manager — per-agent working directories and roster file.

Both operations are safe to run before every invocation: existing files
are never overwritten by ensure(), and the teammates block is rewritten
only when its rendered content changes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from config import AgentConfig, TeamConfig

log = logging.getLogger(__name__)

AGENTS_FILE = "AGENTS.md"
TEAMMATES_START = "<!-- TEAMMATES_START -->"
TEAMMATES_END = "<!-- TEAMMATES_END -->"

_DEFAULT_AGENTS_MD = f"""\
# Agent

Behavior rules for this agent. Edit freely; the teammates block below is
maintained by the daemon.

## Sending files

To send a file back to the chat, write it under the shared files directory
and include `[send_file: relative/path]` in your reply.

{TEAMMATES_START}
{TEAMMATES_END}
"""

_DEFAULT_SOUL_MD = """\
# Soul

Describe this agent's persona here.
"""

_DEFAULT_FILES = {
    AGENTS_FILE: _DEFAULT_AGENTS_MD,
    "SOUL.md": _DEFAULT_SOUL_MD,
}


def _atomic_write(path: Path, data: str) -> None:
    """Write to temp file then rename — atomic on POSIX."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.rename(path)


def ensure(agent_dir: Path) -> bool:
    """Create the agent directory and any missing default files.

    Returns True if the directory did not exist before.
    """
    created = not agent_dir.exists()
    agent_dir.mkdir(parents=True, exist_ok=True)
    (agent_dir / ".clawd").mkdir(exist_ok=True)
    for name, content in _DEFAULT_FILES.items():
        path = agent_dir / name
        if not path.exists():
            _atomic_write(path, content)
    if created:
        log.info("Initialized agent directory: %s", agent_dir)
    return created


def render_teammates(
    agent_id: str,
    agents: Mapping[str, AgentConfig],
    teams: Mapping[str, TeamConfig],
) -> str:
    """Render the roster block body for one agent. Pure function of inputs."""
    lines = ["## Teammates", ""]
    memberships = [t for t in sorted(teams.values(), key=lambda t: t.id)
                   if agent_id in t.agents]
    if not memberships:
        lines.append("You are not a member of any team.")
        return "\n".join(lines)

    for team in memberships:
        lines.append(f"### {team.name} (`{team.id}`)")
        lines.append("")
        for member_id in sorted(team.agents):
            if member_id == agent_id:
                continue
            member = agents.get(member_id)
            name = member.name if member else member_id
            role = " — team leader" if member_id == team.leader_agent else ""
            lines.append(f"- @{member_id}: {name}{role}")
        if len(team.agents) <= 1:
            lines.append("- (no other members)")
        lines.append("")
    return "\n".join(lines).rstrip()


def update_teammates(
    agent_dir: Path,
    agent_id: str,
    agents: Mapping[str, AgentConfig],
    teams: Mapping[str, TeamConfig],
) -> bool:
    """Rewrite the teammates block in AGENTS.md. Returns True if the file changed."""
    path = agent_dir / AGENTS_FILE
    current = path.read_text(encoding="utf-8") if path.exists() else ""
    block = f"{TEAMMATES_START}\n{render_teammates(agent_id, agents, teams)}\n{TEAMMATES_END}"

    start = current.find(TEAMMATES_START)
    end = current.find(TEAMMATES_END, start + 1) if start != -1 else -1
    if start != -1 and end != -1:
        updated = current[:start] + block + current[end + len(TEAMMATES_END):]
    else:
        # Markers missing (hand-edited file): append the block
        prefix = current if not current or current.endswith("\n") else current + "\n"
        updated = f"{prefix}\n{block}\n" if prefix else f"{block}\n"

    if updated == current:
        return False
    agent_dir.mkdir(parents=True, exist_ok=True)
    _atomic_write(path, updated)
    log.debug("Updated teammates roster for %s", agent_id)
    return True
