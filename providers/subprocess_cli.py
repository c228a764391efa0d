"""Subprocess CLI provider — runs a local agent CLI per message.

The CLI keeps its own session state, so resuming or starting fresh is
encoded in argv. Output is line-delimited JSON events; the reply is the
text of the last completed agent message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from pathlib import Path

from config import ConfigurationError

from . import InvokeRequest, ProviderError

log = logging.getLogger(__name__)

FALLBACK_RESPONSE = "Sorry, I could not generate a response from the agent CLI."

# Environment variable patterns to filter out of child processes
_SECRET_PREFIXES = ("CLAWD_", "OPENROUTER_")
_SECRET_SUFFIXES = ("_KEY", "_TOKEN", "_SECRET", "_PASSWORD", "_CREDENTIALS", "_PASS")


def _safe_env(pass_env: list[str] | None = None) -> dict[str, str]:
    """Build environment dict with secret variables filtered out."""
    allow = set(pass_env or ())
    env = {}
    for key, val in os.environ.items():
        if key not in allow:
            if any(key.startswith(p) for p in _SECRET_PREFIXES):
                continue
            if any(key.endswith(s) for s in _SECRET_SUFFIXES):
                continue
        env[key] = val
    return env


def extract_agent_message(output: str) -> str:
    """Text of the last completed agent_message event, or "" if none.

    Non-JSON lines (progress output, warnings) are skipped.
    """
    response = ""
    for line in output.strip().splitlines():
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict) or event.get("type") != "item.completed":
            continue
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            response = str(item.get("text") or "")
    return response


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        # Kill entire process group to prevent orphans
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def run_command(args: list[str], cwd: Path,
                      env: dict[str, str] | None = None,
                      timeout: float | None = None) -> str:
    """Run args in cwd and return stdout. Raises ProviderError on non-zero exit.

    The process is killed and reaped on timeout, error or cancellation.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise ConfigurationError(f"CLI provider command not found: {args[0]}") from e
    except OSError as e:
        raise ProviderError(f"CLI provider failed to start: {e}", transient=True) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as e:
        raise ProviderError(f"CLI provider timed out after {timeout:.0f}s",
                            code="timeout") from e
    finally:
        if proc.returncode is None:
            _kill_group(proc)
            await proc.wait()

    out = stdout.decode("utf-8", errors="replace") if stdout else ""
    err = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
    if proc.returncode != 0:
        raise ProviderError(
            err or f"Command exited with code {proc.returncode}",
            code=proc.returncode,
            detail=err,
        )
    return out


class SubprocessCliProvider:
    kind = "cli"

    def __init__(self, command: list[str], timeout: float | None = None,
                 pass_env: list[str] | None = None):
        if not command:
            raise ConfigurationError("[providers.cli] command is empty")
        self.command = list(command)
        self.timeout = timeout
        self.pass_env = list(pass_env or [])

    def build_args(self, request: InvokeRequest) -> list[str]:
        args = [*self.command, "exec"]
        if not request.reset:
            args += ["resume", "--last"]
        if request.model:
            args += ["--model", request.model]
        args += ["--json", request.message]
        return args

    async def invoke(self, request: InvokeRequest) -> str:
        if request.reset:
            log.info("Resetting CLI conversation for agent: %s", request.agent_id)
        request.cwd.mkdir(parents=True, exist_ok=True)
        output = await run_command(
            self.build_args(request),
            cwd=request.cwd,
            env=_safe_env(self.pass_env),
            timeout=self.timeout,
        )
        response = extract_agent_message(output)
        if not response:
            log.warning("CLI provider produced no agent message (agent: %s)", request.agent_id)
            return FALLBACK_RESPONSE
        return response

    async def close(self) -> None:
        pass
