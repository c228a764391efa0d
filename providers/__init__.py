"""Provider interface and shared types.

Defines the contract between the dispatcher and the model backends.
Two variants exist — an HTTP chat-completion API and a local CLI run as
a subprocess. Both expose `invoke(request) -> str` and are built by
create_provider().
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Union

import workspace
from config import DEPRECATED_PROVIDERS, AgentConfig, ConfigurationError, TeamConfig

if TYPE_CHECKING:
    from config import Config
    from conversation import ConversationStore

    from .http_completion import HttpCompletionProvider
    from .subprocess_cli import SubprocessCliProvider

    Provider = Union[HttpCompletionProvider, SubprocessCliProvider]

log = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider call failed: bad status, non-zero exit, or unusable output.

    status: HTTP status code, if any.
    code: provider error code or process exit code.
    detail: raw diagnostic text (response body, stderr) for operators.
    transient: worth retrying (network errors, 429, 5xx).
    """

    def __init__(self, message: str, *, status: int | None = None,
                 code: str | int | None = None, detail: str = "",
                 transient: bool = False):
        super().__init__(message)
        self.status = status
        self.code = code
        self.detail = detail
        self.transient = transient


@dataclass(frozen=True)
class InvokeRequest:
    agent_id: str
    model: str
    message: str
    reset: bool
    cwd: Path


def provider_kind(agent: AgentConfig) -> str:
    """Map an agent's configured provider to the transport variant."""
    provider = agent.provider or "openrouter"
    if provider in ("openrouter", "openai"):
        return "http"
    if provider == "cli":
        return "cli"
    raise ConfigurationError(f"Agent {agent.id!r}: unknown provider {provider!r}")


def create_provider(kind: str, config: Config, store: ConversationStore) -> Provider:
    """Factory: build the provider variant for a transport kind."""
    if kind == "http":
        from .http_completion import HttpCompletionProvider
        return HttpCompletionProvider(
            store=store,
            api_key=config.openrouter_api_key,
            base_url=config.openrouter_base_url,
            timeout=config.openrouter_timeout,
            retries=config.provider_retries,
            retry_base_delay=config.provider_retry_base_delay,
            referer=config.openrouter_referer,
            title=config.openrouter_title,
        )
    if kind == "cli":
        from .subprocess_cli import SubprocessCliProvider
        return SubprocessCliProvider(
            command=config.cli_command,
            timeout=config.raw("providers", "cli", "timeout", default=None),
            pass_env=config.raw("providers", "cli", "pass_env", default=[]),
        )
    raise ValueError(f"Unknown provider kind: {kind!r}")


class ProviderInvoker:
    """Prepares the agent workspace and routes a message to its provider."""

    def __init__(self, config: Config, store: ConversationStore):
        self.config = config
        self.store = store
        self._providers: dict[str, Provider] = {}

    def provider_for(self, agent: AgentConfig) -> Provider:
        kind = provider_kind(agent)
        if kind not in self._providers:
            self._providers[kind] = create_provider(kind, self.config, self.store)
        return self._providers[kind]

    def resolve_cwd(self, agent: AgentConfig, agent_dir: Path, workspace_path: Path) -> Path:
        if not agent.working_directory:
            return agent_dir
        wd = Path(agent.working_directory).expanduser()
        return wd if wd.is_absolute() else workspace_path / wd

    async def invoke(
        self,
        agent: AgentConfig,
        agent_id: str,
        message: str,
        workspace_path: Path,
        reset: bool,
        agents: Mapping[str, AgentConfig] | None = None,
        teams: Mapping[str, TeamConfig] | None = None,
    ) -> str:
        """Run one message through the agent's provider and return the reply text."""
        agent_dir = workspace_path / agent_id
        workspace.ensure(agent_dir)
        workspace.update_teammates(agent_dir, agent_id, agents or {}, teams or {})

        provider = self.provider_for(agent)
        if agent.provider in DEPRECATED_PROVIDERS:
            log.warning("Agent %s: provider %r is deprecated, routing to OpenRouter",
                        agent_id, agent.provider)
        log.info("Using %s provider (agent: %s)", provider.kind, agent_id)

        request = InvokeRequest(
            agent_id=agent_id,
            model=self.config.resolve_model(agent.provider, agent.model),
            message=message,
            reset=reset,
            cwd=self.resolve_cwd(agent, agent_dir, workspace_path),
        )
        return await provider.invoke(request)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
