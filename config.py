"""Configuration loader for the clawd daemon.

Loads clawd.toml, applies environment variable overrides for secrets,
validates agents, teams and providers, and provides typed access to all
settings. Immutable after load — no runtime config reloading.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or a required setting is missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "OPENROUTER_API_KEY": ("api_keys", "openrouter"),
    "CLAWD_OPENROUTER_KEY": ("api_keys", "openrouter"),
}

PROVIDERS = ("openrouter", "openai", "cli")
DEPRECATED_PROVIDERS = frozenset({"openai"})
STRANDED_POLICIES = ("requeue", "leave")

DEFAULT_AGENT_ID = "default"

# Short model names accepted in agent configs
_DEFAULT_MODEL_ALIASES = {
    "openrouter": {
        "sonnet": "anthropic/claude-sonnet-4",
        "opus": "anthropic/claude-opus-4",
        "haiku": "anthropic/claude-3.5-haiku",
        "gpt-4o": "openai/gpt-4o",
        "gpt-4o-mini": "openai/gpt-4o-mini",
    },
    "cli": {
        "gpt-5": "gpt-5",
        "gpt-5-codex": "gpt-5-codex",
    },
}

_DEFAULT_MODELS = {
    "openrouter": "anthropic/claude-sonnet-4",
    "cli": "",
}


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str, base: Path) -> Path:
    """Expand ~ and anchor relative paths at base."""
    path = Path(p).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


@dataclass(frozen=True)
class AgentConfig:
    id: str
    name: str
    provider: str = "openrouter"
    model: str = ""
    working_directory: str = ""


@dataclass(frozen=True)
class TeamConfig:
    id: str
    name: str
    agents: tuple[str, ...] = field(default_factory=tuple)
    leader_agent: str = ""


class Config:
    """Immutable configuration loaded from clawd.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()
        self._agents = self._build_agents()
        self._teams = self._build_teams()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val

    def _validate(self):
        errors = []
        agents = self._data.get("agents", {})
        if not isinstance(agents, dict):
            errors.append("[agents] must be a table of agent sections")
            agents = {}
        for agent_id, cfg in agents.items():
            if not isinstance(cfg, dict):
                errors.append(f"[agents.{agent_id}] must be a table")
                continue
            provider = cfg.get("provider", "openrouter")
            if provider not in PROVIDERS:
                errors.append(
                    f"[agents.{agent_id}] unknown provider {provider!r} "
                    f"(expected one of: {', '.join(PROVIDERS)})"
                )
        teams = self._data.get("teams", {})
        if not isinstance(teams, dict):
            errors.append("[teams] must be a table of team sections")
            teams = {}
        for team_id, cfg in teams.items():
            if not isinstance(cfg, dict):
                errors.append(f"[teams.{team_id}] must be a table")
                continue
            for member in cfg.get("agents", []):
                if agents and member not in agents:
                    errors.append(f"[teams.{team_id}] unknown agent {member!r}")
        policy = _deep_get(self._data, "behavior", "stranded_policy", default="requeue")
        if policy not in STRANDED_POLICIES:
            errors.append(
                f"[behavior] stranded_policy must be one of: {', '.join(STRANDED_POLICIES)}"
            )
        if self.max_history_messages < 1:
            errors.append("[behavior] max_history_messages must be at least 1")
        if self.max_concurrency < 1:
            errors.append("[behavior] max_concurrency must be at least 1")
        if errors:
            raise ConfigurationError(
                "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )

    def _build_agents(self) -> dict[str, AgentConfig]:
        agents = {}
        for agent_id, cfg in self._data.get("agents", {}).items():
            agents[agent_id] = AgentConfig(
                id=agent_id,
                name=cfg.get("name", agent_id),
                provider=cfg.get("provider", "openrouter"),
                model=cfg.get("model", ""),
                working_directory=cfg.get("working_directory", ""),
            )
        if not agents:
            agents[DEFAULT_AGENT_ID] = AgentConfig(
                id=DEFAULT_AGENT_ID,
                name="Default",
                provider="openrouter",
                model=_deep_get(self._data, "models", "default", default=""),
            )
        return agents

    def _build_teams(self) -> dict[str, TeamConfig]:
        return {
            team_id: TeamConfig(
                id=team_id,
                name=cfg.get("name", team_id),
                agents=tuple(cfg.get("agents", [])),
                leader_agent=cfg.get("leader_agent", ""),
            )
            for team_id, cfg in self._data.get("teams", {}).items()
        }

    # --- Agents ---

    @property
    def agents(self) -> dict[str, AgentConfig]:
        return dict(self._agents)

    @property
    def teams(self) -> dict[str, TeamConfig]:
        return dict(self._teams)

    def agent(self, agent_id: str) -> AgentConfig | None:
        return self._agents.get(agent_id)

    @property
    def default_agent_id(self) -> str:
        configured = _deep_get(self._data, "routing", "default_agent", default="")
        if configured:
            return configured
        if DEFAULT_AGENT_ID in self._agents:
            return DEFAULT_AGENT_ID
        return next(iter(self._agents))

    # --- Models ---

    def resolve_model(self, provider: str, name: str) -> str:
        """Map a short model name to the provider's full model id."""
        kind = "cli" if provider == "cli" else "openrouter"
        if not name:
            return _DEFAULT_MODELS[kind]
        aliases = dict(_DEFAULT_MODEL_ALIASES[kind])
        aliases.update(_deep_get(self._data, "models", "aliases", kind, default={}))
        return aliases.get(name, name)

    # --- Providers ---

    @property
    def openrouter_base_url(self) -> str:
        return _deep_get(self._data, "providers", "openrouter", "base_url",
                         default="https://openrouter.ai/api/v1")

    @property
    def openrouter_api_key(self) -> str:
        env_var = _deep_get(self._data, "providers", "openrouter", "api_key_env", default="")
        if env_var:
            return os.environ.get(env_var, "")
        return self.api_key("openrouter")

    @property
    def openrouter_timeout(self) -> float:
        return float(_deep_get(self._data, "providers", "openrouter", "timeout", default=120))

    @property
    def openrouter_referer(self) -> str:
        return _deep_get(self._data, "providers", "openrouter", "referer",
                         default="https://github.com/clawd/clawd")

    @property
    def openrouter_title(self) -> str:
        return _deep_get(self._data, "providers", "openrouter", "title", default="clawd")

    @property
    def cli_command(self) -> list[str]:
        command = _deep_get(self._data, "providers", "cli", "command", default=["codex"])
        if isinstance(command, str):
            return [command]
        return list(command)

    # --- Behavior ---

    @property
    def max_history_messages(self) -> int:
        return _deep_get(self._data, "behavior", "max_history_messages", default=40)

    @property
    def agent_timeout(self) -> float:
        return float(_deep_get(self._data, "behavior", "agent_timeout_seconds", default=600))

    @property
    def provider_retries(self) -> int:
        return _deep_get(self._data, "behavior", "provider_retries", default=2)

    @property
    def provider_retry_base_delay(self) -> float:
        return float(_deep_get(self._data, "behavior", "provider_retry_base_delay", default=2.0))

    @property
    def max_concurrency(self) -> int:
        return _deep_get(self._data, "behavior", "max_concurrency", default=4)

    @property
    def poll_interval(self) -> float:
        return float(_deep_get(self._data, "behavior", "poll_interval", default=1.0))

    @property
    def stranded_policy(self) -> str:
        return _deep_get(self._data, "behavior", "stranded_policy", default="requeue")

    @property
    def queue_io_retries(self) -> int:
        return _deep_get(self._data, "behavior", "queue_io_retries", default=3)

    @property
    def notify_on_failure(self) -> bool:
        return _deep_get(self._data, "behavior", "notify_on_failure", default=True)

    @property
    def error_message(self) -> str:
        return _deep_get(self._data, "behavior", "error_message",
                         default="Sorry, something went wrong while handling your message.")

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        """Directory containing clawd.toml. Relative [paths] entries resolve against it."""
        return self._config_dir

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.clawd"),
                             self._config_dir)

    @property
    def queue_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "queue_dir",
                                       default=str(self.state_dir / "queue")),
                             self._config_dir)

    @property
    def workspace(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "workspace",
                                       default=str(self.state_dir / "workspace")),
                             self._config_dir)

    @property
    def files_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "files_dir",
                                       default=str(self.state_dir / "files")),
                             self._config_dir)

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default=str(self.state_dir / "clawd.log")),
                             self._config_dir)

    # --- Logging ---

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- API Keys ---

    def api_key(self, provider: str) -> str:
        return _deep_get(self._data, "api_keys", provider, default="")

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as clawd.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to clawd.toml config file.
        overrides: Dict of dotted-key overrides applied to the raw TOML data
                   before constructing Config (e.g. CLI args).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigurationError(f"Config file not found: {p}")
    _load_dotenv(p)
    with open(p, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {p}: {e}") from e
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
