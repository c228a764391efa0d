"""Tests for config.py — loading, validation, defaults, env overrides."""

import os
from pathlib import Path

import pytest

from config import Config, ConfigurationError, load_config

# ─── Loading ─────────────────────────────────────────────────────

class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        p = tmp_path / "clawd.toml"
        p.write_text("[agents\nbroken")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            load_config(p)

    def test_loads_agents_and_teams(self, tmp_path):
        p = tmp_path / "clawd.toml"
        p.write_text(
            '[agents.alice]\nname = "Alice"\nmodel = "opus"\n\n'
            '[agents.bob]\nname = "Bob"\nprovider = "cli"\n\n'
            '[teams.core]\nname = "Core"\nagents = ["alice", "bob"]\nleader_agent = "alice"\n'
        )
        cfg = load_config(p)
        assert sorted(cfg.agents) == ["alice", "bob"]
        assert cfg.agent("bob").provider == "cli"
        assert cfg.teams["core"].agents == ("alice", "bob")
        assert cfg.config_dir == tmp_path.resolve()

    def test_overrides(self, tmp_path):
        p = tmp_path / "clawd.toml"
        p.write_text("")
        cfg = load_config(p, overrides={"behavior.max_concurrency": 9})
        assert cfg.max_concurrency == 9

    def test_dotenv_loaded(self, tmp_path):
        p = tmp_path / "clawd.toml"
        p.write_text("")
        (tmp_path / ".env").write_text('# secrets\nOPENROUTER_API_KEY="sk-or-dotenv"\n')
        try:
            cfg = load_config(p)
            assert cfg.openrouter_api_key == "sk-or-dotenv"
        finally:
            os.environ.pop("OPENROUTER_API_KEY", None)

    def test_env_takes_precedence_over_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-env")
        p = tmp_path / "clawd.toml"
        p.write_text("")
        (tmp_path / ".env").write_text("OPENROUTER_API_KEY=sk-or-dotenv\n")
        assert load_config(p).openrouter_api_key == "sk-or-env"


# ─── Validation ──────────────────────────────────────────────────

class TestValidation:
    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="unknown provider"):
            Config({"agents": {"a": {"provider": "carrier-pigeon"}}})

    def test_unknown_team_member(self):
        with pytest.raises(ConfigurationError, match="unknown agent 'ghost'"):
            Config({"agents": {"a": {}}, "teams": {"t": {"agents": ["a", "ghost"]}}})

    def test_bad_stranded_policy(self):
        with pytest.raises(ConfigurationError, match="stranded_policy"):
            Config({"behavior": {"stranded_policy": "delete"}})

    def test_errors_collected(self):
        with pytest.raises(ConfigurationError) as exc:
            Config({
                "agents": {"a": {"provider": "x"}},
                "behavior": {"max_concurrency": 0, "max_history_messages": 0},
            })
        message = str(exc.value)
        assert "unknown provider" in message
        assert "max_concurrency" in message
        assert "max_history_messages" in message


# ─── Defaults ────────────────────────────────────────────────────

class TestDefaults:
    def test_no_agents_synthesizes_default(self):
        cfg = Config({})
        assert list(cfg.agents) == ["default"]
        assert cfg.agent("default").provider == "openrouter"
        assert cfg.default_agent_id == "default"

    def test_behavior_defaults(self):
        cfg = Config({})
        assert cfg.max_history_messages == 40
        assert cfg.agent_timeout == 600
        assert cfg.max_concurrency == 4
        assert cfg.stranded_policy == "requeue"
        assert cfg.notify_on_failure is True
        assert cfg.cli_command == ["codex"]

    def test_paths_under_state_dir(self, tmp_path):
        cfg = Config({"paths": {"state_dir": str(tmp_path)}})
        assert cfg.queue_dir == tmp_path.resolve() / "queue"
        assert cfg.workspace == tmp_path.resolve() / "workspace"
        assert cfg.files_dir == tmp_path.resolve() / "files"
        assert cfg.log_file == tmp_path.resolve() / "clawd.log"

    def test_default_agent_routing_override(self):
        cfg = Config({"agents": {"a": {}, "b": {}}, "routing": {"default_agent": "b"}})
        assert cfg.default_agent_id == "b"

    def test_first_agent_when_no_default(self):
        cfg = Config({"agents": {"zed": {}, "amy": {}}})
        assert cfg.default_agent_id == "zed"

    def test_cli_command_string(self):
        cfg = Config({"providers": {"cli": {"command": "/usr/local/bin/codex"}}})
        assert cfg.cli_command == ["/usr/local/bin/codex"]


# ─── Models & Keys ───────────────────────────────────────────────

class TestModelsAndKeys:
    def test_alias_resolved(self):
        assert Config({}).resolve_model("openrouter", "sonnet") == "anthropic/claude-sonnet-4"

    def test_full_id_passthrough(self):
        assert Config({}).resolve_model("openrouter", "meta/llama") == "meta/llama"

    def test_empty_model_uses_default(self):
        assert Config({}).resolve_model("openrouter", "") == "anthropic/claude-sonnet-4"
        assert Config({}).resolve_model("cli", "") == ""

    def test_configured_alias(self):
        cfg = Config({"models": {"aliases": {"openrouter": {"fast": "openai/gpt-4o-mini"}}}})
        assert cfg.resolve_model("openrouter", "fast") == "openai/gpt-4o-mini"

    def test_deprecated_provider_uses_openrouter_aliases(self):
        assert Config({}).resolve_model("openai", "gpt-4o") == "openai/gpt-4o"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-env")
        assert Config({}).openrouter_api_key == "sk-or-env"

    def test_legacy_env_name(self, monkeypatch):
        monkeypatch.setenv("CLAWD_OPENROUTER_KEY", "sk-or-legacy")
        assert Config({}).openrouter_api_key == "sk-or-legacy"

    def test_api_key_env_setting(self, monkeypatch):
        monkeypatch.setenv("MY_ROUTER_KEY", "sk-or-custom")
        cfg = Config({"providers": {"openrouter": {"api_key_env": "MY_ROUTER_KEY"}}})
        assert cfg.openrouter_api_key == "sk-or-custom"

    def test_no_key(self):
        assert Config({}).openrouter_api_key == ""

    def test_config_dir_default(self):
        assert Config({}).config_dir == Path.cwd()

    def test_relative_paths_anchor_at_config_dir(self, tmp_path):
        cfg = Config({"paths": {"state_dir": "state", "workspace": "ws"}}, config_dir=tmp_path)
        assert cfg.state_dir == tmp_path.resolve() / "state"
        assert cfg.queue_dir == tmp_path.resolve() / "state" / "queue"
        assert cfg.workspace == tmp_path.resolve() / "ws"

    def test_relative_paths_from_file_sit_next_to_it(self, tmp_path, monkeypatch):
        conf = tmp_path / "etc"
        conf.mkdir()
        (conf / "clawd.toml").write_text('[paths]\nstate_dir = "var"\n')
        monkeypatch.chdir(tmp_path)
        cfg = load_config(conf / "clawd.toml")
        assert cfg.state_dir == conf.resolve() / "var"
