"""Shared fixtures for clawd test suite.

All tests use temporary directories and mock objects.
Nothing touches ~/.clawd/ or the running daemon.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


@pytest.fixture(autouse=True)
def _no_env_api_key(monkeypatch):
    """Keep a developer's real key out of Config env overrides."""
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("CLAWD_OPENROUTER_KEY", raising=False)


@pytest.fixture
def tmp_queue(tmp_path):
    """WorkQueue rooted in a temp directory, no retry delay."""
    from workqueue import WorkQueue
    return WorkQueue(tmp_path / "queue", io_retries=1, retry_delay=0)


@pytest.fixture
def config_data(tmp_path):
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "paths": {
            "state_dir": str(tmp_path / "state"),
            "workspace": str(tmp_path / "workspace"),
            "files_dir": str(tmp_path / "files"),
        },
        "api_keys": {"openrouter": "sk-or-test"},
        "agents": {
            "default": {"name": "Assistant", "provider": "openrouter", "model": "sonnet"},
            "coder": {"name": "Coder", "provider": "cli", "model": "gpt-5-codex"},
        },
        "teams": {
            "dev": {"name": "Dev Team", "agents": ["default", "coder"],
                    "leader_agent": "default"},
        },
        "behavior": {
            "agent_timeout_seconds": 5,
            "provider_retries": 0,
            "provider_retry_base_delay": 0,
            "poll_interval": 0.01,
        },
    }


@pytest.fixture
def config(config_data, tmp_path):
    from config import Config
    return Config(config_data, config_dir=tmp_path)


@pytest.fixture
def store():
    from conversation import ConversationStore
    return ConversationStore()


def make_response(status=200, body=None, text=None):
    """Mock httpx.Response with a JSON body (or raw text)."""
    from unittest.mock import MagicMock

    import httpx

    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status
    if body is not None:
        resp.json.return_value = body
        resp.text = text if text is not None else str(body)
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
    return resp


def completion(content):
    """Chat-completion payload with one assistant choice."""
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}
