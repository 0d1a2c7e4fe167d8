import sys
import types
from pathlib import Path

import pytest

from backend.src.services.agent_provider import (
    GENERIC_FAILURE_MESSAGE,
    AgentProvider,
    AgentProviderError,
    describe_provider_failure,
    load_agent_provider,
)
from backend.src.services.config import AppConfig
from backend.src.services.mock_provider import MockAgentProvider


class EchoProvider(AgentProvider):
    name = "echo"

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    async def start_turn(self, request):
        raise NotImplementedError


@pytest.fixture
def provider_module(monkeypatch):
    module = types.ModuleType("vault_chat_test_providers")
    module.build = EchoProvider
    module.not_a_provider = lambda config: object()
    monkeypatch.setitem(sys.modules, module.__name__, module)
    return module


def make_config(tmp_path: Path, provider: str) -> AppConfig:
    return AppConfig(vaults_dir=tmp_path, agent_provider=provider, mock_chunk_delay_ms=5)


def test_mock_provider_is_built_in(tmp_path: Path) -> None:
    provider = load_agent_provider(make_config(tmp_path, "mock"))

    assert isinstance(provider, MockAgentProvider)
    assert provider.chunk_delay == pytest.approx(0.005)


def test_factory_path_is_imported(tmp_path: Path, provider_module) -> None:
    config = make_config(tmp_path, "vault_chat_test_providers:build")

    provider = load_agent_provider(config)

    assert isinstance(provider, EchoProvider)
    assert provider.config is config


@pytest.mark.parametrize(
    "provider_path",
    [
        "no_colon_here",
        "vault_chat_test_providers:missing",
        "vault_chat_missing_module:build",
        "vault_chat_test_providers:not_a_provider",
    ],
)
def test_bad_provider_specs_raise(tmp_path: Path, provider_module, provider_path: str) -> None:
    with pytest.raises(AgentProviderError) as exc_info:
        load_agent_provider(make_config(tmp_path, provider_path))
    assert exc_info.value.details == {"agent_provider": provider_path}


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("spawn claude ENOENT", "Agent executable not found"),
        ("authentication_error: invalid x-api-key", "Authentication failed"),
        ("billing problem", "Billing error"),
        ("api server_error 529", "Server error"),
    ],
)
def test_known_failures_get_specific_messages(raw: str, expected: str) -> None:
    assert describe_provider_failure(RuntimeError(raw)).startswith(expected)


def test_unknown_failures_get_generic_message() -> None:
    assert describe_provider_failure(OSError("boom /tmp/secret")) == GENERIC_FAILURE_MESSAGE
