from __future__ import annotations

from pathlib import Path

import pytest

from claude_app_server import cli
from claude_app_server.config import (
    DEFAULT_PORT,
    PAIR_KEY_ALPHABET,
    default_port,
    generate_pair_key,
    resolve_agent_command,
)
from claude_app_server.errors import AppServerError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CLAUDE_APP_SERVER_CMD",
        "CLAUDE_APP_SERVER_PORT",
        "CLAUDE_APP_SERVER_HOST",
        "CLAUDE_APP_SERVER_PAIR_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


def test_agent_command_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_APP_SERVER_CMD", "node '/opt/my agent/cli.js'")
    assert resolve_agent_command() == ["node", "/opt/my agent/cli.js"]


def test_agent_command_missing_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("claude_app_server.config.shutil.which", lambda name: None)
    with pytest.raises(AppServerError, match="not found"):
        resolve_agent_command()


def test_agent_command_resolves_symlink(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    target = tmp_path / "real-claude"
    target.write_text("#!/bin/sh\n")
    link = tmp_path / "claude"
    link.symlink_to(target)
    monkeypatch.setattr("claude_app_server.config.shutil.which", lambda name: str(link))
    assert resolve_agent_command() == [str(target.resolve())]


def test_port_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    assert default_port() == DEFAULT_PORT
    monkeypatch.setenv("CLAUDE_APP_SERVER_PORT", "4100")
    assert default_port() == 4100
    monkeypatch.setenv("CLAUDE_APP_SERVER_PORT", "not-a-port")
    with pytest.raises(AppServerError):
        default_port()


def test_generated_pair_key_shape() -> None:
    key = generate_pair_key()
    assert len(key) == 6
    assert set(key) <= set(PAIR_KEY_ALPHABET)


def test_build_config_defaults_to_stdio(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_APP_SERVER_CMD", "fake-agent")
    config = cli.build_config(cli.parse_args([]))
    assert config.transport == "stdio"
    assert config.agent_command == ["fake-agent"]
    assert config.port == DEFAULT_PORT
    assert not config.show_banner


def test_build_config_start_serves_websocket_with_banner(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CLAUDE_APP_SERVER_CMD", "fake-agent")
    monkeypatch.setenv("CLAUDE_APP_SERVER_PAIR_KEY", "s3cret")
    config = cli.build_config(cli.parse_args(["start", "--port", "4000"]))
    assert config.transport == "ws"
    assert config.port == 4000
    assert config.pair_key == "s3cret"
    assert config.show_banner

    plain_ws = cli.build_config(cli.parse_args(["--transport", "websocket"]))
    assert plain_ws.transport == "ws"
    assert not plain_ws.show_banner
    assert plain_ws.pair_key == "s3cret"


def test_main_reports_missing_agent(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("claude_app_server.config.shutil.which", lambda name: None)
    assert cli.main([]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "not found" in captured.err


def test_banner_goes_to_stderr(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("CLAUDE_APP_SERVER_CMD", "fake-agent")
    monkeypatch.setattr(cli, "lan_ip", lambda: "192.168.1.20")
    config = cli.build_config(cli.parse_args(["start", "--pair-key", "abc123"]))
    cli.print_banner(config)
    captured = capsys.readouterr()
    assert captured.out == ""
    assert f"ws://localhost:{DEFAULT_PORT}?key=abc123" in captured.err
    assert f"ws://192.168.1.20:{DEFAULT_PORT}?key=abc123" in captured.err
