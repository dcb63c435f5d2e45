"""Shared pytest fixtures for nix-deploy tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from nixdeploy.config import NixDeployConfig
from nixdeploy.orchestration.ssh import CommandResult
from nixdeploy.orchestration.streaming import StreamingOutputParser


class FakeSession:
    """Scripted stand-in for :class:`nixdeploy.orchestration.ssh.SSHSession`.

    *responses* maps a command substring to ``(exit_status, output)`` or to
    an exception instance to raise. Unmatched commands succeed silently.
    """

    def __init__(self, responses=None, auth_ok=True, auth_errors=None, auth_lines=None):
        self.responses = responses or {}
        self.auth_ok = auth_ok
        self.auth_errors = auth_errors or []
        self.auth_lines = auth_lines or []
        self.commands: list[str] = []
        self.pty_commands: list[str] = []
        self.forwarded: list[bool] = []
        self.closed = False

    def authenticate(self, username, hostname, resolver):
        for line in self.auth_lines:
            resolver.report(line)
        return self.auth_ok, list(self.auth_errors)

    def run(self, command, forward_agent=False):
        return self.run_streaming(command, forward_agent=forward_agent)

    def run_streaming(self, command, on_line=None, forward_agent=False, pty=False):
        self.commands.append(command)
        self.forwarded.append(forward_agent)
        if pty:
            self.pty_commands.append(command)
        status, output = 0, ""
        for needle, response in self.responses.items():
            if needle in command:
                if isinstance(response, Exception):
                    raise response
                status, output = response
                break
        parser = StreamingOutputParser(strip_ansi=pty, on_line=on_line)
        parser.feed(output.encode())
        parser.finish()
        return CommandResult(command=command, exit_status=status, output=output)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Config that points key lookups at a temp dir (no real keys used)."""
    path = tmp_path / "config.yaml"
    data = {
        "ssh": {
            "user": "root",
            "keys": [str(tmp_path / "keys" / "id_ed25519")],
            "connect_timeout": 5,
            "timeout": 30,
        },
        "progress_queue_size": 4096,
    }
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


@pytest.fixture
def config(config_file: Path) -> NixDeployConfig:
    return NixDeployConfig(config_path=config_file)
