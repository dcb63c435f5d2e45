"""Tests for nixdeploy.updater module."""

from __future__ import annotations

import paramiko
import pytest

from nixdeploy.orchestration.ssh import CommandError
from nixdeploy.progress import PhaseKind
from nixdeploy.updater import (
    HostUpdatePipeline,
    UpdateOptions,
    rebuild_command,
    repo_check_command,
    repo_sync_command,
)

TOKEN = "nixweb:100.64.0.2"

REBUILD_OUTPUT = (
    "building the system configuration...\r\n"
    "these 2 derivations will be built:\r\n"
    "building 2 derivations\r\n"
    "activating the configuration...\r\n"
)


def _pipeline(session, config, options=None, token=TOKEN):
    events = []
    connected = []

    def connect(address):
        connected.append(address)
        return session

    pipeline = HostUpdatePipeline(
        token,
        options or UpdateOptions(),
        config=config,
        publish=events.append,
        connect=connect,
    )
    return pipeline, events, connected


def _kinds(events):
    kinds = []
    for e in events:
        if not kinds or kinds[-1] is not e.phase.kind:
            kinds.append(e.phase.kind)
    return kinds


# ---------------------------------------------------------------------------
# Command builders and options
# ---------------------------------------------------------------------------

def test_command_builders():
    assert repo_check_command("/etc/nixos") == "test -d /etc/nixos/.git || echo 'No git repo found'"
    assert repo_sync_command("/etc/nixos") == "cd /etc/nixos && git pull --verbose"
    assert rebuild_command("switch", "/etc/nixos", "web") == (
        'nixos-rebuild switch --flake "/etc/nixos#web" --no-write-lock-file'
    )


def test_update_options():
    assert UpdateOptions().rebuild_mode == "switch"
    assert UpdateOptions(use_boot=True).rebuild_mode == "boot"
    before = UpdateOptions(command="uptime")
    assert (before.before_command, before.after_command) == ("uptime", None)
    after = UpdateOptions(command="uptime", run_after=True)
    assert (after.before_command, after.after_command) == (None, "uptime")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def test_happy_path(fake_session_cls, config):
    session = fake_session_cls(responses={
        "git pull": (0, "Already up to date.\n"),
        "nixos-rebuild": (0, REBUILD_OUTPUT),
    })
    pipeline, events, connected = _pipeline(session, config)

    result = pipeline.run()

    assert result.success
    assert result.hostname == "nixweb"
    assert connected == ["100.64.0.2"]
    assert session.closed
    assert session.commands == [
        "test -d /etc/nixos/.git || echo 'No git repo found'",
        "cd /etc/nixos && git pull --verbose",
        'nixos-rebuild switch --flake "/etc/nixos#web" --no-write-lock-file',
    ]
    assert session.pty_commands == [session.commands[2]]
    assert _kinds(events) == [
        PhaseKind.CONNECTING,
        PhaseKind.CHECKING_REPO,
        PhaseKind.SYNCING_REPO,
        PhaseKind.REBUILDING,
        PhaseKind.SUCCESS,
    ]
    details = [e.phase.detail for e in events if e.phase.kind is PhaseKind.REBUILDING]
    assert "building 2 drv" in details
    assert "activating..." in details
    assert "$ cd /etc/nixos && git pull --verbose\nAlready up to date.\n" in result.transcript
    assert "activating the configuration..." in result.transcript


def test_boot_mode_and_forward_agent(fake_session_cls, config):
    session = fake_session_cls()
    pipeline, _, _ = _pipeline(session, config, UpdateOptions(use_boot=True, forward_agent=True))

    assert pipeline.run().success
    assert session.commands[-1] == 'nixos-rebuild boot --flake "/etc/nixos#web" --no-write-lock-file'
    assert all(session.forwarded)


def test_before_command_runs_first(fake_session_cls, config):
    session = fake_session_cls(responses={"systemctl stop app": (0, "stopped\n")})
    pipeline, events, _ = _pipeline(session, config, UpdateOptions(command="systemctl stop app"))

    result = pipeline.run()

    assert result.success
    assert session.commands[0] == "systemctl stop app"
    assert _kinds(events)[:3] == [PhaseKind.CONNECTING, PhaseKind.RUNNING_BEFORE_COMMAND, PhaseKind.CHECKING_REPO]
    assert result.transcript.startswith("=== Running before-command ===\n$ systemctl stop app\nstopped\n")
    assert any(e.output_line == "stopped" for e in events)


def test_before_command_failure_stops_pipeline(fake_session_cls, config):
    session = fake_session_cls(responses={"systemctl stop app": (1, "permission denied\n")})
    pipeline, events, _ = _pipeline(session, config, UpdateOptions(command="systemctl stop app"))

    result = pipeline.run()

    assert not result.success
    assert session.commands == ["systemctl stop app"]
    assert events[-1].phase.label == "Failed: Before-command failed with exit code: 1"
    assert "permission denied" in result.transcript
    assert not any(e.phase.kind is PhaseKind.CHECKING_REPO for e in events)


def test_missing_repo(fake_session_cls, config):
    session = fake_session_cls(responses={"test -d": (0, "No git repo found\n")})
    pipeline, events, _ = _pipeline(session, config)

    result = pipeline.run()

    assert not result.success
    assert events[-1].phase.reason == "No git repository found in /etc/nixos"
    assert len(session.commands) == 1


def test_git_pull_failure(fake_session_cls, config):
    session = fake_session_cls(responses={"git pull": (1, "fatal: could not read from remote\n")})
    pipeline, events, _ = _pipeline(session, config)

    result = pipeline.run()

    assert not result.success
    assert events[-1].phase.reason == "Git pull failed with exit code: 1"
    assert "fatal: could not read from remote" in result.transcript
    assert not any("nixos-rebuild" in c for c in session.commands)


def test_rebuild_failure(fake_session_cls, config):
    session = fake_session_cls(responses={"nixos-rebuild": (100, "error: attribute 'web' missing\n")})
    pipeline, events, _ = _pipeline(session, config)

    result = pipeline.run()

    assert not result.success
    assert events[-1].phase.reason == "nixos-rebuild failed with exit code: 100"
    assert "error: attribute 'web' missing" in result.transcript


def test_after_command_runs_after_rebuild(fake_session_cls, config):
    session = fake_session_cls()
    options = UpdateOptions(command="nix-collect-garbage -d", run_after=True)
    pipeline, events, _ = _pipeline(session, config, options)

    result = pipeline.run()

    assert result.success
    assert session.commands[-1] == "nix-collect-garbage -d"
    assert _kinds(events)[-2:] == [PhaseKind.RUNNING_AFTER_COMMAND, PhaseKind.SUCCESS]


def test_after_command_failure_keeps_rebuild_transcript(fake_session_cls, config):
    session = fake_session_cls(responses={
        "nixos-rebuild": (0, REBUILD_OUTPUT),
        "nix-collect-garbage": (2, "busy\n"),
    })
    options = UpdateOptions(command="nix-collect-garbage -d", run_after=True)
    pipeline, events, _ = _pipeline(session, config, options)

    result = pipeline.run()

    assert not result.success
    assert events[-1].phase.reason == "After-command failed with exit code: 2"
    assert "activating the configuration..." in result.transcript
    assert "=== Running after-command ===" in result.transcript
    assert "busy" in result.transcript


def test_authentication_failure(fake_session_cls, config):
    session = fake_session_cls(
        auth_ok=False,
        auth_errors=["SSH agent automatic: no identities available"],
        auth_lines=["Trying file-based SSH keys..."],
    )
    pipeline, events, _ = _pipeline(session, config)

    result = pipeline.run()

    assert not result.success
    assert session.commands == []
    assert session.closed
    assert any(e.output_line == "Trying file-based SSH keys..." for e in events)
    assert events[-1].phase.reason == "SSH authentication failed"
    assert "Failed to authenticate with SSH for nixweb." in result.transcript
    assert "SSH agent automatic: no identities available" in result.transcript


@pytest.mark.parametrize("error", [ConnectionRefusedError("Connection refused"), paramiko.SSHException("bad banner")])
def test_connection_failure(config, error):
    events = []

    def connect(address):
        raise error

    pipeline = HostUpdatePipeline(TOKEN, UpdateOptions(), config=config, publish=events.append, connect=connect)
    result = pipeline.run()

    assert not result.success
    assert events[0].phase.kind is PhaseKind.CONNECTING
    assert events[-1].phase.reason.startswith("Connection to 100.64.0.2 failed: ")
    assert str(error) in result.transcript


def test_invalid_token_never_connects(fake_session_cls, config):
    session = fake_session_cls()
    pipeline, events, connected = _pipeline(session, config, token="nixweb")

    result = pipeline.run()

    assert not result.success
    assert connected == []
    assert [e.phase.kind for e in events] == [PhaseKind.FAILED]
    assert "Invalid host token" in result.transcript


def test_command_error_is_contained(fake_session_cls, config):
    session = fake_session_cls(responses={"git pull": CommandError("Error reading from channel: timed out after 30s")})
    pipeline, events, _ = _pipeline(session, config)

    result = pipeline.run()

    assert not result.success
    assert events[-1].phase.reason == "Git pull failed: Error reading from channel: timed out after 30s"
    assert session.closed


def test_custom_flake_dir_and_prefix(fake_session_cls, tmp_path):
    from nixdeploy.config import NixDeployConfig

    config_file = tmp_path / "config.yaml"
    config_file.write_text("flake_dir: /srv/fleet/\nhost_prefix: lab-\n")
    session = fake_session_cls()
    pipeline, _, _ = _pipeline(session, NixDeployConfig(config_path=config_file), token="lab-db:10.0.0.3")

    assert pipeline.run().success
    assert session.commands[1] == "cd /srv/fleet && git pull --verbose"
    assert session.commands[2] == 'nixos-rebuild switch --flake "/srv/fleet#db" --no-write-lock-file'
