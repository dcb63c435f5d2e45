"""Per-host update pipeline.

Drives one host through::

    Pending -> Connecting -> [RunningBeforeCommand] -> CheckingRepo
            -> SyncingRepo -> Rebuilding -> [RunningAfterCommand] -> Success

with a transition to Failed from any non-terminal phase. Steps run strictly
in sequence and every transition is published before the step starts.
All errors belonging to the host are contained here and surface only as
the host's :class:`UpdateResult` and terminal phase.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import paramiko

from nixdeploy.config import NixDeployConfig
from nixdeploy.hosts import HostParseError, HostTarget, token_hostname
from nixdeploy.orchestration.auth import AuthenticationResolver
from nixdeploy.orchestration.ssh import CommandError, SSHSession
from nixdeploy.orchestration.streaming import rebuild_line_event, step_line_event
from nixdeploy.progress import (
    CHECKING_REPO,
    CONNECTING,
    RUNNING_AFTER_COMMAND,
    RUNNING_BEFORE_COMMAND,
    SUCCESS,
    SYNCING_REPO,
    ProgressEvent,
    UpdatePhase,
)

logger = logging.getLogger(__name__)

NO_REPO_MARKER = "No git repo found"


@dataclass(frozen=True)
class UpdateOptions:
    """Run options shared by every host of a fleet update."""

    use_boot: bool = False
    forward_agent: bool = False
    command: str | None = None
    run_after: bool = False

    @property
    def rebuild_mode(self) -> str:
        return "boot" if self.use_boot else "switch"

    @property
    def before_command(self) -> str | None:
        return None if self.run_after else self.command

    @property
    def after_command(self) -> str | None:
        return self.command if self.run_after else None


@dataclass(frozen=True)
class UpdateResult:
    """Final outcome of one host's update."""

    hostname: str
    success: bool
    transcript: str


def repo_check_command(flake_dir: str) -> str:
    return "test -d %s/.git || echo '%s'" % (flake_dir, NO_REPO_MARKER)


def repo_sync_command(flake_dir: str) -> str:
    return "cd %s && git pull --verbose" % flake_dir


def rebuild_command(mode: str, flake_dir: str, rebuild_identifier: str) -> str:
    return 'nixos-rebuild %s --flake "%s#%s" --no-write-lock-file' % (mode, flake_dir, rebuild_identifier)


def _noop_publish(event: ProgressEvent) -> bool:
    return False


class HostUpdatePipeline:
    """Update one host. Call :meth:`run` on a worker thread.

    Args:
        token: ``hostname:address`` host token.
        options: Fleet-wide run options.
        config: Connection settings and remote paths.
        publish: Receives progress events; must not block.
        connect: Opens an :class:`SSHSession` to an address. Defaults to
            :meth:`SSHSession.connect` with the configured port and timeouts.
    """

    def __init__(
            self,
            token: str,
            options: UpdateOptions,
            config: NixDeployConfig | None = None,
            publish: Callable[[ProgressEvent], object] | None = None,
            connect: Callable[[str], SSHSession] | None = None,
    ):
        self.token = token
        self.options = options
        self.config = config or NixDeployConfig()
        self.publish = publish or _noop_publish
        self.connect = connect or self._default_connect
        self.hostname = token_hostname(token)
        self._transcript: list[str] = []

    def _default_connect(self, address: str) -> SSHSession:
        return SSHSession.connect(
            address,
            port=self.config.ssh_port,
            connect_timeout=self.config.connect_timeout,
            io_timeout=self.config.io_timeout,
        )

    def _emit(self, phase: UpdatePhase, line: str | None = None) -> None:
        self.publish(ProgressEvent(self.hostname, phase, line))

    def _record(self, text: str) -> None:
        self._transcript.append(text)

    def _result(self, success: bool) -> UpdateResult:
        return UpdateResult(self.hostname, success, "".join(self._transcript))

    def _fail(self, reason: str, line: str | None = None) -> UpdateResult:
        logger.warning("[%s] update failed: %s", self.hostname, reason)
        self._record(reason + "\n")
        self._emit(UpdatePhase.failed(reason), line)
        return self._result(False)

    def run(self) -> UpdateResult:
        """Run every step and return the host's result. Never raises for
        connection, authentication or command failures."""
        try:
            target = HostTarget.parse(self.token, prefix=self.config.host_prefix)
        except HostParseError as e:
            return self._fail(str(e))

        self._emit(CONNECTING, "Connecting to %s..." % target.address)
        try:
            session = self.connect(target.address)
        except (OSError, paramiko.SSHException) as e:
            return self._fail("Connection to %s failed: %s" % (target.address, str(e) or type(e).__name__))

        try:
            return self._run_steps(session, target)
        finally:
            session.close()

    def _run_steps(self, session: SSHSession, target: HostTarget) -> UpdateResult:
        resolver = AuthenticationResolver(
            key_paths=self.config.ssh_key_paths,
            report=lambda line: self._emit(CONNECTING, line),
        )
        ok, errors = session.authenticate(self.config.ssh_user, target.hostname, resolver)
        if not ok:
            message = AuthenticationResolver.failure_message(target.hostname, errors)
            self._record(message + "\n")
            return self._fail("SSH authentication failed", message)

        step = "Before-command"
        try:
            before = self.options.before_command
            if before:
                if not self._run_aux_command(session, before, RUNNING_BEFORE_COMMAND, "before-command"):
                    return self._result(False)

            step = "Git repository check"
            self._emit(CHECKING_REPO, "Checking for git repository...")
            check = session.run(repo_check_command(self.config.flake_dir), self.options.forward_agent)
            if NO_REPO_MARKER in check.output:
                return self._fail("No git repository found in %s" % self.config.flake_dir)

            step = "Git pull"
            self._emit(SYNCING_REPO, "Running git pull...")
            sync_cmd = repo_sync_command(self.config.flake_dir)
            result = session.run_streaming(
                sync_cmd,
                on_line=lambda line: self.publish(step_line_event(self.hostname, line, SYNCING_REPO)),
                forward_agent=self.options.forward_agent,
            )
            self._record("$ %s\n%s\n" % (sync_cmd, result.output))
            if not result.success:
                return self._fail("Git pull failed with exit code: %d" % result.exit_status)

            step = "nixos-rebuild"
            self._emit(UpdatePhase.rebuilding(), "Starting system rebuild...")
            rebuild_cmd = rebuild_command(
                self.options.rebuild_mode, self.config.flake_dir, target.rebuild_identifier,
            )
            result = session.run_streaming(
                rebuild_cmd,
                on_line=lambda line: self.publish(rebuild_line_event(self.hostname, line)),
                forward_agent=self.options.forward_agent,
                pty=True,
            )
            self._record("$ %s\n%s\n" % (rebuild_cmd, result.output))
            if not result.success:
                return self._fail("nixos-rebuild failed with exit code: %d" % result.exit_status)

            step = "After-command"
            after = self.options.after_command
            if after:
                if not self._run_aux_command(session, after, RUNNING_AFTER_COMMAND, "after-command"):
                    return self._result(False)
        except CommandError as e:
            return self._fail("%s failed: %s" % (step, e))

        logger.info("[%s] update succeeded", self.hostname)
        self._emit(SUCCESS)
        return self._result(True)

    def _run_aux_command(self, session: SSHSession, command: str, phase: UpdatePhase, label: str) -> bool:
        """Run the operator's auxiliary command; False (and Failed) on non-zero exit."""
        self._emit(phase, "Running: %s" % command)
        self._record("=== Running %s ===\n" % label)
        result = session.run_streaming(
            command,
            on_line=lambda line: self.publish(step_line_event(self.hostname, line, phase)),
            forward_agent=self.options.forward_agent,
        )
        self._record("$ %s\n%s\n" % (command, result.output))
        if not result.success:
            self._fail("%s failed with exit code: %d" % (label.capitalize(), result.exit_status))
            return False
        return True
