"""SSH sessions over paramiko: connect, authenticate, run commands.

One :class:`SSHSession` wraps one transport to one host. Commands run on
their own exec channel; output is read in chunks through a
:class:`~nixdeploy.orchestration.streaming.StreamingOutputParser` so
callers can observe lines as they arrive. All calls block and are meant
to run on a worker thread dedicated to the host.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Callable

import paramiko
from paramiko.agent import AgentRequestHandler

from nixdeploy.config import DEFAULT_CONNECT_TIMEOUT, DEFAULT_IO_TIMEOUT, DEFAULT_SSH_PORT
from nixdeploy.orchestration.auth import AuthenticationResolver
from nixdeploy.orchestration.streaming import StreamingOutputParser

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class CommandError(Exception):
    """A remote command could not be started or its output not read."""

    pass


@dataclass
class CommandResult:
    """Result of one remote command."""

    command: str
    exit_status: int
    output: str

    @property
    def success(self) -> bool:
        return self.exit_status == 0


class SSHSession:
    """An established SSH transport to a single host."""

    def __init__(self, transport: paramiko.Transport, address: str = "", io_timeout: float = DEFAULT_IO_TIMEOUT):
        self.transport = transport
        self.address = address
        self.io_timeout = io_timeout

    @classmethod
    def connect(
            cls,
            address: str,
            port: int = DEFAULT_SSH_PORT,
            connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
            io_timeout: float = DEFAULT_IO_TIMEOUT,
    ) -> SSHSession:
        """Open a TCP connection and complete the SSH handshake.

        Raises:
            OSError: On resolution or connect failure (including timeout).
            paramiko.SSHException: If the handshake fails.
        """
        logger.debug("  SSH connect -> %s:%d [timeout=%ss]", address, port, connect_timeout)
        t0 = time.monotonic()
        sock = socket.create_connection((address, port), timeout=connect_timeout)
        try:
            transport = paramiko.Transport(sock)
            transport.banner_timeout = connect_timeout
            transport.handshake_timeout = connect_timeout
            transport.start_client(timeout=connect_timeout)
        except BaseException:
            sock.close()
            raise
        logger.debug("  SSH connect <- %s OK (%.1fs)", address, time.monotonic() - t0)
        return cls(transport, address=address, io_timeout=io_timeout)

    def authenticate(self, username: str, hostname: str, resolver: AuthenticationResolver) -> tuple[bool, list[str]]:
        return resolver.authenticate(self.transport, username, hostname)

    def run(self, command: str, forward_agent: bool = False) -> CommandResult:
        """Run *command* and collect its combined output."""
        return self.run_streaming(command, forward_agent=forward_agent)

    def run_streaming(
            self,
            command: str,
            on_line: Callable[[str], None] | None = None,
            forward_agent: bool = False,
            pty: bool = False,
    ) -> CommandResult:
        """Run *command*, passing each output line to *on_line* as it arrives.

        With *pty* a pseudo-terminal is requested (tools then flush output
        line by line) and escape sequences are stripped from the lines
        handed to *on_line*. Without it, stderr is merged into stdout.

        Raises:
            CommandError: If the channel cannot be opened or a read fails.
        """
        logger.debug("  SSH cmd -> %s: %s", self.address, command[:80])
        t0 = time.monotonic()
        parser = StreamingOutputParser(strip_ansi=pty, on_line=on_line)
        agent_handler = None
        try:
            channel = self.transport.open_session(timeout=self.io_timeout)
        except (paramiko.SSHException, OSError) as e:
            raise CommandError("Failed to open channel: %s" % e) from e

        try:
            channel.settimeout(self.io_timeout)
            if forward_agent:
                agent_handler = AgentRequestHandler(channel)
            if pty:
                channel.get_pty(term="xterm")
            else:
                channel.set_combine_stderr(True)
            channel.exec_command(command)

            while True:
                try:
                    data = channel.recv(READ_CHUNK)
                except socket.timeout as e:
                    raise CommandError("Error reading from channel: timed out after %ss" % self.io_timeout) from e
                if not data:
                    break
                parser.feed(data)
            parser.finish()
            exit_status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CommandError("Error running %r: %s" % (command, e)) from e
        finally:
            if agent_handler is not None:
                agent_handler.close()
            channel.close()

        logger.debug("  SSH cmd <- %s rc=%d (%.1fs)", self.address, exit_status, time.monotonic() - t0)
        return CommandResult(command=command, exit_status=exit_status, output=parser.transcript)

    def close(self) -> None:
        self.transport.close()

    def __enter__(self) -> SSHSession:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
