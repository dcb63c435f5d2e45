"""SSH user authentication with a fallback chain of credential sources.

Strategies, tried in order until the transport reports success:

1. Private key files at the configured paths (first one that works wins).
2. The SSH agent, offering its identities in the agent's own order.
3. Each agent identity individually, with a fresh agent connection and a
   per-identity diagnostic. Some agents only get the right key accepted
   this way.

Every attempt is reported through a callback so operators can follow
authentication problems live.
"""

from __future__ import annotations

import logging
import os
from typing import Callable

import paramiko

from nixdeploy.config import DEFAULT_KEY_PATHS

logger = logging.getLogger(__name__)

_AUTH_ERRORS = (paramiko.SSHException, OSError, ValueError)


def load_private_key(path: str) -> paramiko.PKey:
    """Load an unencrypted private key of any supported type."""
    return paramiko.PKey.from_path(path)


def _identity_label(key) -> str:
    comment = getattr(key, "comment", "")
    if isinstance(comment, bytes):
        comment = comment.decode("utf-8", "replace")
    return comment or key.get_name()


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class AuthenticationResolver:
    """Authenticate a paramiko transport, trying several credential sources.

    Args:
        key_paths: Private key files in priority order.
        report: Callback receiving one human-readable line per attempt.
        agent_factory: Returns an object with ``get_keys()`` and ``close()``;
            defaults to :class:`paramiko.Agent`.
        key_loader: Loads a private key from a path.
    """

    def __init__(
            self,
            key_paths: list[str] | None = None,
            report: Callable[[str], None] | None = None,
            agent_factory: Callable[[], paramiko.Agent] = paramiko.Agent,
            key_loader: Callable[[str], paramiko.PKey] = load_private_key,
    ):
        if key_paths is None:
            key_paths = [os.path.expanduser(p) for p in DEFAULT_KEY_PATHS]
        self.key_paths = list(key_paths)
        self.report = report or (lambda line: None)
        self.agent_factory = agent_factory
        self.key_loader = key_loader

    def authenticate(self, transport, username: str, hostname: str) -> tuple[bool, list[str]]:
        """Run the strategy chain against *transport*.

        Returns:
            ``(ok, errors)`` where *errors* holds one entry per failed attempt.
        """
        errors: list[str] = []
        for strategy in (self._try_key_files, self._try_agent, self._try_agent_identities):
            if strategy(transport, username, errors):
                logger.debug("Authenticated to %s as %s", hostname, username)
                return True, errors
        logger.warning("SSH authentication failed for %s after %d attempt(s)", hostname, len(errors))
        return False, errors

    @staticmethod
    def failure_message(hostname: str, errors: list[str]) -> str:
        return "Failed to authenticate with SSH for %s.\n\nAttempted methods:\n%s" % (
            hostname, "\n".join(errors) if errors else "(no credentials available)",
        )

    def _try_key_files(self, transport, username, errors) -> bool:
        self.report("Trying file-based SSH keys...")
        for path in self.key_paths:
            if not os.path.exists(path):
                continue
            try:
                key = self.key_loader(path)
            except Exception as e:
                # Encrypted and unsupported key files raise assorted exception types.
                logger.debug("Could not load key %s: %r", path, e)
                errors.append("Key %s: %s" % (path, _describe(e)))
                continue
            try:
                transport.auth_publickey(username, key)
            except _AUTH_ERRORS as e:
                errors.append("Key %s: %s" % (path, _describe(e)))
                continue
            if transport.is_authenticated():
                self.report("Authenticated with key: %s" % path)
                return True
        return False

    def _try_agent(self, transport, username, errors) -> bool:
        self.report("Trying SSH agent authentication...")
        agent = None
        last_error = None
        try:
            agent = self.agent_factory()
            keys = agent.get_keys()
            if not keys:
                errors.append("SSH agent automatic: no identities available")
                return False
            for key in keys:
                try:
                    transport.auth_publickey(username, key)
                except _AUTH_ERRORS as e:
                    last_error = e
                    continue
                if transport.is_authenticated():
                    self.report("Authenticated via SSH agent")
                    return True
        except _AUTH_ERRORS as e:
            last_error = e
        finally:
            if agent is not None:
                agent.close()
        reason = _describe(last_error) if last_error else "no identity accepted"
        errors.append("SSH agent automatic: %s" % reason)
        return False

    def _try_agent_identities(self, transport, username, errors) -> bool:
        self.report("Trying manual agent key iteration...")
        try:
            agent = self.agent_factory()
        except _AUTH_ERRORS as e:
            errors.append("SSH agent: %s" % _describe(e))
            return False
        try:
            keys = agent.get_keys()
            self.report("Found %d key(s) in agent" % len(keys))
            for idx, key in enumerate(keys, start=1):
                label = _identity_label(key)
                self.report("  Trying key #%d: %s" % (idx, label))
                try:
                    transport.auth_publickey(username, key)
                except _AUTH_ERRORS as e:
                    errors.append("Agent key '%s': %s" % (label, _describe(e)))
                    continue
                if transport.is_authenticated():
                    self.report("Authenticated with agent key: %s" % label)
                    return True
        except _AUTH_ERRORS as e:
            errors.append("SSH agent: %s" % _describe(e))
        finally:
            agent.close()
        return False
