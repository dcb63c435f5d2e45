"""Host tokens, discovery over the tailnet, and operator selection.

A host token is ``"<hostname>:<address>"``. Discovery reads
``tailscale status --json`` and yields tokens for online peers whose
hostname carries the configured prefix.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from nixdeploy.config import DEFAULT_HOST_PREFIX

logger = logging.getLogger(__name__)


class HostParseError(ValueError):
    """A host token is not of the form ``hostname:address``."""

    pass


class HostDiscoveryError(Exception):
    """Error while discovering hosts from the tailnet."""

    pass


class HostResolutionError(Exception):
    """Error while resolving the operator's host selection."""

    pass


@dataclass(frozen=True)
class HostTarget:
    """A host to update, parsed from a ``hostname:address`` token."""

    hostname: str
    address: str
    prefix: str = DEFAULT_HOST_PREFIX

    @classmethod
    def parse(cls, token: str, prefix: str = DEFAULT_HOST_PREFIX) -> HostTarget:
        """Parse ``hostname:address``.

        Only the first ``:`` separates the two, so IPv6 addresses survive.

        Raises:
            HostParseError: If the separator is missing or either side is empty.
        """
        hostname, sep, address = token.strip().partition(":")
        if not sep or not hostname or not address:
            raise HostParseError("Invalid host token %r (expected hostname:address)" % token)
        return cls(hostname=hostname, address=address, prefix=prefix)

    @property
    def rebuild_identifier(self) -> str:
        """Flake output name: the hostname with the host prefix removed."""
        if self.prefix and self.hostname.startswith(self.prefix):
            return self.hostname[len(self.prefix):]
        return self.hostname

    @property
    def token(self) -> str:
        return "%s:%s" % (self.hostname, self.address)


def token_hostname(token: str) -> str:
    """Hostname part of a token; the whole token when it has no ``:``."""
    return token.split(":", 1)[0]


def parse_tailscale_status(data: dict, prefix: str = DEFAULT_HOST_PREFIX) -> list[str]:
    """Filter ``tailscale status --json`` output down to sorted host tokens.

    Keeps peers whose ``HostName`` starts with *prefix*, that are
    ``Online`` and that have at least one tailnet IP.
    """
    tokens = []
    for peer in (data.get("Peer") or {}).values():
        hostname = peer.get("HostName", "")
        ips = peer.get("TailscaleIPs") or []
        if hostname.startswith(prefix) and ips and peer.get("Online"):
            tokens.append("%s:%s" % (hostname, ips[0]))
    tokens.sort(key=token_hostname)
    return tokens


def discover_hosts(
        prefix: str = DEFAULT_HOST_PREFIX,
        tailscale_bin: str = "tailscale",
        timeout: int = 30,
) -> list[str]:
    """Discover candidate hosts from the local tailscale daemon.

    Returns:
        Sorted list of ``hostname:address`` tokens.

    Raises:
        HostDiscoveryError: If tailscale cannot be run or its output parsed.
    """
    cmd = [tailscale_bin, "status", "--json"]
    logger.debug("Discovering hosts: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise HostDiscoveryError("Failed to execute tailscale command: %s" % e) from e

    if proc.returncode != 0:
        raise HostDiscoveryError(
            "tailscale status failed (rc=%d): %s" % (proc.returncode, proc.stderr.strip()[:200])
        )

    try:
        data = json.loads(proc.stdout)
    except json.JSONDecodeError as e:
        raise HostDiscoveryError("Failed to parse tailscale status JSON: %s" % e) from e

    tokens = parse_tailscale_status(data, prefix)
    logger.debug("Discovered %d host(s) with prefix '%s'", len(tokens), prefix)
    return tokens


def parse_hosts_file(path: str | Path) -> list[str]:
    """Parse a hosts file with one token or hostname per line.

    Comments (#) and blank lines are ignored.

    Raises:
        HostResolutionError: If file not found
    """
    file_path = Path(path)
    if not file_path.exists():
        raise HostResolutionError("Hosts file not found: %s" % file_path)

    hosts = []
    with file_path.open("r") as f:
        for line in f:
            if "#" in line:
                line = line[: line.index("#")]
            line = line.strip()
            if line:
                hosts.append(line)

    logger.debug("Parsed %d hosts from file: %s", len(hosts), file_path)
    return hosts


def select_hosts(requested: list[str], discovered: list[str]) -> list[str]:
    """Resolve requested hosts against the discovered tokens.

    Entries containing ``:`` are used verbatim. Bare hostnames are
    matched against *discovered*. Order follows *requested*; repeated
    tokens are dropped.

    Raises:
        HostResolutionError: If a bare hostname is not among *discovered*,
            or one hostname is given with two different addresses.
    """
    by_name = {token_hostname(t): t for t in discovered}
    selected: dict[str, str] = {}
    unknown = []
    for entry in requested:
        token = entry if ":" in entry else by_name.get(entry)
        if token is None:
            unknown.append(entry)
            continue
        hostname = token_hostname(token)
        if hostname in selected and selected[hostname] != token:
            raise HostResolutionError(
                "Host %s given twice (%s and %s)" % (hostname, selected[hostname], token)
            )
        selected[hostname] = token
    if unknown:
        raise HostResolutionError("Unknown host(s): %s" % ", ".join(unknown))
    return list(selected.values())


def parse_index_selection(answer: str, tokens: list[str]) -> list[str]:
    """Turn an interactive answer such as ``"1,3-4"`` or ``"a"`` into tokens.

    Indices are 1-based, matching the numbered list shown to the operator.

    Raises:
        HostResolutionError: On malformed or out-of-range indices.
    """
    answer = answer.strip().lower()
    if not answer:
        return []
    if answer in ("a", "all"):
        return list(tokens)

    indices: list[int] = []
    for part in answer.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                lo, _, hi = part.partition("-")
                indices.extend(range(int(lo), int(hi) + 1))
            else:
                indices.append(int(part))
        except ValueError:
            raise HostResolutionError("Invalid selection: %r" % part) from None

    selected = []
    for i in indices:
        if not 1 <= i <= len(tokens):
            raise HostResolutionError("Selection out of range: %d" % i)
        if tokens[i - 1] not in selected:
            selected.append(tokens[i - 1])
    return selected
