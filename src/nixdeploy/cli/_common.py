"""Shared CLI infrastructure: logging setup, config loading, decorators."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from nixdeploy.config import NixDeployConfig
from nixdeploy.hosts import (
    HostDiscoveryError,
    HostResolutionError,
    discover_hosts,
    parse_hosts_file,
    parse_index_selection,
    select_hosts,
)

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool):
    """Configure logging based on verbosity.

    Uses explicit handler setup instead of ``logging.basicConfig`` which
    is silently a no-op when the root logger already has handlers.
    """
    level = logging.DEBUG if verbose else logging.INFO
    fmt = ("%(asctime)s [%(levelname)s] %(name)s: %(message)s" if verbose
           else "%(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt="%H:%M:%S"))
    root.addHandler(handler)

    from nixdeploy.utils import suppress_noisy_loggers
    suppress_noisy_loggers()


def _get_config(config_path: str | None) -> NixDeployConfig:
    return NixDeployConfig(Path(config_path)) if config_path else NixDeployConfig()


def _discover_or_exit(config: NixDeployConfig) -> list[str]:
    try:
        return discover_hosts(prefix=config.host_prefix, tailscale_bin=config.tailscale_bin)
    except HostDiscoveryError as e:
        click.echo("Error: %s" % e, err=True)
        sys.exit(1)


def _prompt_selection(discovered: list[str]) -> list[str]:
    """Show a numbered host list and ask which ones to update."""
    from nixdeploy.utils.cli_formatters import format_host_list

    click.echo(format_host_list(discovered, numbered=True))
    answer = click.prompt(
        "\nSelect hosts (e.g. 1,3-4; 'a' for all; empty to cancel)",
        default="", show_default=False,
    )
    return parse_index_selection(answer, discovered)


def _resolve_hosts_or_exit(
        hosts: str | None,
        hosts_file: str | None,
        all_hosts: bool,
        config: NixDeployConfig,
) -> list[str]:
    """Resolve the hosts to update from CLI args, discovery, or a prompt.

    ``hostname:address`` entries are used as-is; bare hostnames are looked
    up among discovered hosts. Exits with an error message on failure.
    """
    requested: list[str] = []
    try:
        if hosts:
            requested = [h.strip() for h in hosts.split(",") if h.strip()]
        elif hosts_file:
            requested = parse_hosts_file(hosts_file)

        if requested and all(":" in r for r in requested):
            return select_hosts(requested, [])

        discovered = _discover_or_exit(config)
        if all_hosts:
            return discovered
        if requested:
            return select_hosts(requested, discovered)
        if not discovered:
            return []
        return _prompt_selection(discovered)
    except HostResolutionError as e:
        click.echo("Error: %s" % e, err=True)
        sys.exit(1)


def config_option(f):
    """Common --config option."""
    return click.option("--config", "config_path", default=None,
                        type=click.Path(dir_okay=False),
                        help="Path to config file")(f)


def host_options(f):
    """Common host-targeting options: --hosts, --hosts-file, --all."""
    f = click.option("--all", "-a", "all_hosts", is_flag=True, default=False,
                     help="Update every discovered host without prompting")(f)
    f = click.option("--hosts-file", default=None,
                     help="File with hosts (one per line, # comments)")(f)
    f = click.option("--hosts", "-H", default=None,
                     help="Comma-separated hostnames or hostname:address tokens")(f)
    return f
