"""nix-deploy hosts command."""

from __future__ import annotations

import click

from ._common import _discover_or_exit, _get_config, config_option


@click.command("hosts")
@config_option
@click.pass_context
def hosts_cmd(ctx, config_path):
    """List NixOS hosts discovered on the tailnet."""
    from nixdeploy.utils.cli_formatters import format_host_list

    config = _get_config(config_path)
    click.echo(format_host_list(_discover_or_exit(config)))
