"""nix-deploy CLI: update NixOS hosts over SSH."""

from __future__ import annotations

import click

from nixdeploy import __version__
from ._common import _setup_logging
from ._hosts import hosts_cmd
from ._update import update


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose/debug output")
@click.version_option(__version__, prog_name="nix-deploy")
@click.pass_context
def main(ctx, verbose):
    """nix-deploy: pull configuration and rebuild NixOS across a fleet."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)


main.add_command(update)
main.add_command(hosts_cmd)
