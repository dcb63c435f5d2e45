"""nix-deploy update command."""

from __future__ import annotations

import os
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor

import click

from ._common import _get_config, _resolve_hosts_or_exit, config_option, host_options

POLL_INTERVAL = 0.5


@click.command()
@host_options
@click.option("--boot", "-b", "use_boot", is_flag=True, default=False,
              help="Use 'nixos-rebuild boot' instead of 'switch'")
@click.option("--forward-agent", "-A", is_flag=True, default=False,
              help="Forward the local SSH agent to remote commands")
@click.option("--command", "-c", "command", default=None,
              help="Auxiliary command to run on each host before the update")
@click.option("--after", "run_after", is_flag=True, default=False,
              help="Run --command after a successful rebuild instead of before")
@click.option("--show-output", is_flag=True, default=False,
              help="Stream remote output lines while updating")
@config_option
@click.pass_context
def update(ctx, hosts, hosts_file, all_hosts, use_boot, forward_agent, command, run_after,
           show_output, config_path):
    """Pull configuration and rebuild NixOS on selected hosts.

    Without --hosts, --hosts-file or --all, discovered hosts are listed and
    you are prompted to pick.

    Examples:

      nix-deploy update --all

      nix-deploy update -H nixweb,nixdb --boot

      nix-deploy update -H nixweb:100.64.0.7 -c 'systemctl stop app'

      nix-deploy update --all -c 'nix-collect-garbage -d' --after
    """
    from nixdeploy.fleet import FleetCoordinator
    from nixdeploy.updater import UpdateOptions
    from nixdeploy.utils.cli_formatters import format_progress_table, format_results

    if run_after and not command:
        click.echo("Error: --after requires --command.", err=True)
        sys.exit(1)

    config = _get_config(config_path)
    selected = _resolve_hosts_or_exit(hosts, hosts_file, all_hosts, config)
    if not selected:
        click.echo("No servers selected. Exiting.")
        return

    # Flags left unset on the command line fall back to the config defaults.
    if ctx.get_parameter_source("use_boot") is click.core.ParameterSource.DEFAULT:
        use_boot = config.default_boot
    if ctx.get_parameter_source("forward_agent") is click.core.ParameterSource.DEFAULT:
        forward_agent = config.default_forward_agent

    options = UpdateOptions(
        use_boot=use_boot,
        forward_agent=forward_agent,
        command=command,
        run_after=run_after,
    )
    click.echo("Updating selected servers: %s" % ", ".join(selected))

    coordinator = FleetCoordinator(selected, options, config=config)
    runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fleet")
    future = runner.submit(coordinator.run)
    try:
        _watch_progress(coordinator, future, show_output)
        results = future.result()
    except KeyboardInterrupt:
        click.echo("\nInterrupted. Commands already started keep running on the remote hosts.", err=True)
        sys.stderr.flush()
        # Host workers are blocked in SSH reads; do not wait for them.
        os._exit(130)
    runner.shutdown()

    click.echo("")
    click.echo(format_progress_table(coordinator.progress.snapshot(), coordinator.progress.hostnames))
    click.echo("")
    click.echo(format_results(results))

    if not all(r.success for r in results):
        sys.exit(1)


def _watch_progress(coordinator, future: Future, show_output: bool, interval: float = POLL_INTERVAL):
    """Echo phase changes (and optionally output lines) until the run finishes."""
    from nixdeploy.utils.cli_formatters import format_phase_line

    hostnames = coordinator.progress.hostnames
    width = max(len(h) for h in hostnames)
    labels: dict[str, str] = {}
    seen_lines = {h: 0 for h in hostnames}

    while True:
        finished = future.done()
        snapshot = coordinator.progress.snapshot()
        for h in hostnames:
            entry = snapshot[h]
            if show_output:
                for line in entry.lines[seen_lines[h]:]:
                    click.echo(f"{h:<{width}} | {line}")
                seen_lines[h] = len(entry.lines)
            if labels.get(h) != entry.phase.label:
                labels[h] = entry.phase.label
                click.echo(format_phase_line(h, entry.phase, width))
        if finished:
            return
        time.sleep(interval)
