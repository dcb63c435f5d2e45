"""Presentation layer formatting functions for nix-deploy CLI."""

from __future__ import annotations

import click

from nixdeploy.hosts import token_hostname
from nixdeploy.progress import ServerProgress, UpdatePhase
from nixdeploy.updater import UpdateResult


def format_host_list(tokens: list[str], numbered: bool = False) -> str:
    """Format discovered host tokens as a two-column table."""
    if not tokens:
        return "No hosts found."

    names = [token_hostname(t) for t in tokens]
    addrs = [t.split(":", 1)[1] if ":" in t else "" for t in tokens]
    w_name = max(len("Host"), *(len(n) for n in names)) + 2
    w_addr = max(len("Address"), *(len(a) for a in addrs))
    w_idx = len(str(len(tokens))) + 2 if numbered else 0

    header = f"{'#':<{w_idx}}" if numbered else ""
    lines = [f"{header}{'Host':<{w_name}}Address", "-" * (w_idx + w_name + w_addr)]
    for i, (name, addr) in enumerate(zip(names, addrs), start=1):
        prefix = f"{str(i) + '.':<{w_idx}}" if numbered else ""
        lines.append(f"{prefix}{name:<{w_name}}{addr}")
    return "\n".join(lines)


def styled_phase(phase: UpdatePhase) -> str:
    """Phase label colored by severity."""
    return click.style(phase.label, fg=phase.color)


def format_phase_line(hostname: str, phase: UpdatePhase, width: int = 0) -> str:
    return f"{hostname:<{width}}  {styled_phase(phase)}"


def format_progress_table(snapshot: dict[str, ServerProgress], hostnames: list[str] | None = None) -> str:
    """Format the live progress table, one host per line, in *hostnames* order."""
    order = hostnames if hostnames is not None else sorted(snapshot)
    if not order:
        return ""
    width = max(len(h) for h in order)
    done = sum(1 for h in order if snapshot[h].phase.is_terminal)
    lines = [format_phase_line(h, snapshot[h].phase, width) for h in order]
    lines.append(f"{done}/{len(order)} complete")
    return "\n".join(lines)


def format_results(results: list[UpdateResult]) -> str:
    """Final summary: every host with a marker; failures include the transcript."""
    lines = ["--- Update Results ---"]
    for r in sorted(results, key=lambda r: r.hostname):
        if r.success:
            lines.append(click.style(f"OK      {r.hostname}: Update successful", fg="green"))
        else:
            lines.append(click.style(f"FAILED  {r.hostname}: Update failed", fg="red"))
            if r.transcript.strip():
                lines.append("Output:")
                lines.append(r.transcript.rstrip("\n"))
    ok = sum(1 for r in results if r.success)
    lines.append(f"\n{ok}/{len(results)} host(s) updated successfully")
    return "\n".join(lines)
