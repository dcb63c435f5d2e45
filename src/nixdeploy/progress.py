"""Per-host update phases and the shared live progress table.

Pipelines publish :class:`ProgressEvent` messages into a bounded queue.
A single drain thread owned by :class:`ProgressAggregator` applies them to
the per-host table; renderers read copies via :meth:`ProgressAggregator.snapshot`.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum

from nixdeploy.config import DEFAULT_PROGRESS_QUEUE_SIZE

logger = logging.getLogger(__name__)


class PhaseKind(Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING_BEFORE_COMMAND = "running-before-command"
    CHECKING_REPO = "checking-repo"
    SYNCING_REPO = "syncing-repo"
    REBUILDING = "rebuilding"
    RUNNING_AFTER_COMMAND = "running-after-command"
    SUCCESS = "success"
    FAILED = "failed"


_LABELS = {
    PhaseKind.PENDING: "Pending",
    PhaseKind.CONNECTING: "Connecting...",
    PhaseKind.RUNNING_BEFORE_COMMAND: "Running before-command...",
    PhaseKind.CHECKING_REPO: "Checking git repo...",
    PhaseKind.SYNCING_REPO: "Pulling git updates...",
    PhaseKind.RUNNING_AFTER_COMMAND: "Running after-command...",
    PhaseKind.SUCCESS: "Success",
}


@dataclass(frozen=True)
class UpdatePhase:
    """Where a host's pipeline currently is.

    ``detail`` is only meaningful for ``REBUILDING`` (finer-grained rebuild
    progress) and ``FAILED`` (the failure reason).
    """

    kind: PhaseKind
    detail: str = ""

    @classmethod
    def rebuilding(cls, detail: str = "") -> UpdatePhase:
        return cls(PhaseKind.REBUILDING, detail)

    @classmethod
    def failed(cls, reason: str) -> UpdatePhase:
        return cls(PhaseKind.FAILED, reason)

    @property
    def reason(self) -> str:
        return self.detail if self.kind is PhaseKind.FAILED else ""

    @property
    def is_terminal(self) -> bool:
        return self.kind in (PhaseKind.SUCCESS, PhaseKind.FAILED)

    @property
    def label(self) -> str:
        if self.kind is PhaseKind.REBUILDING:
            return "Rebuilding: %s" % self.detail if self.detail else "Rebuilding system..."
        if self.kind is PhaseKind.FAILED:
            return "Failed: %s" % self.detail
        return _LABELS[self.kind]

    @property
    def severity(self) -> str:
        """Coarse class for rendering: pending, active, success or failure."""
        if self.kind is PhaseKind.PENDING:
            return "pending"
        if self.kind is PhaseKind.SUCCESS:
            return "success"
        if self.kind is PhaseKind.FAILED:
            return "failure"
        return "active"

    @property
    def color(self) -> str:
        """Terminal color name (as understood by ``click.style``)."""
        return {
            "pending": "bright_black",
            "active": "yellow",
            "success": "green",
            "failure": "red",
        }[self.severity]

    def __str__(self) -> str:
        return self.label


PENDING = UpdatePhase(PhaseKind.PENDING)
CONNECTING = UpdatePhase(PhaseKind.CONNECTING)
RUNNING_BEFORE_COMMAND = UpdatePhase(PhaseKind.RUNNING_BEFORE_COMMAND)
CHECKING_REPO = UpdatePhase(PhaseKind.CHECKING_REPO)
SYNCING_REPO = UpdatePhase(PhaseKind.SYNCING_REPO)
RUNNING_AFTER_COMMAND = UpdatePhase(PhaseKind.RUNNING_AFTER_COMMAND)
SUCCESS = UpdatePhase(PhaseKind.SUCCESS)


@dataclass(frozen=True)
class ProgressEvent:
    """A phase change and/or an output line for one host."""

    hostname: str
    phase: UpdatePhase
    output_line: str | None = None


@dataclass
class ServerProgress:
    """Latest phase and accumulated output of one host."""

    phase: UpdatePhase = PENDING
    lines: list[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        return "".join(line + "\n" for line in self.lines)

    def copy(self) -> ServerProgress:
        return ServerProgress(phase=self.phase, lines=list(self.lines))


_STOP = object()


class ProgressAggregator:
    """Concurrency-safe table of host -> :class:`ServerProgress`.

    Producers call :meth:`publish`, which never blocks: when the queue is
    full the event is dropped. Only the drain thread mutates the table once
    :meth:`start` has been called.
    """

    def __init__(self, hostnames, queue_size: int = DEFAULT_PROGRESS_QUEUE_SIZE) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, ServerProgress] = {h: ServerProgress() for h in hostnames}
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._thread: threading.Thread | None = None

    @property
    def hostnames(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def publish(self, event: ProgressEvent) -> bool:
        """Enqueue *event* without blocking. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def apply(self, event: ProgressEvent) -> None:
        """Apply one event to the table.

        A host in a terminal phase keeps it; later lines are still appended.
        An undetailed ``REBUILDING`` event keeps the current rebuild detail.
        """
        with self._lock:
            entry = self._entries.get(event.hostname)
            if entry is None:
                logger.debug("Progress event for unknown host %s ignored", event.hostname)
                return
            current = entry.phase
            if not current.is_terminal:
                keep_detail = (
                    event.phase.kind is PhaseKind.REBUILDING
                    and current.kind is PhaseKind.REBUILDING
                    and not event.phase.detail
                )
                if not keep_detail:
                    entry.phase = event.phase
            if event.output_line is not None:
                entry.lines.append(event.output_line)

    def snapshot(self) -> dict[str, ServerProgress]:
        """Copy of the whole table; safe to read without further locking."""
        with self._lock:
            return {h: p.copy() for h, p in self._entries.items()}

    def get(self, hostname: str) -> ServerProgress:
        with self._lock:
            return self._entries[hostname].copy()

    def all_terminal(self) -> bool:
        with self._lock:
            return all(p.phase.is_terminal for p in self._entries.values())

    # -- drain thread -------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._drain, name="progress-aggregator", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Apply everything already queued, then stop the drain thread."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                break
            self.apply(event)

    def __enter__(self) -> ProgressAggregator:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
