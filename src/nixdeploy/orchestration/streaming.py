"""Incremental parsing of remote command output.

Raw chunks read from an SSH channel are reassembled into logical lines.
Carriage returns used by progress bars to overwrite the current line are
honoured, so only the final rendition of an overwritten line is emitted.
Under a pseudo-terminal the output also carries escape sequences, which are
stripped from emitted lines but kept in the transcript.
"""

from __future__ import annotations

import codecs
import logging
import re
from typing import Callable

from nixdeploy.progress import ProgressEvent, UpdatePhase

logger = logging.getLogger(__name__)

# CSI sequences, OSC strings (BEL or ST terminated), charset selection and
# two-byte Fe escapes.
ANSI_ESCAPE_RE = re.compile(
    r"\x1b(?:"
    r"\[[0-?]*[ -/]*[@-~]"
    r"|\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|[()][0-9A-Za-z]"
    r"|[@-Z\\-_]"
    r")"
)

MAX_PACKAGE_NAME = 30


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from *text*."""
    return ANSI_ESCAPE_RE.sub("", text)


class StreamingOutputParser:
    """Reassemble a byte stream into logical lines.

    Feed chunks as they arrive with :meth:`feed` and call :meth:`finish`
    once the stream is closed. Every non-blank line is passed to *on_line*
    (if given) and recorded in :attr:`lines`. The emitted lines do not
    depend on where the chunk boundaries fall.

    Args:
        strip_ansi: Strip terminal escape sequences from emitted lines.
        on_line: Callback invoked with each completed, trimmed line.
    """

    def __init__(self, strip_ansi: bool = False, on_line: Callable[[str], None] | None = None):
        self.strip_ansi = strip_ansi
        self.on_line = on_line
        self.lines: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._transcript: list[str] = []
        self._finished = False

    @property
    def transcript(self) -> str:
        """Everything received so far, decoded but otherwise unmodified."""
        return "".join(self._transcript)

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one chunk; return the lines it completed."""
        return self._consume(self._decoder.decode(chunk))

    def finish(self) -> list[str]:
        """Flush residual content as a final line; return the lines emitted."""
        if self._finished:
            return []
        self._finished = True
        completed = self._consume(self._decoder.decode(b"", final=True))
        residual, self._buffer = self._buffer, ""
        line = self._clean(residual)
        if line:
            self._emit(line)
            completed.append(line)
        return completed

    def _consume(self, text: str) -> list[str]:
        if not text:
            return []
        self._transcript.append(text)
        self._buffer += text

        completed = []
        while True:
            pos = self._buffer.find("\n")
            if pos < 0:
                break
            raw, self._buffer = self._buffer[:pos], self._buffer[pos + 1:]
            line = self._clean(raw)
            if line:
                self._emit(line)
                completed.append(line)

        # The pending line was overwritten; only what follows the last \r survives.
        cr = self._buffer.rfind("\r")
        if 0 <= cr < len(self._buffer) - 1:
            self._buffer = self._buffer[cr + 1:]
        return completed

    def _clean(self, raw: str) -> str:
        raw = raw.rstrip("\r")
        raw = raw[raw.rfind("\r") + 1:]
        if self.strip_ansi:
            raw = strip_ansi(raw)
        return raw.strip()

    def _emit(self, line: str) -> None:
        self.lines.append(line)
        if self.on_line is not None:
            self.on_line(line)


def _quoted(line: str) -> str | None:
    start = line.find("'")
    if start < 0:
        return None
    end = line.find("'", start + 1)
    if end < 0:
        return None
    return line[start + 1:end]


def classify_rebuild_line(line: str) -> str:
    """Map a line of ``nixos-rebuild`` output to a short progress detail.

    Returns an empty string when nothing recognisable is found; that is not
    an error, just no finer detail.
    """
    lower = line.lower()

    if "download" in lower:
        name = _quoted(line)
        if name is None:
            return "downloading..."
        if len(name) > MAX_PACKAGE_NAME:
            return "dl: %s..." % name[:MAX_PACKAGE_NAME - 3]
        return "dl: %s" % name

    if "copying" in lower:
        return "copying paths..."

    if "building" in lower:
        if "derivation" in lower:
            m = re.search(r"\d+", line)
            if m:
                return "building %s drv" % m.group(0)
        return "building..."

    if "activating" in lower or "activation" in lower:
        return "activating..."

    if "updating" in lower and "bootloader" in lower:
        return "updating bootloader..."

    if "reloading" in lower:
        return "reloading services..."

    return ""


def rebuild_line_event(hostname: str, line: str) -> ProgressEvent:
    """Progress event for one rebuild output line, classified."""
    return ProgressEvent(hostname, UpdatePhase.rebuilding(classify_rebuild_line(line)), line)


def step_line_event(hostname: str, line: str, phase: UpdatePhase) -> ProgressEvent:
    """Progress event for one output line of a fixed-phase step."""
    return ProgressEvent(hostname, phase, line)
