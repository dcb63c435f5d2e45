"""Small shared helpers."""

from __future__ import annotations

import logging

NOISY_LOGGERS = ("paramiko", "paramiko.transport")


def suppress_noisy_loggers(level: int = logging.WARNING) -> None:
    """Raise the level of chatty third-party loggers."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
