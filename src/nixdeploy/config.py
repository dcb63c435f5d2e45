"""User configuration management for nix-deploy."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "nix-deploy"
DEFAULT_FLAKE_DIR = "/etc/nixos"
DEFAULT_HOST_PREFIX = "nix"
DEFAULT_SSH_USER = "root"
DEFAULT_SSH_PORT = 22
DEFAULT_CONNECT_TIMEOUT = 60
DEFAULT_IO_TIMEOUT = 300
DEFAULT_PROGRESS_QUEUE_SIZE = 1024
DEFAULT_KEY_PATHS = (
    "~/.ssh/id_ed25519",
    "~/.ssh/id_rsa",
    "~/.ssh/id_ecdsa",
    "~/.ssh/id_dsa",
)


class NixDeployConfig:
    """Manages nix-deploy user configuration."""

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or (DEFAULT_CONFIG_DIR / "config.yaml")
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self):
        if self.config_path.exists():
            with self.config_path.open("r") as f:
                self._data = yaml.safe_load(f) or {}
            logger.debug("Loaded config from %s", self.config_path)
        else:
            self._data = {}

    @property
    def ssh_user(self) -> str:
        ssh = self._data.get("ssh", {})
        return ssh.get("user") or DEFAULT_SSH_USER

    @property
    def ssh_port(self) -> int:
        ssh = self._data.get("ssh", {})
        return int(ssh.get("port", DEFAULT_SSH_PORT))

    @property
    def ssh_key_paths(self) -> list[str]:
        """Private keys to try, in priority order, with ``~`` expanded."""
        ssh = self._data.get("ssh", {})
        keys = ssh.get("keys") or list(DEFAULT_KEY_PATHS)
        return [os.path.expanduser(k) for k in keys]

    @property
    def connect_timeout(self) -> float:
        ssh = self._data.get("ssh", {})
        return float(ssh.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT))

    @property
    def io_timeout(self) -> float:
        """Read/write bound once connected; rebuilds are long-running."""
        ssh = self._data.get("ssh", {})
        return float(ssh.get("timeout", DEFAULT_IO_TIMEOUT))

    @property
    def flake_dir(self) -> str:
        return str(self._data.get("flake_dir", DEFAULT_FLAKE_DIR)).rstrip("/") or "/"

    @property
    def host_prefix(self) -> str:
        return self._data.get("host_prefix", DEFAULT_HOST_PREFIX)

    @property
    def progress_queue_size(self) -> int:
        return int(self._data.get("progress_queue_size", DEFAULT_PROGRESS_QUEUE_SIZE))

    @property
    def tailscale_bin(self) -> str:
        return self._data.get("tailscale", "tailscale")

    @property
    def default_boot(self) -> bool:
        defaults = self._data.get("defaults", {})
        return bool(defaults.get("boot", False))

    @property
    def default_forward_agent(self) -> bool:
        defaults = self._data.get("defaults", {})
        return bool(defaults.get("forward_agent", False))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by dot-separated key path."""
        parts = key.split(".")
        current = self._data
        for part in parts:
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current
