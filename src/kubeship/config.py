"""Configuration defaults and settings objects for kubeship.

Settings are resolved in three layers: built-in defaults, an optional YAML
file (``~/.config/kubeship/config.yaml`` or ``$KUBESHIP_CONFIG``), then
explicit overrides from the CLI.  The file has two optional sections::

    ssh:
      user: ubuntu
      key: ~/.ssh/id_ed25519
      port: 22
      timeout: 30
      temp_dir: /tmp
    distribution:
      parallel: 3
      retries: 3
      min_workers: 0
      keep_archives: false
      workers: [10.0.0.11, 10.0.0.12]
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from kubeship.utils import coerce_value, load_yaml, parse_worker_list

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "kubeship" / "config.yaml"
CONFIG_ENV_VAR = "KUBESHIP_CONFIG"

DEFAULT_SSH_USER = "ubuntu"
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_TIMEOUT = 30  # seconds
DEFAULT_TRANSFER_TIMEOUT = 1800  # seconds
DEFAULT_WORKER_TEMP_DIR = "/tmp"
DEFAULT_PARALLEL_WORKERS = 3
DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_DELAY = 2.0  # seconds

# containerd namespace used by the kubelet
CONTAINERD_NAMESPACE = "k8s.io"

ARCHIVE_PATH_TEMPLATE = "/tmp/kubeship-%s.tar"


@dataclass
class SSHSettings:
    """Connection parameters shared by every remote operation."""

    user: str = DEFAULT_SSH_USER
    key_path: str | None = None
    port: int = DEFAULT_SSH_PORT
    timeout: int = DEFAULT_SSH_TIMEOUT
    transfer_timeout: int = DEFAULT_TRANSFER_TIMEOUT
    temp_dir: str = DEFAULT_WORKER_TEMP_DIR
    options: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.key_path:
            self.key_path = os.path.expanduser(self.key_path)


@dataclass(frozen=True)
class DistributorPolicy:
    """Immutable policy for one distribution session.

    ``min_workers == 0`` means every node must receive the image.
    ``keep_artifacts`` leaves the remote archive in place after import.
    A non-empty ``explicit_nodes`` bypasses cluster discovery.
    """

    parallelism: int = DEFAULT_PARALLEL_WORKERS
    retry_count: int = DEFAULT_RETRY_COUNT
    min_workers: int = 0
    keep_artifacts: bool = False
    explicit_nodes: tuple[str, ...] = ()
    retry_delay: float = DEFAULT_RETRY_DELAY

    def __post_init__(self):
        if self.parallelism < 1:
            raise ValueError("parallelism must be at least 1, got %d" % self.parallelism)
        if self.retry_count < 1:
            raise ValueError("retry_count must be at least 1, got %d" % self.retry_count)
        if self.min_workers < 0:
            raise ValueError("min_workers cannot be negative, got %d" % self.min_workers)
        if self.retry_delay < 0:
            raise ValueError("retry_delay cannot be negative, got %s" % self.retry_delay)
        # accept any iterable of addresses but store a tuple
        object.__setattr__(self, "explicit_nodes", tuple(self.explicit_nodes))

    def effective_min_workers(self, node_count: int) -> int:
        """Return the number of nodes that must succeed out of *node_count*."""
        return node_count if self.min_workers == 0 else self.min_workers


def resolve_config_path(path: str | None = None) -> Path | None:
    """Return the config file to load, or ``None`` when there is none.

    An explicit *path* must exist; the environment and default locations
    are used only if present.
    """
    if path:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError("Config file not found: %s" % p)
        return p
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        p = Path(env).expanduser()
        if p.is_file():
            return p
        logger.warning("%s points to missing file %s, ignoring", CONFIG_ENV_VAR, p)
    if DEFAULT_CONFIG_PATH.is_file():
        return DEFAULT_CONFIG_PATH
    return None


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        logger.warning("Ignoring config section '%s': expected a mapping", name)
        return {}
    # YAML already types most values; coerce the ones written as strings
    return {k: coerce_value(v) if isinstance(v, str) else v for k, v in section.items()}


def _drop_none(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}


def load_settings(
    path: str | None = None,
    ssh_overrides: dict | None = None,
    policy_overrides: dict | None = None,
) -> tuple[SSHSettings, DistributorPolicy]:
    """Build :class:`SSHSettings` and :class:`DistributorPolicy` from all layers.

    Args:
        path: Explicit config file path (optional).
        ssh_overrides: Keyword overrides for :class:`SSHSettings`; ``None``
            values are ignored.
        policy_overrides: Keyword overrides for :class:`DistributorPolicy`;
            ``None`` values are ignored.

    Returns:
        Tuple of (ssh_settings, policy).
    """
    data: dict = {}
    config_path = resolve_config_path(path)
    if config_path is not None:
        logger.debug("Loading config from %s", config_path)
        data = load_yaml(config_path)

    ssh_file = _section(data, "ssh")
    dist_file = _section(data, "distribution")

    ssh_kwargs = _drop_none({
        "user": ssh_file.get("user"),
        "key_path": ssh_file.get("key"),
        "port": ssh_file.get("port"),
        "timeout": ssh_file.get("timeout"),
        "transfer_timeout": ssh_file.get("transfer_timeout"),
        "temp_dir": ssh_file.get("temp_dir"),
        "options": ssh_file.get("options"),
    })
    ssh_kwargs.update(_drop_none(ssh_overrides or {}))

    workers = dist_file.get("workers")
    if isinstance(workers, str):
        workers = parse_worker_list(workers)
    policy_kwargs = _drop_none({
        "parallelism": dist_file.get("parallel"),
        "retry_count": dist_file.get("retries"),
        "min_workers": dist_file.get("min_workers"),
        "keep_artifacts": dist_file.get("keep_archives"),
        "explicit_nodes": tuple("" if w is None else str(w) for w in workers) if workers else None,
        "retry_delay": dist_file.get("retry_delay"),
    })
    policy_kwargs.update(_drop_none(policy_overrides or {}))

    return SSHSettings(**ssh_kwargs), DistributorPolicy(**policy_kwargs)
