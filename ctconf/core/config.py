"""ctconf runtime configuration and settings."""
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import ValidationError

from ctconf.core.errors import InvalidValueError
from ctconf.models.settings import SettingsFile

DEFAULT_SETTINGS_FILE = Path("/etc/ctconf/ctconf.yml")


def _default_node() -> str:
    return socket.gethostname().split('.')[0]


@dataclass
class CtconfConfig:
    """Runtime configuration for ctconf operations.

    Attributes:
        node: Cluster node name this host answers for
        config_root: Directory containing one <vmid>/config per container
        lock_dir: Directory for per-container lock files
        lock_timeout: Seconds to wait for a container lock (default: 10)
        rollback_unlock_timeout: Lock timeout for the final rollback unlock (default: 5)
        cgroup_root: cgroup filesystem mount point
        command_timeout: Timeout in seconds for external commands (default: 30)
        stop_timeout: Timeout in seconds for a graceful container stop (default: 60)
        zfs_pools: Storage id -> ZFS dataset prefix
        dir_storages: Storage id -> directory path
    """

    node: str = field(default_factory=_default_node)
    config_root: Optional[str] = None  # resolved from node when unset
    lock_dir: str = "/run/lock/lxc"
    lock_timeout: int = 10
    rollback_unlock_timeout: int = 5
    cgroup_root: str = "/sys/fs/cgroup"
    command_timeout: int = 30
    stop_timeout: int = 60
    zfs_pools: Dict[str, str] = field(default_factory=dict)
    dir_storages: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.config_root is None:
            self.config_root = f"/etc/pve/nodes/{self.node}/lxc"

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "CtconfConfig":
        """Create config from a YAML settings file.

        A missing file yields the defaults.

        Raises:
            InvalidValueError: If the file does not match the settings schema
        """
        settings_path = Path(path) if path else DEFAULT_SETTINGS_FILE
        if not settings_path.exists():
            return cls()

        with open(settings_path) as f:
            raw = yaml.safe_load(f) or {}

        try:
            parsed = SettingsFile(**raw)
        except (ValidationError, TypeError) as e:
            raise InvalidValueError(f"invalid settings file {settings_path}: {e}")

        values = {k: v for k, v in parsed.model_dump().items() if v is not None}
        return cls(**values)

    @classmethod
    def from_env(cls, base: Optional["CtconfConfig"] = None) -> "CtconfConfig":
        """Create config from environment variables, layered over ``base``.

        Environment variables:
            CTCONF_NODE, CTCONF_CONFIG_ROOT, CTCONF_LOCK_DIR, CTCONF_LOCK_TIMEOUT,
            CTCONF_ROLLBACK_UNLOCK_TIMEOUT, CTCONF_CGROUP_ROOT,
            CTCONF_COMMAND_TIMEOUT, CTCONF_STOP_TIMEOUT
        """
        base = base or cls()
        values = {f.name: getattr(base, f.name) for f in fields(cls)}

        for f in fields(cls):
            if f.name in ('zfs_pools', 'dir_storages'):
                continue
            env_value = os.getenv(f"CTCONF_{f.name.upper()}")
            if env_value is None:
                continue
            if isinstance(values[f.name], int):
                values[f.name] = int(env_value)
            else:
                values[f.name] = env_value

        if os.getenv("CTCONF_NODE") and not os.getenv("CTCONF_CONFIG_ROOT"):
            values['config_root'] = None

        return cls(**values)

    def container_dir(self, vmid: int) -> Path:
        return Path(self.config_root) / str(vmid)

    def config_path(self, vmid: int) -> Path:
        return self.container_dir(vmid) / "config"


_config: Optional[CtconfConfig] = None


def get_config() -> CtconfConfig:
    """Get the global ctconf configuration.

    Returns:
        CtconfConfig built from the settings file (CTCONF_SETTINGS) and environment
    """
    global _config
    if _config is None:
        settings_file = os.getenv("CTCONF_SETTINGS")
        _config = CtconfConfig.from_env(CtconfConfig.from_file(settings_file))
    return _config


def set_config(config: Optional[CtconfConfig]):
    """Set the global ctconf configuration.

    Args:
        config: CtconfConfig instance to use globally (None resets to lazy default)
    """
    global _config
    _config = config
