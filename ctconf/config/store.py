"""Durable storage of container configs keyed by container id."""
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Optional

from ctconf.config.codec import ConfigCodec
from ctconf.core.config import CtconfConfig, get_config
from ctconf.core.errors import DuplicateNameError, NotFoundError
from ctconf.core.lock import LockManager
from ctconf.core.logger import get_logger
from ctconf.models.container import Config

logger = get_logger(__name__)


class ConfigStore:
    """Load and persist container configs.

    Callers that read, modify and write a config must hold the container lock
    across the whole sequence (see ``locked``).
    """

    def __init__(self, settings: Optional[CtconfConfig] = None,
                 codec: Optional[ConfigCodec] = None,
                 locks: Optional[LockManager] = None):
        self.settings = settings or get_config()
        self.codec = codec or ConfigCodec()
        self.locks = locks or LockManager(self.settings.lock_dir, timeout=self.settings.lock_timeout)

    # Locking

    def locked(self, vmid: int, timeout: Optional[int] = None):
        """Context manager holding the container lock."""
        return self.locks.locked(vmid, timeout)

    def lock_container(self, vmid: int, code: Callable[..., Any], *args,
                       timeout: Optional[int] = None, **kwargs) -> Any:
        return self.locks.lock_container(vmid, code, *args, timeout=timeout, **kwargs)

    # Paths

    def config_file(self, vmid: int) -> Path:
        return self.settings.config_path(vmid)

    def exists(self, vmid: int) -> bool:
        return self.config_file(vmid).exists()

    def config_list(self) -> List[int]:
        """List container ids that have a config on this node."""
        root = Path(self.settings.config_root)
        if not root.is_dir():
            return []

        vmids = []
        for entry in root.iterdir():
            if entry.name.isdigit() and int(entry.name) > 0 and (entry / "config").is_file():
                vmids.append(int(entry.name))
        return sorted(vmids)

    # Persistence

    def load(self, vmid: int) -> Config:
        """Load and parse a container config.

        Raises:
            NotFoundError: If the container has no config
            ConfigParseError: If the file cannot be parsed
        """
        path = self.config_file(vmid)
        try:
            raw = path.read_text()
        except FileNotFoundError:
            raise NotFoundError(f"container {vmid} does not exist", vmid=vmid, operation="load")

        conf = self.codec.parse(raw, vmid)
        logger.debug(f"Loaded config for CT {vmid} (digest {conf.digest})")
        return conf

    def write(self, vmid: int, conf: Config):
        """Serialize and atomically replace the container config."""
        raw = self.codec.serialize(conf)
        path = self.config_file(vmid)

        if not path.parent.is_dir():
            raise NotFoundError(f"container {vmid} does not exist", vmid=vmid, operation="write")

        fd, temp_name = tempfile.mkstemp(prefix=".config.", dir=path.parent)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(raw)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_name, path)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

        logger.debug(f"Wrote config for CT {vmid}")

    def create(self, vmid: int, conf: Config):
        """Create the storage location of a new container and write its config.

        Raises:
            DuplicateNameError: If the container directory already exists
        """
        root = Path(self.settings.config_root)
        root.mkdir(parents=True, exist_ok=True)

        try:
            self.settings.container_dir(vmid).mkdir()
        except FileExistsError:
            raise DuplicateNameError(
                f"unable to create container configuration directory - container {vmid} already exists",
                vmid=vmid, operation="create",
            )

        self.write(vmid, conf)
        logger.info(f"Created config for CT {vmid}")

    def destroy(self, vmid: int):
        """Remove all persisted state of a container."""
        container_dir = self.settings.container_dir(vmid)
        if container_dir.exists():
            shutil.rmtree(container_dir)
        logger.info(f"Destroyed config for CT {vmid}")

    def write_temp_config(self, vmid: int, conf: Config) -> str:
        """Write a serialized copy to a private temp file and return its path."""
        raw = self.codec.serialize(conf)
        fd, filename = tempfile.mkstemp(prefix=f"temp-lxc-conf-{vmid}-", suffix=".conf")
        with os.fdopen(fd, 'w') as f:
            f.write(raw)
        return filename
