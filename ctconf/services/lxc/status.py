"""Container status: persisted limits combined with live cgroup counters."""
import re
import shutil
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from ctconf.config.store import ConfigStore
from ctconf.core.logger import get_logger
from .cgroup import CGroup, CGroupEnvironment
from .runtime import LxcRuntime

logger = get_logger(__name__)

GIB = 1024 ** 3
# reported when no disk size is configured
UNLIMITED_DISK = 1024 ** 5

BLOCK_DEVICE_ROOTFS_RE = re.compile(r'^(?:loop|nbd):\S+$')


@dataclass
class ContainerStatus:
    vmid: int
    status: str = "stopped"
    name: str = ""
    cpus: int = 0
    maxmem: int = 0
    maxdisk: int = 0
    disk: int = 0
    mem: int = 0
    swap: int = 0
    diskread: int = 0
    diskwrite: int = 0
    utime: int = 0
    stime: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


class StatusCollector:
    """Build ContainerStatus records for containers on this node."""

    def __init__(self, store: Optional[ConfigStore] = None, runtime: Optional[LxcRuntime] = None,
                 cgroup_env: Optional[CGroupEnvironment] = None, mock: bool = False):
        self.store = store or ConfigStore()
        self.runtime = runtime or LxcRuntime(mock=mock, timeout=self.store.settings.command_timeout)
        self.cgroup_env = cgroup_env

    def status_all(self) -> List[ContainerStatus]:
        active = self.runtime.list_active()
        return [self._status(vmid, vmid in active) for vmid in self.store.config_list()]

    def status(self, vmid: int) -> ContainerStatus:
        """Status of one container.

        Raises:
            NotFoundError: If the container has no config
        """
        return self._status(vmid, self.runtime.is_running(vmid))

    def _status(self, vmid: int, running: bool) -> ContainerStatus:
        conf = self.store.load(vmid)
        result = ContainerStatus(vmid=vmid, status="running" if running else "stopped")

        result.name = re.sub(r'\s', '', conf.utsname or f"CT{vmid}")
        if conf.cpu_cfs_period_us and conf.cpu_cfs_quota_us:
            result.cpus = conf.cpu_cfs_quota_us // conf.cpu_cfs_period_us
        result.maxmem = conf.memory_limit or 0
        result.maxdisk = int(float(conf.disksize) * GIB) if conf.disksize is not None else UNLIMITED_DISK

        rootfs = conf.rootfs
        if rootfs and rootfs.startswith('/'):
            try:
                usage = shutil.disk_usage(rootfs)
                result.disk, result.maxdisk = usage.used, usage.total
            except OSError as e:
                logger.warning(f"CT {vmid}: unable to read disk usage of {rootfs}: {e}")
        elif rootfs and running and BLOCK_DEVICE_ROOTFS_RE.match(rootfs):
            usage = self.runtime.get_disk_usage(vmid)
            result.disk, result.maxdisk = usage['used'], usage['total']

        if not running:
            return result

        cgroup = CGroup(vmid, self.runtime, self.cgroup_env)
        memory = cgroup.get_memory_stat()
        io = cgroup.get_io_stats()
        cpu = cgroup.get_cpu_stat()
        result.mem, result.swap = memory['mem'], memory['swap']
        result.diskread, result.diskwrite = io['diskread'], io['diskwrite']
        result.utime, result.stime = cpu['utime'], cpu['stime']
        return result
