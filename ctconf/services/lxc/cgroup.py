"""Control-group access for running containers.

Handles both cgroup generations:

- LEGACY: v1 controllers mounted per subsystem (possibly alongside a v2 tree)
- UNIFIED: pure v2 hierarchy

Paths are resolved through the runtime once per controller and cached on the
CGroup instance. Reads on an unresolved path return zeros; writes fail.
"""
import os
from enum import IntEnum
from pathlib import Path
from typing import Dict, Optional

from ctconf.core.config import get_config
from ctconf.core.errors import CGroupModeError, InconsistentError, InvalidValueError
from ctconf.core.logger import get_logger

logger = get_logger(__name__)

CPU_WEIGHT_MIN = 1
CPU_WEIGHT_MAX = 10000
CPU_WEIGHT_DEFAULT = 100
CPU_SHARES_DEFAULT = 1024


class CGroupMode(IntEnum):
    LEGACY = 1
    UNIFIED = 2


def parse_flat_keyed(data: str) -> Dict[str, str]:
    """Parse ``key value`` lines."""
    result = {}
    for line in data.splitlines():
        parts = line.split(None, 1)
        if len(parts) == 2:
            result[parts[0]] = parts[1].strip()
        elif line.strip():
            logger.warning(f"bad 'key value' pair in flat keyed file: {line!r}")
    return result


def parse_nested_keyed(data: str) -> Dict[str, Dict[str, str]]:
    """Parse ``key sub1=a sub2=b`` lines."""
    result = {}
    for line in data.splitlines():
        parts = line.split()
        if not parts:
            continue
        entry = result.setdefault(parts[0], {})
        for pair in parts[1:]:
            name, sep, value = pair.partition('=')
            if sep:
                entry[name] = value
            else:
                logger.warning(f"bad key=value pair in nested keyed file: {pair!r}")
    return result


class CGroupEnvironment:
    """Host-wide cgroup facts, computed once on first use."""

    CPUSET_MARKERS = (
        ("cpuset", "cpuset.effective_cpus"),    # legacy cpuset cgroup
        ("", "cpuset.cpus.effective"),          # pure v2
        ("unified", "cpuset.cpus.effective"),   # hybrid, cpuset moved to v2
    )

    def __init__(self, cgroup_root: str = "/sys/fs/cgroup", proc_root: str = "/proc",
                 mode: Optional[CGroupMode] = None):
        self.cgroup_root = Path(cgroup_root)
        self.proc_root = Path(proc_root)
        self._mode = mode
        self._cpuset_path: Optional[Path] = None

    @property
    def mode(self) -> CGroupMode:
        """Detected cgroup generation.

        Raises:
            CGroupModeError: If neither generation can be found
        """
        if self._mode is None:
            self._mode = self._detect_mode()
            logger.debug(f"Detected cgroup mode: {self._mode.name}")
        return self._mode

    def _detect_mode(self) -> CGroupMode:
        v1_controllers = set()
        v2 = False
        try:
            lines = (self.proc_root / "self" / "cgroup").read_text().splitlines()
        except OSError:
            lines = []

        for line in lines:
            parts = line.split(':', 2)
            if len(parts) != 3:
                continue
            hierarchy, controllers, _ = parts
            if hierarchy == '0' and controllers == '':
                v2 = True
            else:
                v1_controllers.update(c for c in controllers.split(',') if c and not c.startswith('name='))

        if v1_controllers:
            return CGroupMode.LEGACY
        if v2 or (self.cgroup_root / "cgroup.controllers").is_file():
            return CGroupMode.UNIFIED
        raise CGroupModeError("unknown cgroup mode")

    @property
    def cpuset_controller_path(self) -> Path:
        if self._cpuset_path is None:
            for subdir, marker in self.CPUSET_MARKERS:
                base = self.cgroup_root / subdir if subdir else self.cgroup_root
                if (base / marker).is_file():
                    self._cpuset_path = base
                    break
            else:
                raise CGroupModeError("failed to find cpuset controller")
        return self._cpuset_path


_environment: Optional[CGroupEnvironment] = None


def get_environment() -> CGroupEnvironment:
    """Process-wide cgroup environment for the configured cgroup root."""
    global _environment
    if _environment is None:
        _environment = CGroupEnvironment(get_config().cgroup_root)
    return _environment


class CGroup:
    """Cgroup reads and writes for one container."""

    def __init__(self, vmid: int, runtime, environment: Optional[CGroupEnvironment] = None):
        self.vmid = vmid
        self.runtime = runtime
        self.environment = environment or get_environment()
        self._subdirs: Dict[Optional[str], str] = {}

    @property
    def mode(self) -> CGroupMode:
        return self.environment.mode

    def get_subdir(self, controller: Optional[str]) -> Optional[str]:
        """Cgroup directory of the container below the mount point, cached."""
        if controller in self._subdirs:
            return self._subdirs[controller]

        path = self.runtime.get_cgroup_path(self.vmid, controller)
        if not path:
            return None
        if '..' in path:
            raise InconsistentError(f"lxc returned suspicious path: '{path}'", vmid=self.vmid)

        path = path.lstrip('/')
        self._subdirs[controller] = path
        return path

    def get_path(self, controller: Optional[str] = None) -> Optional[Path]:
        """Absolute cgroup directory for a controller (None: the v2 tree)."""
        subdir = self.get_subdir(controller)
        if subdir is None:
            return None

        root = self.environment.cgroup_root
        if self.mode == CGroupMode.UNIFIED:
            return root / subdir
        if controller is None:
            return root / "unified" / subdir
        return root / controller / subdir

    def _read_value(self, path: Path) -> str:
        return path.read_text().strip()

    def _write_value(self, path: Path, value):
        logger.debug(f"CT {self.vmid}: writing {value} to {path}")
        with open(path, 'w') as f:
            f.write(str(value))

    def _require_path(self, controller: str, what: str) -> Path:
        path = self.get_path(controller)
        if path is None:
            raise InconsistentError(
                f"trying to change {what} cgroup values: container not running",
                vmid=self.vmid, operation="cgroup",
            )
        return path

    # Reads

    def get_io_stats(self) -> Dict[str, int]:
        """Bytes read from and written to block devices."""
        stats = {'diskread': 0, 'diskwrite': 0}

        if self.mode == CGroupMode.UNIFIED:
            path = self.get_path('io')
            if path is None:
                return stats
            for device in parse_nested_keyed(self._read_value(path / "io.stat")).values():
                stats['diskread'] += int(device.get('rbytes', 0))
                stats['diskwrite'] += int(device.get('wbytes', 0))
            return stats

        path = self.get_path('blkio')
        if path is None:
            return stats
        data = self._read_value(path / "blkio.throttle.io_service_bytes_recursive")
        for line in data.splitlines():
            parts = line.split()
            if len(parts) == 3 and parts[1] in ('Read', 'Write') and parts[2].isdigit():
                key = 'diskread' if parts[1] == 'Read' else 'diskwrite'
                stats[key] += int(parts[2])
        return stats

    def get_cpu_stat(self) -> Dict[str, int]:
        """User and system CPU time in milliseconds."""
        stats = {'utime': 0, 'stime': 0}

        if self.mode == CGroupMode.UNIFIED:
            path = self.get_path('cpu')
            if path is None:
                return stats
            try:
                data = parse_flat_keyed(self._read_value(path / "cpu.stat"))
            except FileNotFoundError:
                return stats
            stats['utime'] = int(data.get('user_usec', 0)) // 1000
            stats['stime'] = int(data.get('system_usec', 0)) // 1000
            return stats

        path = self.get_path('cpuacct')
        if path is None:
            return stats
        clk_to_msec = 1000 / os.sysconf('SC_CLK_TCK')
        data = parse_flat_keyed(self._read_value(path / "cpuacct.stat"))
        stats['utime'] = int(int(data.get('user', 0)) * clk_to_msec)
        stats['stime'] = int(int(data.get('system', 0)) * clk_to_msec)
        return stats

    def get_memory_stat(self) -> Dict[str, int]:
        """Memory and swap usage in bytes."""
        stats = {'mem': 0, 'swap': 0}

        path = self.get_path('memory')
        if path is None:
            return stats

        if self.mode == CGroupMode.UNIFIED:
            stats['mem'] = int(self._read_value(path / "memory.current"))
            try:
                stats['swap'] = int(self._read_value(path / "memory.swap.current"))
            except FileNotFoundError:
                # no swap accounting on this host
                pass
            return stats

        # v1 only exposes memory and memory+swap counters
        stat = parse_flat_keyed(self._read_value(path / "memory.stat"))
        mem = int(self._read_value(path / "memory.usage_in_bytes"))
        memsw = int(self._read_value(path / "memory.memsw.usage_in_bytes"))
        stats['mem'] = mem - int(stat.get('total_cache', 0))
        stats['swap'] = memsw - mem
        return stats

    # Writes

    def change_memory_limit(self, mem_bytes: Optional[int] = None, swap_bytes: Optional[int] = None):
        """Set memory and swap ceilings; None leaves a value unchanged.

        Raises:
            InconsistentError: If the container is not running
        """
        path = self._require_path('memory', 'memory')

        if self.mode == CGroupMode.UNIFIED:
            if swap_bytes is not None:
                self._write_value(path / "memory.swap.max", swap_bytes)
            if mem_bytes is not None:
                self._write_value(path / "memory.max", mem_bytes)
            return

        path_mem = path / "memory.limit_in_bytes"
        path_memsw = path / "memory.memsw.limit_in_bytes"
        old_mem_bytes = int(self._read_value(path_mem))
        old_memsw_bytes = int(self._read_value(path_memsw))

        if mem_bytes is None:
            mem_bytes = old_mem_bytes
        memsw_bytes = mem_bytes + swap_bytes if swap_bytes is not None else old_memsw_bytes

        # memsw may never be below mem
        if memsw_bytes > old_memsw_bytes:
            self._write_value(path_memsw, memsw_bytes)
            self._write_value(path_mem, mem_bytes)
        else:
            self._write_value(path_mem, mem_bytes)
            self._write_value(path_memsw, memsw_bytes)

    def change_cpu_quota(self, quota: Optional[int], period: Optional[int]):
        """Set the CPU bandwidth; a None quota means unlimited.

        Raises:
            InvalidValueError: If a quota is given without a period
            InconsistentError: If the container is not running
        """
        if quota is not None and period is None:
            raise InvalidValueError("quota without period not allowed", key="cpulimit", vmid=self.vmid)

        path = self._require_path('cpu', 'cpu quota')

        if self.mode == CGroupMode.UNIFIED:
            if period is None:
                self._write_value(path / "cpu.max", "max")
            else:
                self._write_value(path / "cpu.max", f"{'max' if quota is None else quota} {period}")
            return

        self._write_value(path / "cpu.cfs_period_us", -1 if period is None else period)
        self._write_value(path / "cpu.cfs_quota_us", -1 if quota is None else quota)

    def change_cpu_shares(self, shares: Optional[int], legacy_default: int = CPU_SHARES_DEFAULT):
        """Set CPU shares (v1) or weight (v2). Values are not rescaled.

        Raises:
            InvalidValueError: If a v2 weight is out of range
            InconsistentError: If the container is not running
        """
        path = self._require_path('cpu', 'cpu shares/weight')

        if self.mode == CGroupMode.UNIFIED:
            weight = CPU_WEIGHT_DEFAULT if shares is None else shares
            if not CPU_WEIGHT_MIN <= weight <= CPU_WEIGHT_MAX:
                raise InvalidValueError(
                    f"cpu weight (shares) must be in range [{CPU_WEIGHT_MIN}, {CPU_WEIGHT_MAX}]",
                    key="cpuunits", value=str(weight), vmid=self.vmid,
                )
            self._write_value(path / "cpu.weight", weight)
            return

        self._write_value(path / "cpu.shares", legacy_default if shares is None else shares)
