"""Runtime control channel: thin wrappers over the lxc-* tools."""
import re
from pathlib import Path
from typing import Dict, List, Optional

from ctconf.core.commands import run_command
from ctconf.core.errors import ExternalCommandError
from ctconf.core.logger import get_logger

logger = get_logger(__name__)

COMMAND_SOCKET_RE = re.compile(r'^[a-f0-9]+:\s\S+\s\S+\s\S+\s\S+\s\S+\s\d+\s(\S+)$')
ACTIVE_PATH_RE = re.compile(r'^@/etc/pve/lxc/(\d+)/command$')
PID_RE = re.compile(r'^PID:\s+(\d+)$')
DF_RE = re.compile(r'^(\S+.*)\s+(\d+)\s+(\d+)\s+(\d+)\s+\d+%\s.*$')

# cgroup v1 hierarchy names differ from the logical controller names
LEGACY_CONTROLLERS = {
    'io': 'blkio',
}


class LxcRuntime:
    """Start, stop, pause and query containers."""

    def __init__(self, mock: bool = False, timeout: int = 30, proc_root: str = "/proc"):
        self.mock = mock
        self.timeout = timeout
        self.proc_root = Path(proc_root)

    def list_active(self) -> Dict[int, bool]:
        """Running containers, found through their abstract command sockets."""
        active = {}
        try:
            lines = (self.proc_root / "net" / "unix").read_text().splitlines()
        except OSError:
            return active

        for line in lines:
            match = COMMAND_SOCKET_RE.match(line)
            if not match:
                continue
            path_match = ACTIVE_PATH_RE.match(match.group(1))
            if path_match:
                active[int(path_match.group(1))] = True
        return active

    def is_running(self, vmid: int) -> bool:
        return vmid in self.list_active()

    def get_pid(self, vmid: int) -> Optional[int]:
        """Init PID of a running container, or None when it is not running."""
        if self.mock:
            logger.info(f"MOCK: Would run lxc-info -n {vmid}")
            return None

        try:
            result = run_command(['lxc-info', '-n', vmid], timeout=self.timeout, vmid=vmid)
        except ExternalCommandError as e:
            logger.debug(f"lxc-info failed for CT {vmid}: {e}")
            return None

        for line in result.stdout.splitlines():
            match = PID_RE.match(line.strip())
            if match:
                return int(match.group(1))
        return None

    def get_cgroup_path(self, vmid: int, controller: Optional[str] = None) -> Optional[str]:
        """Cgroup path of the container init process for a controller.

        Args:
            vmid: Container ID
            controller: Controller name ('memory', 'cpu', 'io', 'cpuset');
                None selects the unified hierarchy

        Returns:
            Path relative to the cgroup mount, or None if the container is not running
        """
        pid = self.get_pid(vmid)
        if pid is None:
            return None

        try:
            lines = (self.proc_root / str(pid) / "cgroup").read_text().splitlines()
        except OSError:
            return None

        wanted = LEGACY_CONTROLLERS.get(controller, controller)
        unified_path = None
        for line in lines:
            parts = line.split(':', 2)
            if len(parts) != 3:
                continue
            hierarchy, controllers, path = parts
            if hierarchy == '0' and controllers == '':
                unified_path = path
            elif wanted and wanted in controllers.split(','):
                return path
        return unified_path

    def start(self, vmid: int):
        run_command(['lxc-start', '-n', vmid], timeout=self.timeout, mock=self.mock, vmid=vmid)
        logger.info(f"Started CT {vmid}")

    def stop(self, vmid: int, graceful: bool = True, timeout: Optional[int] = None):
        """Stop a container.

        A graceful stop asks the init process to shut down and waits up to
        ``timeout`` seconds; otherwise the container is killed.
        """
        cmd: List = ['lxc-stop', '-n', vmid]
        if graceful:
            if timeout is not None:
                cmd.extend(['--timeout', timeout])
        else:
            cmd.append('--kill')
        wait = (timeout or 0) + self.timeout
        run_command(cmd, timeout=wait, mock=self.mock, vmid=vmid)
        logger.info(f"Stopped CT {vmid}")

    def freeze(self, vmid: int):
        run_command(['lxc-freeze', '-n', vmid], timeout=self.timeout, mock=self.mock, vmid=vmid)

    def unfreeze(self, vmid: int):
        run_command(['lxc-unfreeze', '-n', vmid], timeout=self.timeout, mock=self.mock, vmid=vmid)

    def device_add(self, vmid: int, host_ifname: str, guest_ifname: str):
        """Move a host interface into the container under a new name."""
        run_command(
            ['lxc-device', '-n', vmid, 'add', host_ifname, guest_ifname],
            timeout=self.timeout, mock=self.mock, vmid=vmid,
        )

    def netns_ip(self, vmid: int, *args):
        """Run ``ip`` inside the container network namespace."""
        run_command(
            ['lxc-attach', '-n', vmid, '-s', 'NETWORK', '--', '/sbin/ip', *args],
            timeout=self.timeout, mock=self.mock, vmid=vmid,
        )

    def get_disk_usage(self, vmid: int) -> Dict[str, int]:
        """Root filesystem usage as reported by df inside the container."""
        usage = {'total': 0, 'used': 0, 'avail': 0}
        if self.mock:
            return usage

        try:
            result = run_command(['lxc-attach', '-n', vmid, '--', 'df', '-P', '-B', '1', '/'],
                                 timeout=1, vmid=vmid)
        except ExternalCommandError as e:
            logger.warning(f"Unable to read disk usage of CT {vmid}: {e}")
            return usage

        for line in result.stdout.splitlines():
            match = DF_RE.match(line)
            if match:
                usage = {
                    'total': int(match.group(2)),
                    'used': int(match.group(3)),
                    'avail': int(match.group(4)),
                }
        return usage
