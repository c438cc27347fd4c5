"""Container configuration models."""
import copy
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, List, Optional

HOST_PAIR_RE = re.compile(r'^veth(\d+)\.(\d)$')


class LockToken(str, Enum):
    """On-disk marker of a long-running operation on a container."""
    SNAPSHOT = "snapshot"
    ROLLBACK = "rollback"
    DELETE = "delete"
    BACKUP = "backup"
    CREATE = "create"
    MIGRATE = "migrate"
    MOUNTED = "mounted"


class SnapshotState(str, Enum):
    """Snapshot lifecycle state; READY is never written to disk."""
    PREPARING = "prepare"
    READY = "ready"
    DELETING = "delete"


@dataclass
class NetworkInterface:
    """One virtual ethernet pair of a container."""
    type: str = "veth"
    name: Optional[str] = None       # ifname inside the container
    veth_pair: Optional[str] = None  # ifname on the host (veth<vmid>.<slot>)
    hwaddr: Optional[str] = None
    mtu: Optional[int] = None
    bridge: Optional[str] = None
    tag: Optional[int] = None
    firewall: Optional[bool] = None
    ip: Optional[str] = None
    gw: Optional[str] = None
    ip6: Optional[str] = None
    gw6: Optional[str] = None

    @property
    def slot(self) -> Optional[int]:
        """Network slot encoded in the host-pair name."""
        if self.veth_pair:
            match = HOST_PAIR_RE.match(self.veth_pair)
            if match:
                return int(match.group(2))
        return None

    @property
    def peer_name(self) -> Optional[str]:
        """Temporary host-side name of the guest end before it moves into the container."""
        return f"{self.veth_pair}p" if self.veth_pair else None


@dataclass
class ContainerOptions:
    """Options shared by the live config and its snapshots."""

    # lxc runtime keys
    arch: Optional[str] = None
    include: List[str] = field(default_factory=list)
    rootfs: Optional[str] = None
    mount: List[str] = field(default_factory=list)
    utsname: Optional[str] = None
    id_map: List[str] = field(default_factory=list)
    memory_limit: Optional[int] = None  # bytes
    memsw_limit: Optional[int] = None   # bytes, memory + swap
    cpu_cfs_period_us: Optional[int] = None
    cpu_cfs_quota_us: Optional[int] = None
    cpu_shares: Optional[int] = None
    mount_entry: List[str] = field(default_factory=list)
    mount_auto: Optional[str] = None
    tty: Optional[int] = None
    pts: Optional[str] = None
    haltsignal: Optional[str] = None
    rebootsignal: Optional[str] = None
    stopsignal: Optional[str] = None
    init_cmd: Optional[str] = None
    console: Optional[str] = None
    console_logfile: Optional[str] = None
    devttydir: Optional[str] = None
    autodev: Optional[str] = None
    kmsg: Optional[str] = None
    cap_drop: Optional[str] = None
    cap_keep: Optional[str] = None
    aa_profile: Optional[str] = None
    aa_allow_incomplete: Optional[str] = None
    se_context: Optional[str] = None
    loglevel: Optional[str] = None
    logfile: Optional[str] = None
    environment: List[str] = field(default_factory=list)
    cgroup_devices_deny: List[str] = field(default_factory=list)
    start_auto: Optional[str] = None
    start_delay: Optional[str] = None
    start_order: Optional[str] = None
    group: Optional[str] = None
    hook_pre_start: Optional[str] = None
    hook_pre_mount: Optional[str] = None
    hook_mount: Optional[str] = None
    hook_autodev: Optional[str] = None
    hook_start: Optional[str] = None
    hook_post_stop: Optional[str] = None
    hook_clone: Optional[str] = None

    # pve orchestration keys
    nameserver: Optional[str] = None
    searchdomain: Optional[str] = None
    onboot: Optional[bool] = None
    startup: Optional[str] = None
    disksize: Optional[str] = None  # GiB
    volid: Optional[str] = None
    parent: Optional[str] = None

    net: Dict[int, NetworkInterface] = field(default_factory=dict)


@dataclass
class SnapshotConfig(ContainerOptions):
    """Point-in-time copy of a container's options."""
    name: Optional[str] = None
    snaptime: Optional[int] = None
    comment: Optional[str] = None
    state: SnapshotState = SnapshotState.READY


@dataclass
class Config(ContainerOptions):
    """Persisted configuration of one container."""
    description: Optional[str] = None
    lock: Optional[LockToken] = None
    digest: Optional[str] = field(default=None, compare=False)
    snapshots: Dict[str, SnapshotConfig] = field(default_factory=dict)


SHARED_FIELDS = tuple(f.name for f in fields(ContainerOptions))


def copy_options(source: ContainerOptions, dest: ContainerOptions) -> None:
    """Deep-copy every shared option from ``source`` onto ``dest``."""
    for name in SHARED_FIELDS:
        setattr(dest, name, copy.deepcopy(getattr(source, name)))
