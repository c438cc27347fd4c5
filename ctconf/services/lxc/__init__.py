"""LXC collaborators.

This package provides:
- LxcRuntime: start/stop/freeze and runtime queries through the lxc-* tools
- CGroup: per-container cgroup reads and writes (v1 and v2)
- HostNetwork: veth pairs and bridge ports on the host
- GuestNetworkSetup: guest network files rendered from the config
- StatusCollector: container status records
"""
from .cgroup import CGroup, CGroupEnvironment, CGroupMode, get_environment
from .guest_setup import GuestNetworkSetup
from .network import HostNetwork
from .runtime import LxcRuntime
from .status import ContainerStatus, StatusCollector

__all__ = [
    'CGroup',
    'CGroupEnvironment',
    'CGroupMode',
    'get_environment',
    'GuestNetworkSetup',
    'HostNetwork',
    'LxcRuntime',
    'ContainerStatus',
    'StatusCollector',
]
