"""User-facing option view of a container config and option updates.

The persisted config speaks in lxc/pve keys (bytes, cfs quota and period,
``lxc.network.*`` records). Users speak in options: ``memory`` and ``swap`` in
MiB, ``cpulimit`` as a number of CPUs, ``net0`` as a comma separated string.
"""
import ipaddress
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ctconf.config.keys import (
    LXC_NETWORK_KEYS,
    PVE_NETWORK_KEYS,
    VALID_KEYS,
    format_value,
    parse_value,
    verify_nameserver_list,
    verify_searchdomain_list,
    verify_startup_order,
)
from ctconf.config.store import ConfigStore
from ctconf.core.config import CtconfConfig
from ctconf.core.errors import InvalidValueError, UnsupportedError
from ctconf.core.logger import get_logger
from ctconf.core.reconciler import NetworkReconciler
from ctconf.models.container import Config, NetworkInterface
from ctconf.services.lxc.cgroup import CPU_SHARES_DEFAULT, CGroup, CGroupEnvironment
from ctconf.services.lxc.runtime import LxcRuntime

logger = get_logger(__name__)

MIB = 1024 * 1024
CFS_PERIOD_US = 100000
MAX_NETWORKS = 10

# sub-keys of the net<N> option string, in output order after name
NETWORK_OPTION_KEYS = ('hwaddr', 'mtu', 'bridge', 'ip', 'gw', 'ip6', 'gw6', 'firewall', 'tag')
NETWORK_OPTION_SPECS = {
    'name': LXC_NETWORK_KEYS['name'],
    'hwaddr': LXC_NETWORK_KEYS['hwaddr'],
    'mtu': LXC_NETWORK_KEYS['mtu'],
    'bridge': PVE_NETWORK_KEYS['bridge'],
    'tag': PVE_NETWORK_KEYS['tag'],
    'firewall': PVE_NETWORK_KEYS['firewall'],
    'ip': PVE_NETWORK_KEYS['ip'],
    'gw': PVE_NETWORK_KEYS['gw'],
    'ip6': PVE_NETWORK_KEYS['ip6'],
    'gw6': PVE_NETWORK_KEYS['gw6'],
}

# options that only take effect on the next container start
COLD_OPTIONS = ('nameserver', 'searchdomain', 'disk')


def format_network_option(net: NetworkInterface) -> str:
    """Render an interface as ``name=eth0,hwaddr=..,bridge=..``.

    Raises:
        InvalidValueError: If the interface has no name
    """
    if not net.name:
        raise InvalidValueError("no network name defined", key="name")

    parts = [f"name={net.name}"]
    for key in NETWORK_OPTION_KEYS:
        value = getattr(net, key)
        if value is None:
            continue
        parts.append(f"{key}={format_value(NETWORK_OPTION_SPECS[key], value)}")
    return ','.join(parts)


def parse_network_option(data: str) -> NetworkInterface:
    """Parse a ``net<N>`` option string.

    Raises:
        InvalidValueError: On unknown sub-keys or invalid values
    """
    values: Dict[str, Any] = {}
    for part in data.split(','):
        key, sep, value = part.partition('=')
        spec = NETWORK_OPTION_SPECS.get(key)
        if not sep or spec is None or not value or any(c.isspace() for c in value):
            raise InvalidValueError(f"unable to parse network option '{part}'", key=key, value=data)
        values[spec.attr] = parse_value(spec, value, key=key)

    return NetworkInterface(type="veth", **values)


def network_slot(option: str) -> Optional[int]:
    """Slot number of a ``net<N>`` option name, or None."""
    if option.startswith('net') and option[3:].isdigit():
        slot = int(option[3:])
        if slot < MAX_NETWORKS:
            return slot
    return None


def to_options(conf: Config) -> Dict[str, Any]:
    """Derive the user-facing option view of a config."""
    options: Dict[str, Any] = {}

    if conf.description:
        options['description'] = conf.description
    if conf.onboot:
        options['onboot'] = conf.onboot
    if conf.startup:
        options['startup'] = conf.startup
    if conf.utsname:
        options['hostname'] = conf.utsname
    if conf.nameserver:
        options['nameserver'] = conf.nameserver
    if conf.searchdomain:
        options['searchdomain'] = conf.searchdomain
    if conf.memory_limit:
        options['memory'] = conf.memory_limit // MIB
    if conf.memsw_limit:
        options['swap'] = (conf.memsw_limit - (conf.memory_limit or 0)) // MIB

    if conf.cpu_cfs_period_us and conf.cpu_cfs_quota_us:
        options['cpulimit'] = conf.cpu_cfs_quota_us / conf.cpu_cfs_period_us
    else:
        options['cpulimit'] = 0
    options['cpuunits'] = conf.cpu_shares or CPU_SHARES_DEFAULT
    options['disk'] = conf.disksize if conf.disksize is not None else 0

    for slot in sorted(conf.net):
        options[f"net{slot}"] = format_network_option(conf.net[slot])

    if conf.parent:
        options['parent'] = conf.parent
    options['digest'] = conf.digest
    return options


def parse_ipv4_cidr(cidr: str, noerr: bool = False) -> Optional[Dict[str, str]]:
    """Split ``a.b.c.d/N`` into address and dotted netmask (N in 8..31).

    Host bits may be set, the address is not required to be a network address.
    """
    address, sep, prefix = cidr.partition('/')
    try:
        if sep and prefix.isdigit() and 7 < int(prefix) < 32:
            ipaddress.IPv4Address(address)
            netmask = ipaddress.IPv4Network(f"0.0.0.0/{prefix}").netmask
            return {'address': address, 'netmask': str(netmask)}
    except ValueError:
        pass

    if noerr:
        return None
    raise InvalidValueError("unable to parse ipv4 address/mask", value=cidr)


def get_primary_ips(conf: Config) -> Tuple[Optional[str], Optional[str]]:
    """IPv4 and IPv6 address of net0, without prefix length."""
    net = conf.net.get(0)
    if net is None:
        return None, None
    ipv4 = net.ip.split('/')[0] if net.ip else None
    ipv6 = net.ip6.split('/')[0] if net.ip6 else None
    return ipv4, ipv6


def _int_option(name: str, value: Any, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidValueError(f"option '{name}' must be an integer", key=name, value=str(value))
    if number < minimum:
        raise InvalidValueError(f"option '{name}' must be >= {minimum}", key=name, value=str(value))
    return number


def _verified(name: str, verify, value: Any) -> str:
    result = verify(str(value))
    if result is None:
        raise InvalidValueError(f"invalid value for option '{name}'", key=name, value=str(value))
    return result


class OptionUpdater:
    """Apply option changes to a container, hot-plugging what a running container allows."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        runtime: Optional[LxcRuntime] = None,
        reconciler: Optional[NetworkReconciler] = None,
        cgroup_env: Optional[CGroupEnvironment] = None,
        settings: Optional[CtconfConfig] = None,
        mock: bool = False,
    ):
        self.store = store or ConfigStore(settings)
        self.runtime = runtime or LxcRuntime(mock=mock, timeout=self.store.settings.command_timeout)
        self.reconciler = reconciler or NetworkReconciler(self.store, runtime=self.runtime, mock=mock)
        self.cgroup_env = cgroup_env

    def update(self, vmid: int, params: Optional[Dict[str, Any]] = None,
               delete: Optional[Iterable[str]] = None) -> Config:
        """Set and delete options of a container.

        Args:
            vmid: Container ID
            params: Option name -> new value
            delete: Option names to remove

        Returns:
            The persisted config after the update

        Raises:
            InvalidValueError: On unknown options, invalid values or deleting
                a required option
            UnsupportedError: If cold options were changed on a running
                container (hot-pluggable changes are persisted first)
        """
        params = dict(params or {})
        delete = list(delete or [])

        for opt in delete:
            if opt in params:
                raise InvalidValueError(f"option '{opt}' is both set and deleted", key=opt)
            if opt in ('hostname', 'memory'):
                raise InvalidValueError(f"unable to delete required option '{opt}'", key=opt)

        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            running = self.runtime.is_running(vmid)
            cgroup = CGroup(vmid, self.runtime, self.cgroup_env) if running else None
            nohotplug: List[str] = []

            for opt in delete:
                conf = self._delete_option(vmid, conf, opt, running, cgroup, nohotplug)

            if 'memory' in params or 'swap' in params:
                self._set_memory(conf, params, cgroup)

            for opt, value in params.items():
                if opt in ('memory', 'swap'):
                    continue
                conf = self._set_option(vmid, conf, opt, value, running, cgroup, nohotplug)

            self.store.write(vmid, conf)

            if running and nohotplug:
                raise UnsupportedError(
                    f"unable to modify {','.join(nohotplug)} while container is running",
                    vmid=vmid, operation="update",
                )
        return conf

    def _network_change(self, vmid: int, conf: Config, action, *args) -> Config:
        # the reconciler loads and writes the config itself
        self.store.write(vmid, conf)
        action(vmid, *args)
        return self.store.load(vmid)

    def _delete_option(self, vmid, conf, opt, running, cgroup, nohotplug) -> Config:
        slot = network_slot(opt)
        if slot is not None:
            return self._network_change(vmid, conf, self.reconciler.remove, slot)

        if opt == 'swap':
            if running:
                nohotplug.append(opt)
            else:
                conf.memsw_limit = None
        elif opt == 'description':
            conf.description = None
        elif opt == 'onboot':
            conf.onboot = None
        elif opt == 'startup':
            conf.startup = None
        elif opt in ('nameserver', 'searchdomain'):
            if running:
                nohotplug.append(opt)
            else:
                setattr(conf, opt, None)
        elif opt == 'cpulimit':
            conf.cpu_cfs_period_us = None
            conf.cpu_cfs_quota_us = None
            if cgroup:
                cgroup.change_cpu_quota(None, None)
        elif opt == 'cpuunits':
            conf.cpu_shares = None
            if cgroup:
                cgroup.change_cpu_shares(None)
        else:
            raise InvalidValueError(f"unable to delete option '{opt}'", key=opt)
        return conf

    def _set_memory(self, conf: Config, params: Dict[str, Any], cgroup: Optional[CGroup]):
        old_mem = conf.memory_limit
        old_swap = conf.memsw_limit - (old_mem or 0) if conf.memsw_limit is not None else None

        mem_bytes = _int_option('memory', params['memory'], 16) * MIB if 'memory' in params else old_mem
        swap_bytes = _int_option('swap', params['swap']) * MIB if 'swap' in params else old_swap

        conf.memory_limit = mem_bytes
        if swap_bytes is not None:
            conf.memsw_limit = (mem_bytes or 0) + swap_bytes

        if cgroup:
            cgroup.change_memory_limit(mem_bytes, swap_bytes)

    def _set_option(self, vmid, conf, opt, value, running, cgroup, nohotplug) -> Config:
        slot = network_slot(opt)
        if slot is not None:
            net = parse_network_option(str(value))
            return self._network_change(vmid, conf, self.reconciler.apply, slot, net)

        if opt in COLD_OPTIONS and running:
            nohotplug.append(opt)
            return conf

        if opt == 'hostname':
            hostname = str(value)
            if not hostname or any(c.isspace() for c in hostname):
                raise InvalidValueError(f"invalid hostname '{hostname}'", key=opt, value=hostname)
            conf.utsname = hostname
        elif opt == 'onboot':
            conf.onboot = value in (True, 1, '1')
        elif opt == 'startup':
            conf.startup = _verified(opt, verify_startup_order, value)
        elif opt == 'nameserver':
            conf.nameserver = _verified(opt, verify_nameserver_list, value)
        elif opt == 'searchdomain':
            conf.searchdomain = _verified(opt, verify_searchdomain_list, value)
        elif opt == 'cpulimit':
            try:
                cpus = float(value)
            except (TypeError, ValueError):
                raise InvalidValueError("option 'cpulimit' must be a number", key=opt, value=str(value))
            if cpus > 0:
                conf.cpu_cfs_period_us = CFS_PERIOD_US
                conf.cpu_cfs_quota_us = int(CFS_PERIOD_US * cpus)
            else:
                conf.cpu_cfs_period_us = None
                conf.cpu_cfs_quota_us = None
            if cgroup:
                cgroup.change_cpu_quota(conf.cpu_cfs_quota_us, conf.cpu_cfs_period_us)
        elif opt == 'cpuunits':
            conf.cpu_shares = _int_option(opt, value)
            if cgroup:
                cgroup.change_cpu_shares(conf.cpu_shares)
        elif opt == 'description':
            conf.description = str(value) or None
        elif opt == 'disk':
            conf.disksize = parse_value(VALID_KEYS['pve.disksize'], str(value), key=opt)
        else:
            raise InvalidValueError(f"unknown option '{opt}'", key=opt)

        if running:
            self.store.write(vmid, conf)
        return conf
