"""Closed key vocabulary of the container config format.

Each accepted key maps to a KeySpec naming the Config attribute it fills and
one of three validator kinds:

- Accept: value taken verbatim
- Pattern: value must fully match a regular expression
- Custom: a callable returns the parsed value, or None when invalid
"""
import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import quote, unquote

from ctconf.core.errors import InvalidValueError, UnknownKeyError
from ctconf.models.container import LockToken, SnapshotState

# Where a key may appear
SCOPE_ANY = "any"
SCOPE_LIVE = "live"
SCOPE_SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class Accept:
    pass


@dataclass(frozen=True)
class Pattern:
    regex: str
    convert: Optional[Callable[[str], Any]] = None


@dataclass(frozen=True)
class Custom:
    parse: Callable[[str], Any]


Validator = Union[Accept, Pattern, Custom]

ACCEPT = Accept()


@dataclass(frozen=True)
class KeySpec:
    key: str
    attr: str
    validator: Validator = ACCEPT
    array: bool = False
    scope: str = SCOPE_ANY
    format: Optional[Callable[[Any], str]] = None


def parse_size(value: str) -> Optional[int]:
    """Parse a size literal with optional b/k/m/g suffix into bytes."""
    match = re.match(r'^(\d+)([bkmg])?$', value, re.IGNORECASE)
    if not match:
        return None
    number = int(match.group(1))
    unit = (match.group(2) or 'b').lower()
    return number * {'b': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3}[unit]


def split_list(value: str):
    """Split a comma, semicolon or whitespace separated list."""
    return [item for item in re.split(r'[\s,;]+', value.replace('\0', ' ')) if item]


def verify_nameserver_list(value: str) -> Optional[str]:
    """Verify a nameserver list and normalize it to single-space separation."""
    servers = []
    for server in split_list(value):
        try:
            ipaddress.ip_address(server)
        except ValueError:
            return None
        servers.append(server)
    return ' '.join(servers) if servers else None


def verify_searchdomain_list(value: str) -> Optional[str]:
    domains = split_list(value)
    return ' '.join(domains) if domains else None


def verify_startup_order(value: str) -> Optional[str]:
    """Verify a startup order string like ``order=1,up=30,down=60``."""
    seen = set()
    for part in value.split(','):
        match = re.match(r'^(order|up|down)=(\d+)$', part)
        if not match or match.group(1) in seen:
            return None
        seen.add(match.group(1))
    return value


def verify_volume_id(value: str) -> Optional[str]:
    """Verify a storage volume id of the form ``<storage>:<volname>``."""
    if re.match(r'^([a-z][a-z0-9\-_.]*[a-z0-9]):(.+)$', value, re.IGNORECASE):
        return value
    return None


def _enum_parser(enum_cls):
    def parse(value: str):
        try:
            return enum_cls(value)
        except ValueError:
            return None
    return parse


def encode_text(text: str) -> str:
    """Encode free text so it fits on a single config line.

    Leading and trailing spaces are encoded too; the reader strips them.
    """
    body = text.strip(' ')
    if not body:
        return '%20' * len(text)
    head = len(text) - len(text.lstrip(' '))
    tail = len(text) - len(text.rstrip(' '))
    return '%20' * head + quote(body, safe=' !"#$&\'()*+,-./:;<=>?@[\\]^_`{|}~') + '%20' * tail


def decode_text(text: str) -> str:
    return unquote(text)


def _bool_from_flag(value: str) -> bool:
    return value == '1'


def _parse_snapshot_state(value: str):
    state = _enum_parser(SnapshotState)(value)
    # READY is the absence of the key, never an on-disk value
    return None if state is SnapshotState.READY else state


_KEYS = [
    KeySpec('lxc.arch', 'arch', Pattern(r'i386|x86|i686|x86_64|amd64')),
    KeySpec('lxc.include', 'include', array=True),
    KeySpec('lxc.rootfs', 'rootfs'),
    KeySpec('lxc.mount', 'mount', array=True),
    KeySpec('lxc.utsname', 'utsname'),
    KeySpec('lxc.id_map', 'id_map', array=True),

    KeySpec('lxc.cgroup.memory.limit_in_bytes', 'memory_limit', Custom(parse_size)),
    KeySpec('lxc.cgroup.memory.memsw.limit_in_bytes', 'memsw_limit', Custom(parse_size)),
    KeySpec('lxc.cgroup.cpu.cfs_period_us', 'cpu_cfs_period_us', Pattern(r'\d+', int)),
    KeySpec('lxc.cgroup.cpu.cfs_quota_us', 'cpu_cfs_quota_us', Pattern(r'\d+', int)),
    KeySpec('lxc.cgroup.cpu.shares', 'cpu_shares', Pattern(r'\d+', int)),

    KeySpec('lxc.mount.entry', 'mount_entry', array=True),
    KeySpec('lxc.mount.auto', 'mount_auto'),

    # not used by pve, passed through to lxc
    KeySpec('lxc.tty', 'tty', Pattern(r'\d+', int)),
    KeySpec('lxc.pts', 'pts'),
    KeySpec('lxc.haltsignal', 'haltsignal'),
    KeySpec('lxc.rebootsignal', 'rebootsignal'),
    KeySpec('lxc.stopsignal', 'stopsignal'),
    KeySpec('lxc.init_cmd', 'init_cmd'),
    KeySpec('lxc.console', 'console'),
    KeySpec('lxc.console.logfile', 'console_logfile'),
    KeySpec('lxc.devttydir', 'devttydir'),
    KeySpec('lxc.autodev', 'autodev'),
    KeySpec('lxc.kmsg', 'kmsg'),
    KeySpec('lxc.cap.drop', 'cap_drop'),
    KeySpec('lxc.cap.keep', 'cap_keep'),
    KeySpec('lxc.aa_profile', 'aa_profile'),
    KeySpec('lxc.aa_allow_incomplete', 'aa_allow_incomplete'),
    KeySpec('lxc.se_context', 'se_context'),
    KeySpec('lxc.loglevel', 'loglevel'),
    KeySpec('lxc.logfile', 'logfile'),
    KeySpec('lxc.environment', 'environment', array=True),
    KeySpec('lxc.cgroup.devices.deny', 'cgroup_devices_deny', array=True),

    # autostart
    KeySpec('lxc.start.auto', 'start_auto'),
    KeySpec('lxc.start.delay', 'start_delay'),
    KeySpec('lxc.start.order', 'start_order'),
    KeySpec('lxc.group', 'group'),

    # hooks
    KeySpec('lxc.hook.pre-start', 'hook_pre_start'),
    KeySpec('lxc.hook.pre-mount', 'hook_pre_mount'),
    KeySpec('lxc.hook.mount', 'hook_mount'),
    KeySpec('lxc.hook.autodev', 'hook_autodev'),
    KeySpec('lxc.hook.start', 'hook_start'),
    KeySpec('lxc.hook.post-stop', 'hook_post_stop'),
    KeySpec('lxc.hook.clone', 'hook_clone'),

    KeySpec('pve.nameserver', 'nameserver', Custom(verify_nameserver_list)),
    KeySpec('pve.searchdomain', 'searchdomain', Custom(verify_searchdomain_list)),
    KeySpec('pve.onboot', 'onboot', Pattern(r'0|1', _bool_from_flag)),
    KeySpec('pve.startup', 'startup', Custom(verify_startup_order)),
    KeySpec('pve.comment', 'description', Custom(decode_text), scope=SCOPE_LIVE, format=encode_text),
    KeySpec('pve.disksize', 'disksize', Pattern(r'\d+(\.\d+)?')),
    KeySpec('pve.volid', 'volid', Custom(verify_volume_id)),

    # snapshot bookkeeping
    KeySpec('pve.lock', 'lock', Custom(_enum_parser(LockToken)), scope=SCOPE_LIVE),
    KeySpec('pve.parent', 'parent', Pattern(r'\w+')),
    KeySpec('pve.snaptime', 'snaptime', Pattern(r'\d+', int), scope=SCOPE_SNAPSHOT),
    KeySpec('pve.snapstate', 'state', Custom(_parse_snapshot_state), scope=SCOPE_SNAPSHOT),
    KeySpec('pve.snapcomment', 'comment', scope=SCOPE_SNAPSHOT),
    KeySpec('pve.snapname', 'name', Pattern(r'\w+'), scope=SCOPE_SNAPSHOT),
]

VALID_KEYS: Dict[str, KeySpec] = {spec.key: spec for spec in _KEYS}
KEYS_BY_ATTR: Dict[str, KeySpec] = {spec.attr: spec for spec in _KEYS}

INCLUDE_KEY = 'lxc.include'
SNAPNAME_KEY = 'pve.snapname'
SNAPCOMMENT_KEY = 'pve.snapcomment'

# network record sub-keys, lxc.network.<subkey> and pve.network.<subkey>
LXC_NETWORK_KEYS: Dict[str, KeySpec] = {spec.key: spec for spec in [
    KeySpec('type', 'type', Pattern(r'veth|empty')),
    KeySpec('mtu', 'mtu', Pattern(r'\d+', int)),
    KeySpec('name', 'name', Pattern(r'[^\s/:,]{1,15}')),
    KeySpec('veth.pair', 'veth_pair', Pattern(r'veth\d+\.\d')),
    KeySpec('hwaddr', 'hwaddr', Pattern(r'(?:[0-9a-fA-F]{2}:){5}[0-9a-fA-F]{2}')),
]}

PVE_NETWORK_KEYS: Dict[str, KeySpec] = {spec.key: spec for spec in [
    KeySpec('bridge', 'bridge', Pattern(r'[\w.\-]+')),
    KeySpec('tag', 'tag', Pattern(r'\d+', int)),
    KeySpec('firewall', 'firewall', Pattern(r'0|1', _bool_from_flag)),
    KeySpec('ip', 'ip'),
    KeySpec('gw', 'gw'),
    KeySpec('ip6', 'ip6'),
    KeySpec('gw6', 'gw6'),
]}


def lookup_key(name: str) -> KeySpec:
    spec = VALID_KEYS.get(name)
    if spec is None:
        raise UnknownKeyError(f"invalid key '{name}'", key=name)
    return spec


def parse_value(spec: KeySpec, value: str, key: Optional[str] = None) -> Any:
    """Validate ``value`` against the validator of ``spec``.

    Raises:
        InvalidValueError: If the value does not pass validation
    """
    key = key or spec.key
    validator = spec.validator

    if isinstance(validator, Accept):
        return value

    if isinstance(validator, Pattern):
        if re.fullmatch(validator.regex, value):
            return validator.convert(value) if validator.convert else value
    elif isinstance(validator, Custom):
        try:
            result = validator.parse(value)
        except ValueError:
            result = None
        if result is not None:
            return result
    else:
        raise TypeError(f"unknown validator for '{key}': {validator!r}")

    raise InvalidValueError(
        f"unable to parse value '{value}' for option '{key}'", key=key, value=value
    )


def format_value(spec: KeySpec, value: Any) -> str:
    """Render a parsed value back to its on-disk form."""
    if spec.format:
        return spec.format(value)
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, Enum):
        return value.value
    return str(value)
