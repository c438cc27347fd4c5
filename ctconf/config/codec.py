"""Parser and writer for the container config text format.

The file is a list of blank-line separated sections. The first section holds
the live config; every following section is a snapshot opened by a
``pve.snapname`` marker, its lines prefixed with ``snap.``. Network interfaces
are runs of ``lxc.network.*`` / ``pve.network.*`` lines, each run opened by a
``type`` line.
"""
import hashlib
import random
import re
from dataclasses import fields
from typing import Dict, List, Optional, Set

from ctconf.config.keys import (
    INCLUDE_KEY,
    LXC_NETWORK_KEYS,
    PVE_NETWORK_KEYS,
    SCOPE_LIVE,
    SCOPE_SNAPSHOT,
    SNAPCOMMENT_KEY,
    SNAPNAME_KEY,
    VALID_KEYS,
    KeySpec,
    format_value,
    lookup_key,
    parse_value,
)
from ctconf.core.errors import (
    DuplicateKeyError,
    InconsistentError,
    InvalidValueError,
    UnknownKeyError,
)
from ctconf.models.container import (
    HOST_PAIR_RE,
    Config,
    ContainerOptions,
    NetworkInterface,
    SnapshotConfig,
    SnapshotState,
)

SNAP_PREFIX = "snap."
MAX_NETWORKS = 10
EMPTY_NETWORK = "empty"

NETWORK_LINE_RE = re.compile(r'^(?:snap\.)?(lxc|pve)\.network\.(\S+?)\s*=\s*(\S+)\s*$')
NETWORK_PREFIX_RE = re.compile(r'^(?:snap\.)?(?:lxc|pve)\.network\.')
SNAPCOMMENT_RE = re.compile(r'^(?:snap\.)?pve\.snapcomment\s*=[ \t]?(.*?)\s*$')
OPTION_LINE_RE = re.compile(r'^(?:snap\.)?((?:pve|lxc)\.\S+?)\s*=\s*(\S.*?)\s*$')

NETWORK_NAMESPACES = {
    'lxc': LXC_NETWORK_KEYS,
    'pve': PVE_NETWORK_KEYS,
}
NETWORK_SPECS_BY_ATTR = {
    spec.attr: (namespace, spec)
    for namespace, specs in NETWORK_NAMESPACES.items()
    for spec in specs.values()
}


def random_ether_addr() -> str:
    """Generate a random unicast, locally administered MAC address."""
    octets = [random.randint(0, 255) for _ in range(6)]
    octets[0] = (octets[0] & 0xfe) | 0x02
    return ':'.join(f'{octet:02X}' for octet in octets)


def split_sections(raw: str) -> List[List[str]]:
    """Split raw text into sections of non-blank lines."""
    sections = [[]]
    for line in raw.splitlines():
        if not line.strip():
            sections.append([])
        else:
            sections[-1].append(line)
    return [section for section in sections if section]


class _SectionParser:
    """Parses one section into the live config or a snapshot entry."""

    def __init__(self, conf: Config, vmid: int, live_seen: Set[str]):
        self.conf = conf
        self.vmid = vmid
        self.target: ContainerOptions = conf
        self.snapname: Optional[str] = None
        self.seen = live_seen
        self.networks: List[Dict[str, object]] = []
        self.network: Optional[Dict[str, object]] = None

    def parse(self, lines: List[str]):
        for line in lines:
            if line.startswith('#') or not line.strip():
                continue

            if NETWORK_PREFIX_RE.match(line):
                self._parse_network_line(line)
                continue

            comment = SNAPCOMMENT_RE.match(line)
            if comment:
                self._merge_comment(comment.group(1))
                continue

            match = OPTION_LINE_RE.match(line)
            if not match:
                raise InvalidValueError(f"unable to parse config line: {line}", vmid=self.vmid)

            key, value = match.group(1), match.group(2)
            if key == SNAPNAME_KEY:
                self._open_snapshot(value)
            else:
                self._set_option(key, value)

        self._close_network()
        self._finish_networks()

    def _parse_network_line(self, line: str):
        match = NETWORK_LINE_RE.match(line)
        if not match:
            raise InvalidValueError(f"unable to parse config line: {line}", vmid=self.vmid)

        namespace, subkey, value = match.groups()
        full_key = f"{namespace}.network.{subkey}"
        spec = NETWORK_NAMESPACES[namespace].get(subkey)
        if spec is None:
            raise UnknownKeyError(f"invalid network key '{full_key}'", key=full_key, vmid=self.vmid)

        parsed = parse_value(spec, value, key=full_key)

        if spec.attr == 'type':
            self._close_network()
            self.network = {'type': parsed}
            return

        if self.network is None:
            raise InvalidValueError(
                f"network key '{full_key}' before 'lxc.network.type'", key=full_key, vmid=self.vmid
            )
        if spec.attr in self.network:
            raise DuplicateKeyError(
                f"multiple definitions for {full_key}", key=full_key, vmid=self.vmid
            )
        self.network[spec.attr] = parsed

    def _close_network(self):
        if self.network:
            self.networks.append(self.network)
        self.network = None

    def _merge_comment(self, text: str):
        if not self.snapname:
            return
        snap = self.target
        snap.comment = text if snap.comment is None else f"{snap.comment}\n{text}"

    def _open_snapshot(self, value: str):
        if self.snapname:
            raise InvalidValueError(
                f"configuration broken: second snapshot marker '{value}' in one section",
                key=SNAPNAME_KEY, value=value, vmid=self.vmid,
            )
        name = parse_value(VALID_KEYS[SNAPNAME_KEY], value)
        if name in self.conf.snapshots:
            raise DuplicateKeyError(
                f"multiple definitions for snapshot '{name}'", key=SNAPNAME_KEY, value=name, vmid=self.vmid
            )
        # keys before the marker in this section belong to the live config
        self._close_network()
        self._finish_networks()
        self.networks = []

        self.snapname = name
        self.target = SnapshotConfig(name=name)
        self.conf.snapshots[name] = self.target
        self.seen = set()

    def _set_option(self, key: str, value: str):
        try:
            spec = lookup_key(key)
        except UnknownKeyError as e:
            e.vmid = self.vmid
            raise

        if spec.scope == SCOPE_LIVE and self.snapname:
            raise InvalidValueError(f"option '{key}' is not allowed in a snapshot", key=key, vmid=self.vmid)
        if spec.scope == SCOPE_SNAPSHOT and not self.snapname:
            raise InvalidValueError(f"option '{key}' is only allowed in a snapshot", key=key, vmid=self.vmid)

        try:
            parsed = parse_value(spec, value)
        except InvalidValueError as e:
            e.vmid = self.vmid
            raise

        if spec.array:
            getattr(self.target, spec.attr).append(parsed)
            return

        if key in self.seen:
            raise DuplicateKeyError(f"multiple definitions for {key}", key=key, vmid=self.vmid)
        self.seen.add(key)
        setattr(self.target, spec.attr, parsed)

    def _finish_networks(self):
        """Assign host-pair names and hardware addresses, then store records by slot."""
        host_ifnames = set(net.veth_pair for net in self.target.net.values())

        for record in self.networks:
            pair = record.get('veth_pair')
            if not pair:
                continue
            match = HOST_PAIR_RE.match(pair)
            if not match:
                raise InvalidValueError(f"wrong network interface pair '{pair}'", vmid=self.vmid)
            if int(match.group(1)) != self.vmid:
                raise InvalidValueError(
                    f"wrong vmid for network interface pair '{pair}'", value=pair, vmid=self.vmid
                )
            if pair in host_ifnames:
                raise InvalidValueError(f"duplicate network interface pair '{pair}'", value=pair, vmid=self.vmid)
            host_ifnames.add(pair)

        for record in self.networks:
            if record['type'] == EMPTY_NETWORK:
                continue

            net = NetworkInterface(**record)
            if not net.veth_pair:
                net.veth_pair = self._next_host_ifname(host_ifnames)
            if not net.hwaddr:
                net.hwaddr = random_ether_addr()
            self.target.net[net.slot] = net

    def _next_host_ifname(self, host_ifnames: Set[str]) -> str:
        for i in range(MAX_NETWORKS):
            name = f"veth{self.vmid}.{i}"
            if name not in host_ifnames:
                host_ifnames.add(name)
                return name
        raise InvalidValueError("unable to find free host_ifname", vmid=self.vmid)


class ConfigCodec:
    """Converts between config text and Config objects."""

    def parse(self, raw: Optional[str], vmid: int) -> Optional[Config]:
        """Parse config text.

        Args:
            raw: File contents (None for a missing file)
            vmid: Container ID the file belongs to

        Returns:
            Parsed Config, or None when raw is None

        Raises:
            UnknownKeyError, DuplicateKeyError, InvalidValueError
        """
        if raw is None:
            return None

        conf = Config(digest=hashlib.sha1(raw.encode('utf-8')).hexdigest())
        live_seen: Set[str] = set()
        for section in split_sections(raw):
            _SectionParser(conf, vmid, live_seen).parse(section)
        return conf

    def serialize(self, conf: Optional[Config]) -> str:
        """Render a Config back into config text.

        Raises:
            InconsistentError: If the config carries a field the writer does not handle
        """
        if conf is None:
            return ""

        raw = self._write_section(conf, snapshot=False)

        ordered = sorted(
            conf.snapshots.items(),
            key=lambda item: (-(item[1].snaptime or 0), item[0]),
        )
        for name, snap in ordered:
            if snap.name != name:
                raise InconsistentError(f"snapshot entry '{name}' is named '{snap.name}'")
            raw += "\n" + self._write_section(snap, snapshot=True)

        return raw

    def _write_section(self, elem: ContainerOptions, snapshot: bool) -> str:
        prefix = SNAP_PREFIX if snapshot else ""
        field_names = [f.name for f in fields(elem)]
        done = {'digest', 'snapshots'}
        lines: List[str] = []

        def emit(key: str, value: str):
            if not value.strip():
                raise InvalidValueError(f"empty value for '{key}'", key=key)
            if '\n' in value:
                raise InvalidValueError(f"value for '{key}' contains a line break", key=key)
            lines.append(f"{prefix}{key} = {value}")

        def dump(spec: KeySpec):
            if spec.attr in done or spec.attr not in field_names:
                return
            done.add(spec.attr)
            value = getattr(elem, spec.attr)
            if value is None or value is SnapshotState.READY:
                return
            if spec.array:
                for item in value:
                    emit(spec.key, format_value(spec, item))
            elif spec.key == SNAPCOMMENT_KEY:
                for comment_line in value.split('\n'):
                    lines.append(f"{prefix}{spec.key} = {comment_line}".rstrip())
            else:
                emit(spec.key, format_value(spec, value))

        if snapshot:
            dump(VALID_KEYS[SNAPNAME_KEY])

        # Order is important: include defaults first so later keys override them
        dump(VALID_KEYS[INCLUDE_KEY])

        for key in sorted(VALID_KEYS):
            if key.startswith('pve.'):
                dump(VALID_KEYS[key])
        for key in sorted(VALID_KEYS):
            if key.startswith('lxc.'):
                dump(VALID_KEYS[key])

        done.add('net')
        for slot in sorted(elem.net):
            lines.extend(prefix + line for line in self._write_network(elem.net[slot], slot))
        if not elem.net:
            lines.append(f"{prefix}lxc.network.type = {EMPTY_NETWORK}")

        for name in field_names:
            if name not in done:
                raise InconsistentError(f'found un-written value "{name}" in config - implement this!')

        return "".join(line + "\n" for line in lines)

    def _write_network(self, net: NetworkInterface, slot: int) -> List[str]:
        if net.slot != slot:
            raise InconsistentError(f"network slot {slot} has host pair '{net.veth_pair}'")

        entries = []
        for f in fields(net):
            if f.name == 'type':
                continue
            if f.name not in NETWORK_SPECS_BY_ATTR:
                raise InconsistentError(f"found invalid network key '{f.name}'")
            value = getattr(net, f.name)
            if value is None:
                continue
            namespace, spec = NETWORK_SPECS_BY_ATTR[f.name]
            entries.append((spec.key, f"{namespace}.network.{spec.key} = {format_value(spec, value)}"))

        return [f"lxc.network.type = {net.type}"] + [line for _, line in sorted(entries)]


def parse_config(raw: Optional[str], vmid: int) -> Optional[Config]:
    return ConfigCodec().parse(raw, vmid)


def write_config(conf: Optional[Config]) -> str:
    return ConfigCodec().serialize(conf)
