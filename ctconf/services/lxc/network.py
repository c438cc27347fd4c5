"""Host side of container networking: veth pairs, bridges, VLANs."""
from typing import List, Optional

from ctconf.core.commands import run_command
from ctconf.core.errors import ExternalCommandError
from ctconf.core.logger import get_logger
from ctconf.models.container import HOST_PAIR_RE

logger = get_logger(__name__)


def firewall_names(iface: str):
    """Names of the firewall bridge and its uplink pair for a host interface.

    ``veth100.0`` gives ``fwbr100i0``, ``fwpr100p0`` and ``fwln100i0``.
    """
    match = HOST_PAIR_RE.match(iface)
    if not match:
        raise ValueError(f"unable to parse host interface name '{iface}'")
    vmid, slot = match.groups()
    return f"fwbr{vmid}i{slot}", f"fwpr{vmid}p{slot}", f"fwln{vmid}i{slot}"


class HostNetwork:
    """Runs ip/bridge commands in the host namespace."""

    def __init__(self, mock: bool = False, timeout: int = 30):
        self.mock = mock
        self.timeout = timeout

    def _ip(self, args: List):
        run_command(["ip"] + list(args), timeout=self.timeout, mock=self.mock)

    def _bridge(self, args: List):
        run_command(["bridge"] + list(args), timeout=self.timeout, mock=self.mock)

    def veth_create(self, veth: str, peer: str, bridge: Optional[str] = None,
                    hwaddr: Optional[str] = None, mtu: Optional[int] = None):
        """Create a veth pair; the peer gets the guest hardware address."""
        cmd = ["link", "add", veth, "type", "veth", "peer", "name", peer]
        if hwaddr:
            cmd.extend(["addr", hwaddr])
        self._ip(cmd)

        if mtu:
            self._ip(["link", "set", veth, "mtu", mtu])
            self._ip(["link", "set", peer, "mtu", mtu])
        self._ip(["link", "set", veth, "up"])
        logger.debug(f"Created veth pair {veth}/{peer} (bridge {bridge})")

    def veth_delete(self, veth: str):
        """Delete a veth pair; removing one end removes the peer."""
        self._ip(["link", "delete", veth])
        logger.debug(f"Deleted veth {veth}")

    def _add_vlan(self, port: str, tag: Optional[int]):
        if tag:
            self._bridge(["vlan", "add", "dev", port, "vid", tag, "pvid", "untagged"])

    def tap_plug(self, iface: str, bridge: str, tag: Optional[int] = None, firewall: bool = False):
        """Attach a host interface to a bridge.

        With firewall enabled the interface is placed on a private firewall
        bridge which is linked to the target bridge through a veth pair.
        """
        if not bridge:
            return

        port = iface
        if firewall:
            fwbr, fwpr, fwln = firewall_names(iface)
            self._ip(["link", "add", fwbr, "type", "bridge"])
            self._ip(["link", "set", fwbr, "up"])
            self._ip(["link", "add", fwpr, "type", "veth", "peer", "name", fwln])
            self._ip(["link", "set", fwln, "master", fwbr])
            self._ip(["link", "set", fwln, "up"])
            self._ip(["link", "set", fwpr, "up"])
            self._ip(["link", "set", iface, "master", fwbr])
            port = fwpr

        self._ip(["link", "set", port, "master", bridge])
        self._add_vlan(port, tag)
        logger.debug(f"Plugged {iface} into {bridge} (tag {tag}, firewall {bool(firewall)})")

    def tap_unplug(self, iface: str):
        """Detach a host interface from its bridge and drop any firewall bridge."""
        self._ip(["link", "set", iface, "nomaster"])

        fwbr, fwpr, _ = firewall_names(iface)
        for name in (fwpr, fwbr):
            try:
                self._ip(["link", "delete", name])
            except ExternalCommandError as e:
                logger.debug(f"No firewall link {name} to remove: {e}")
        logger.debug(f"Unplugged {iface}")
