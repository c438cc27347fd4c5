"""Network interface reconciliation for running containers.

Converges one network slot of a container towards a requested interface with
the least disruptive set of live changes:

- no current interface: hot-plug a new veth pair
- hardware address or guest name changed: replace the pair
- bridge, VLAN tag or firewall changed: re-plug the host end
- addresses and gateways: converge per address family, keeping the guest
  reachable if a step fails
"""
import copy
from typing import Optional

from jinja2 import TemplateError

from ctconf.config.codec import random_ether_addr
from ctconf.config.store import ConfigStore
from ctconf.core.config import CtconfConfig
from ctconf.core.errors import CtconfError, InconsistentError
from ctconf.core.logger import get_logger
from ctconf.models.container import Config, NetworkInterface
from ctconf.services.lxc.guest_setup import GuestNetworkSetup
from ctconf.services.lxc.network import HostNetwork
from ctconf.services.lxc.runtime import LxcRuntime

logger = get_logger(__name__)

# ip / ip6 values that are not addresses
NON_ADDRESS_MODES = ('dhcp', 'manual', 'auto')

IP_FAMILIES = (
    ('-4', 'ip', 'gw'),
    ('-6', 'ip6', 'gw6'),
)


def _normalize(value):
    if value is None or value is False or value == '':
        return None
    if isinstance(value, str):
        return value.lower()
    return value


def differs(a, b) -> bool:
    """Compare option values treating unset, empty and false as equal."""
    return _normalize(a) != _normalize(b)


def _is_address(value: Optional[str]) -> bool:
    return bool(value) and value not in NON_ADDRESS_MODES


class NetworkReconciler:
    """Apply network interface changes to a container."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        network: Optional[HostNetwork] = None,
        runtime: Optional[LxcRuntime] = None,
        guest_setup: Optional[GuestNetworkSetup] = None,
        settings: Optional[CtconfConfig] = None,
        mock: bool = False,
    ):
        self.store = store or ConfigStore(settings)
        timeout = self.store.settings.command_timeout
        self.network = network or HostNetwork(mock=mock, timeout=timeout)
        self.runtime = runtime or LxcRuntime(mock=mock, timeout=timeout)
        self.guest_setup = guest_setup or GuestNetworkSetup(mock=mock)

    def _prepare_target(self, vmid: int, slot: int, target: NetworkInterface,
                        current: Optional[NetworkInterface]) -> NetworkInterface:
        target = copy.deepcopy(target)
        target.type = "veth"
        target.veth_pair = f"veth{vmid}.{slot}"
        if not target.hwaddr:
            target.hwaddr = current.hwaddr if current and current.hwaddr else random_ether_addr()
        if not target.name:
            raise InconsistentError(f"network slot {slot} has no interface name", vmid=vmid, operation="network")
        return target

    def apply(self, vmid: int, slot: int, target: NetworkInterface):
        """Persist the interface, converging the live container if it runs."""
        with self.store.locked(vmid):
            if self.runtime.is_running(vmid):
                self.reconcile(vmid, slot, target)
                return

            conf = self.store.load(vmid)
            conf.net[slot] = self._prepare_target(vmid, slot, target, conf.net.get(slot))
            self.store.write(vmid, conf)

    def reconcile(self, vmid: int, slot: int, target: NetworkInterface):
        """Converge a network slot of a running container.

        Args:
            vmid: Container ID
            slot: Network slot (0-9)
            target: Requested interface; the host pair name is derived from the slot

        Raises:
            ExternalCommandError: If a hot-plug or re-plug step fails
        """
        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            current = conf.net.get(slot)
            target = self._prepare_target(vmid, slot, target, current)

            if current is None:
                self._hotplug(vmid, conf, slot, target)
            elif differs(current.hwaddr, target.hwaddr) or differs(current.name, target.name):
                self.network.veth_delete(current.veth_pair)
                del conf.net[slot]
                self.store.write(vmid, conf)
                self._hotplug(vmid, conf, slot, target)
            elif (differs(current.bridge, target.bridge) or differs(current.tag, target.tag)
                    or differs(current.firewall, target.firewall)):
                self._replug(vmid, conf, slot, target)

            current = conf.net[slot]
            if differs(current.mtu, target.mtu):
                current.mtu = target.mtu
                self.store.write(vmid, conf)

            self._update_ipconfig(vmid, conf, slot, target)

    def remove(self, vmid: int, slot: int):
        """Remove a network slot, unplugging it from a running container."""
        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            current = conf.net.get(slot)
            if current is None:
                logger.debug(f"CT {vmid}: no network in slot {slot}")
                return

            if self.runtime.is_running(vmid):
                self.network.veth_delete(current.veth_pair)
            del conf.net[slot]
            self.store.write(vmid, conf)
            logger.info(f"CT {vmid}: removed net{slot}")

    def _hotplug(self, vmid: int, conf: Config, slot: int, target: NetworkInterface):
        veth = target.veth_pair
        peer = target.peer_name

        self.network.veth_create(veth, peer, target.bridge, target.hwaddr, target.mtu)
        if target.bridge:
            self.network.tap_plug(veth, target.bridge, target.tag, target.firewall)

        self.runtime.device_add(vmid, peer, target.name)
        self.runtime.netns_ip(vmid, 'link', 'set', target.name, 'up')

        # addresses are applied by the ip convergence step
        conf.net[slot] = NetworkInterface(
            type=target.type,
            name=target.name,
            veth_pair=veth,
            hwaddr=target.hwaddr,
            mtu=target.mtu,
            bridge=target.bridge,
            tag=target.tag,
            firewall=target.firewall,
        )
        self.store.write(vmid, conf)
        logger.info(f"CT {vmid}: hot-plugged net{slot} ({target.name})")

    def _replug(self, vmid: int, conf: Config, slot: int, target: NetworkInterface):
        current = conf.net[slot]
        veth = current.veth_pair

        if current.bridge:
            self.network.tap_unplug(veth)
            current.bridge = None
            current.tag = None
            current.firewall = None
            self.store.write(vmid, conf)

        if target.bridge:
            self.network.tap_plug(veth, target.bridge, target.tag, target.firewall)
            current.bridge = target.bridge
            current.tag = target.tag
            current.firewall = target.firewall
            self.store.write(vmid, conf)
        logger.info(f"CT {vmid}: re-plugged net{slot} into {target.bridge}")

    def _update_ipconfig(self, vmid: int, conf: Config, slot: int, target: NetworkInterface):
        current = conf.net[slot]
        eth = current.name
        rootdir = None

        for family, ip_attr, gw_attr in IP_FAMILIES:
            old_ip, new_ip = getattr(current, ip_attr), getattr(target, ip_attr)
            old_gw, new_gw = getattr(current, gw_attr), getattr(target, gw_attr)
            change_ip = differs(old_ip, new_ip)
            change_gw = differs(old_gw, new_gw)
            if not change_ip and not change_gw:
                continue

            # step 1: add the new address, give up on this family if that fails
            if change_ip and _is_address(new_ip):
                try:
                    self.runtime.netns_ip(vmid, family, 'addr', 'add', new_ip, 'dev', eth)
                except CtconfError as e:
                    logger.warning(f"CT {vmid}: unable to add {new_ip} to {eth}: {e}")
                    continue

            # step 2: replace the default route; on failure drop the new address again
            if change_gw:
                if new_gw:
                    try:
                        self.runtime.netns_ip(vmid, family, 'route', 'replace', 'default', 'via', new_gw)
                    except CtconfError as e:
                        logger.warning(f"CT {vmid}: unable to set gateway {new_gw}: {e}")
                        if change_ip and _is_address(new_ip):
                            try:
                                self.runtime.netns_ip(vmid, family, 'addr', 'del', new_ip, 'dev', eth)
                            except CtconfError as del_err:
                                logger.warning(f"CT {vmid}: unable to remove {new_ip} from {eth}: {del_err}")
                        continue
                else:
                    try:
                        self.runtime.netns_ip(vmid, family, 'route', 'del', 'default')
                    except CtconfError as e:
                        # the guest may have removed the route itself
                        logger.warning(f"CT {vmid}: unable to remove default route: {e}")

            # step 3: the change is live, persist it and clean up
            setattr(current, ip_attr, new_ip or None)
            setattr(current, gw_attr, new_gw or None)
            self.store.write(vmid, conf)

            if change_ip and _is_address(old_ip):
                try:
                    self.runtime.netns_ip(vmid, family, 'addr', 'del', old_ip, 'dev', eth)
                except CtconfError as e:
                    logger.warning(f"CT {vmid}: unable to remove old address {old_ip} from {eth}: {e}")

            if rootdir is None:
                rootdir = self._guest_rootdir(vmid)
            if rootdir:
                try:
                    self.guest_setup.setup_network(conf, rootdir)
                except (OSError, TemplateError) as e:
                    logger.warning(f"CT {vmid}: unable to update guest network files: {e}")

            logger.info(f"CT {vmid}: net{slot} {ip_attr}={new_ip} {gw_attr}={new_gw}")

    def _guest_rootdir(self, vmid: int) -> str:
        pid = self.runtime.get_pid(vmid)
        if pid is None:
            logger.warning(f"CT {vmid}: unable to find init process, guest network files not updated")
            return ""
        return f"/proc/{pid}/root"
