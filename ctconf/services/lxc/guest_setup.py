"""Rewrite guest-visible network files inside a container root filesystem."""
from pathlib import Path
from typing import Optional

from jinja2 import BaseLoader, Environment, TemplateError

from ctconf.core.logger import get_logger
from ctconf.models.container import Config

logger = get_logger(__name__)

INTERFACES_TEMPLATE = """\
# Generated by ctconf; changes to configured interfaces are overwritten.
auto lo
iface lo inet loopback
{% for net in interfaces %}

auto {{ net.name }}
{% if net.ip in ('dhcp', 'manual') %}
iface {{ net.name }} inet {{ net.ip }}
{% elif net.ip %}
iface {{ net.name }} inet static
    address {{ net.ip }}
{% if net.gw %}
    gateway {{ net.gw }}
{% endif %}
{% endif %}
{% if net.ip6 in ('dhcp', 'auto', 'manual') %}
iface {{ net.name }} inet6 {{ net.ip6 }}
{% elif net.ip6 %}
iface {{ net.name }} inet6 static
    address {{ net.ip6 }}
{% if net.gw6 %}
    gateway {{ net.gw6 }}
{% endif %}
{% endif %}
{% endfor %}
"""

RESOLV_TEMPLATE = """\
{% if searchdomain %}
search {{ searchdomain }}
{% endif %}
{% for server in nameservers %}
nameserver {{ server }}
{% endfor %}
"""


class GuestNetworkSetup:
    """Renders /etc/network/interfaces and /etc/resolv.conf for a container."""

    def __init__(self, mock: bool = False):
        self.mock = mock
        self.jinja_env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True
        )

    def render_interfaces(self, conf: Config) -> str:
        interfaces = [conf.net[slot] for slot in sorted(conf.net) if conf.net[slot].name]
        template = self.jinja_env.from_string(INTERFACES_TEMPLATE)
        return template.render(interfaces=interfaces)

    def render_resolv_conf(self, conf: Config) -> Optional[str]:
        if not conf.nameserver and not conf.searchdomain:
            return None
        template = self.jinja_env.from_string(RESOLV_TEMPLATE)
        return template.render(
            searchdomain=conf.searchdomain,
            nameservers=(conf.nameserver or '').split(),
        )

    def _write(self, rootdir: str, relpath: str, content: str):
        path = Path(rootdir) / relpath.lstrip('/')
        if self.mock:
            logger.info(f"MOCK: Would write {path}")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.debug(f"Wrote {path}")

    def setup_network(self, conf: Config, rootdir: str):
        """Rewrite the guest network configuration from the container config.

        Args:
            conf: Container config holding the network records
            rootdir: Path of the container root filesystem

        Raises:
            TemplateError: If rendering fails
            OSError: If the files cannot be written
        """
        try:
            interfaces = self.render_interfaces(conf)
            resolv = self.render_resolv_conf(conf)
        except TemplateError as e:
            logger.error(f"Failed to render guest network files: {e}")
            raise

        self._write(rootdir, "/etc/network/interfaces", interfaces)
        if resolv is not None:
            self._write(rootdir, "/etc/resolv.conf", resolv)
