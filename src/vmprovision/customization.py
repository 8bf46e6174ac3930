"""Static network customization derived from a CIDR string."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from vmprovision.subnet import (
    InvalidAddress,
    gateway_address,
    parse_cidr,
    subnet_mask,
    to_binary_string,
)

CIDR_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}/\d{1,2}$")


def validate_cidr(cidr: str) -> Tuple[str, int]:
    """
    Check the shape of a CIDR string, then its value ranges.

    The pattern only checks digit shape; octet and prefix ranges are
    enforced by the subnet calculator.

    Returns:
        (address, prefix_length) tuple

    Raises:
        InvalidAddress: If the string does not look like a.b.c.d/n
        InvalidPrefixLength: If the prefix is outside 0-32
    """
    if not isinstance(cidr, str) or not CIDR_PATTERN.match(cidr.strip()):
        raise InvalidAddress(f"{cidr!r} is not in the form a.b.c.d/n")
    return parse_cidr(cidr.strip())


def dhcp_params(interface: int = 0) -> Dict[str, str]:
    """Cloud-init parameters for a DHCP-configured interface."""
    return {f"ipconfig{interface}": "ip=dhcp"}


@dataclass
class NetworkCustomization:
    """Static IP settings passed to the guest OS customization."""

    ip_address: str
    prefix_length: int
    subnet_mask: str
    gateway: str
    dns_servers: List[str] = field(default_factory=list)
    search_domain: Optional[str] = None

    @classmethod
    def from_cidr(
        cls, cidr: str, dns_servers: Sequence[str] = (), search_domain: Optional[str] = None
    ) -> "NetworkCustomization":
        """Build the customization for ``cidr``, e.g. ``172.25.14.32/27``."""
        address, prefix_length = validate_cidr(cidr)
        servers = [server.strip() for server in dns_servers if server and server.strip()]
        for server in servers:
            # Raises InvalidAddress for anything that is not a dotted quad
            to_binary_string(server)

        return cls(
            ip_address=address,
            prefix_length=prefix_length,
            subnet_mask=subnet_mask(prefix_length),
            gateway=gateway_address(address, prefix_length),
            dns_servers=servers,
            search_domain=search_domain or None,
        )

    @property
    def cidr(self) -> str:
        return f"{self.ip_address}/{self.prefix_length}"

    def to_cloudinit_params(self, interface: int = 0) -> Dict[str, str]:
        """Render as Proxmox cloud-init config parameters."""
        params = {f"ipconfig{interface}": f"ip={self.cidr},gw={self.gateway}"}
        if self.dns_servers:
            params["nameserver"] = " ".join(self.dns_servers)
        if self.search_domain:
            params["searchdomain"] = self.search_domain
        return params
