"""Discovery of the host's secondary network interfaces."""

from __future__ import annotations

import errno
import ipaddress
import logging
import os
from typing import Dict, List, Optional

from multinicd.netlink import Link, Netlink, NetlinkError
from multinicd.pci import SYS_BUS_PCI, PathLike, target_networks
from multinicd.resources import InterfaceInfo
from multinicd.safecache import SafeCache

log = logging.getLogger(__name__)

TEST_MODE_ENV = "TEST_MODE"


def net_address(ip: str, prefix_len: int) -> str:
    """Network address in CIDR form of an address and its prefix length."""
    return str(ipaddress.IPv4Interface(f"{ip}/{prefix_len}").network)


def device_exists(name: str, netlink: Optional[Netlink] = None) -> bool:
    """Whether a link of that name exists; always true in test mode."""
    if os.environ.get(TEST_MODE_ENV) == "true":
        return True
    if netlink is None:
        try:
            with Netlink() as own:
                own.link_by_name(name)
        except NetlinkError:
            return False
        return True
    try:
        netlink.link_by_name(name)
    except NetlinkError:
        return False
    return True


class InterfaceInspector:
    """Finds usable secondary interfaces and keeps the last seen ones in a cache."""

    def __init__(
        self,
        netlink: Netlink,
        sys_bus_pci: PathLike = SYS_BUS_PCI,
        cache: Optional[SafeCache] = None,
    ) -> None:
        self.netlink = netlink
        self.sys_bus_pci = sys_bus_pci
        self.cache = cache if cache is not None else SafeCache()

    def set_interface_info(self, name: str, info: InterfaceInfo) -> None:
        self.cache.set(name, info)

    def interface_info_cache(self) -> Dict[str, InterfaceInfo]:
        """Snapshot of the cache, from device name to interface info."""
        return self.cache.snapshot()

    def _link_net_address(self, link: Link) -> str:
        addrs = self.netlink.addr_list(link)
        if not addrs:
            raise NetlinkError(errno.EADDRNOTAVAIL, f"cannot list address on {link.name}")
        first = addrs[0]
        return net_address(first.ip, first.prefix_len)

    def default_subnet(self) -> str:
        """Subnet of the link that carries the default route."""
        for route in self.netlink.route_list(None):
            if route.dst is None:
                link = self.netlink.link_by_index(route.link_index)
                return self._link_net_address(link)
        raise NetlinkError(errno.ENOENT, "not found")

    def get_interfaces(self) -> List[InterfaceInfo]:
        """Up, addressed network-class interfaces outside the default subnet."""
        try:
            default = self.default_subnet()
        except NetlinkError as exc:
            log.warning("cannot get default subnet: %s", exc)
            default = ""
        interfaces: List[InterfaceInfo] = []
        for device in target_networks(self.sys_bus_pci):
            name = device.name
            try:
                link = self.netlink.link_by_name(name)
            except NetlinkError as exc:
                log.info("cannot find link %s: %s", name, exc)
                continue
            try:
                addrs = self.netlink.addr_list(link)
            except NetlinkError as exc:
                log.info("cannot list address on %s: %s", name, exc)
                continue
            if not addrs:
                log.info("cannot list address on %s: no address", name)
                continue
            if not link.is_up:
                log.info("%s down", name)
                continue
            addr = addrs[0]
            subnet = net_address(addr.ip, addr.prefix_len)
            if subnet == default:
                log.info("omit %s (default subnet %s)", name, subnet)
                continue
            info = InterfaceInfo(
                interface_name=name,
                net_address=subnet,
                host_ip=addr.ip,
                vendor=device.vendor,
                product=device.product,
                pci_address=device.pci_address,
            )
            interfaces.append(info)
            self.cache.set(name, info)
        return interfaces

    def _ensure_cache(self) -> bool:
        if len(self.cache) == 0:
            return bool(self.get_interfaces())
        return True

    def name_net_map(self) -> Dict[str, str]:
        """Map from interface name to network address."""
        if not self._ensure_cache():
            return {}
        return {name: info.net_address for name, info in self.interface_info_cache().items()}

    def interface_name_map(self) -> Dict[str, Dict[str, str]]:
        """Map from network address to a map of PCI address to interface name."""
        if not self._ensure_cache():
            return {}
        result: Dict[str, Dict[str, str]] = {}
        for name, info in self.interface_info_cache().items():
            result.setdefault(info.net_address, {})[info.pci_address] = name
        return result