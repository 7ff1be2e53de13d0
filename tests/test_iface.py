import errno

import pytest

from multinicd.iface import InterfaceInspector, device_exists, net_address
from multinicd.netlink import IFF_UP, Address, Link, NetlinkError, Route
from multinicd.resources import InterfaceInfo

MASTER_INTERFACES = ["test-eth1", "test-eth2"]
MASTER_NETADDRESSES = ["10.244.0.0/24", "10.244.1.0/24"]
MASTER_PCIADDRESS = ["0000:08:00.0", "0000:0c:00.0"]


class FakeNetlink:
    def __init__(self, links=(), addrs=(), routes=()):
        self.links = {link.name: link for link in links}
        self.addrs = list(addrs)
        self.routes = list(routes)

    def link_by_name(self, name):
        try:
            return self.links[name]
        except KeyError:
            raise NetlinkError(errno.ENODEV, f"Link not found: {name}") from None

    def link_by_index(self, index):
        for link in self.links.values():
            if link.index == index:
                return link
        raise NetlinkError(errno.ENODEV, f"Link not found: index {index}")

    def addr_list(self, link):
        return [a for a in self.addrs if link is None or a.link_index == link.index]

    def route_list(self, link):
        return [r for r in self.routes if link is None or r.link_index == link.index]


def make_device(root, address, name):
    device_dir = root / address
    (device_dir / "net" / name).mkdir(parents=True)
    (device_dir / "class").write_text("0x020000\n")
    (device_dir / "vendor").write_text("0x1af4\n")
    (device_dir / "device").write_text("0x1000\n")


@pytest.fixture
def host(tmp_path):
    make_device(tmp_path, "0000:00:03.0", "eth0")
    make_device(tmp_path, "0000:00:04.0", "eth1")
    make_device(tmp_path, "0000:00:05.0", "eth2")
    netlink = FakeNetlink(
        links=[
            Link(index=1, name="eth0", flags=IFF_UP),
            Link(index=2, name="eth1", flags=IFF_UP),
            Link(index=3, name="eth2", flags=0),
        ],
        addrs=[
            Address(ip="192.168.1.5", prefix_len=24, link_index=1),
            Address(ip="10.244.0.1", prefix_len=24, link_index=2),
            Address(ip="10.244.1.1", prefix_len=24, link_index=3),
        ],
        routes=[Route(link_index=1, dst=None)],
    )
    return InterfaceInspector(netlink, tmp_path)


def test_net_address():
    assert net_address("10.244.0.1", 24) == MASTER_NETADDRESSES[0]
    assert net_address("10.244.1.1", 24) == MASTER_NETADDRESSES[1]


def test_device_exists_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "true")
    assert device_exists("missing", FakeNetlink()) is True


def test_device_exists_checks_links(monkeypatch):
    monkeypatch.delenv("TEST_MODE", raising=False)
    netlink = FakeNetlink(links=[Link(index=2, name="eth1")])
    assert device_exists("eth1", netlink) is True
    assert device_exists("eth9", netlink) is False


def test_default_subnet(host):
    assert host.default_subnet() == net_address("192.168.1.5", 24)


def test_default_subnet_not_found(tmp_path):
    inspector = InterfaceInspector(FakeNetlink(), tmp_path)
    with pytest.raises(NetlinkError):
        inspector.default_subnet()


def test_get_interfaces_filters(host):
    interfaces = host.get_interfaces()
    assert [i.interface_name for i in interfaces] == ["eth1"]
    info = interfaces[0]
    assert info.net_address == MASTER_NETADDRESSES[0]
    assert info.host_ip == "10.244.0.1"
    assert info.pci_address == "0000:00:04.0"
    assert info.vendor == "1af4"
    assert host.interface_info_cache() == {"eth1": info}


def test_get_interfaces_skips_unaddressed(tmp_path):
    make_device(tmp_path, "0000:00:04.0", "eth1")
    netlink = FakeNetlink(links=[Link(index=2, name="eth1", flags=IFF_UP)])
    inspector = InterfaceInspector(netlink, tmp_path)
    assert inspector.get_interfaces() == []
    assert len(inspector.interface_info_cache()) == 0


def test_name_net_map_discovers(host):
    assert host.name_net_map() == {"eth1": MASTER_NETADDRESSES[0]}
    assert host.interface_name_map() == {MASTER_NETADDRESSES[0]: {"0000:00:04.0": "eth1"}}


def test_maps_from_cache(tmp_path):
    inspector = InterfaceInspector(FakeNetlink(), tmp_path)
    for name, net, pci in zip(MASTER_INTERFACES, MASTER_NETADDRESSES, MASTER_PCIADDRESS):
        info = InterfaceInfo.from_dict(
            {"interfaceName": name, "netAddress": net, "pciAddress": pci}
        )
        inspector.set_interface_info(name, info)
    assert len(inspector.interface_info_cache()) == 2
    assert inspector.name_net_map() == dict(zip(MASTER_INTERFACES, MASTER_NETADDRESSES))
    assert inspector.interface_name_map() == {
        net: {pci: name}
        for name, net, pci in zip(MASTER_INTERFACES, MASTER_NETADDRESSES, MASTER_PCIADDRESS)
    }


def test_maps_empty_without_interfaces(tmp_path):
    inspector = InterfaceInspector(FakeNetlink(), tmp_path)
    assert inspector.name_net_map() == {}
    assert inspector.interface_name_map() == {}