from types import SimpleNamespace

import pytest

from multinicd.client import NicArgs, NICSelectRequest
from multinicd.resources import InterfaceInfo
from multinicd.strategies import (
    CostOptSelector,
    DefaultSelector,
    DevClassSelector,
    Metric,
    PerfOptSelector,
    Strategy,
    interface_stat,
    sorted_keys_by_value,
)

NET1 = "10.244.0.0/24"
NET2 = "10.244.1.0/24"
IFACE_MAP = {NET2: "test-eth2", NET1: "test-eth1"}
NAME_NET = {"test-eth1": NET1, "test-eth2": NET2}


def _info(name, net, vendor, product, pci):
    return InterfaceInfo(
        interface_name=name,
        net_address=net,
        host_ip="",
        vendor=vendor,
        product=product,
        pci_address=pci,
    )


CACHE = {
    "test-eth1": _info("test-eth1", NET1, "1d0f", "efa1", "0000:08:00.0"),
    "test-eth2": _info("test-eth2", NET2, "", "", "0000:0c:00.0"),
}


def test_strategy_values():
    assert Strategy("none") is Strategy.NONE
    assert Strategy("devClass") is Strategy.DEV_CLASS
    assert Strategy("topology") is Strategy.TOPOLOGY
    with pytest.raises(ValueError):
        Strategy("unknown")


def test_sorted_keys_by_value_descending():
    keys = sorted_keys_by_value({"a": 1, "b": 3, "c": 2})
    assert keys == ["b", "c", "a"]


def test_sorted_keys_by_value_empty():
    assert sorted_keys_by_value({}) == []


def test_interface_stat_covers_every_master():
    stats = interface_stat(IFACE_MAP)
    assert set(stats) == set(IFACE_MAP.values())
    assert all(metric == Metric() for metric in stats.values())


def test_default_selects_all_sorted():
    req = NICSelectRequest()
    assert DefaultSelector().select(req, IFACE_MAP, NAME_NET, {}) == [NET1, NET2]


def test_default_limits_number():
    req = NICSelectRequest(nic_set=NicArgs(num_of_interfaces=1))
    assert DefaultSelector().select(req, IFACE_MAP, NAME_NET, {}) == [NET1]


def test_default_number_larger_than_available():
    req = NICSelectRequest(nic_set=NicArgs(num_of_interfaces=5))
    assert len(DefaultSelector().select(req, IFACE_MAP, NAME_NET, {})) == 2


def test_default_uses_fixed_names():
    req = NICSelectRequest(nic_set=NicArgs(interface_names=["test-eth2", "missing"]))
    assert DefaultSelector().select(req, IFACE_MAP, NAME_NET, {}) == [NET2]


def test_default_keeps_requested_network_order():
    req = NICSelectRequest(master_net_addrs=[NET2, NET1])
    assert DefaultSelector().select(req, IFACE_MAP, NAME_NET, {}) == [NET2, NET1]


@pytest.mark.parametrize("selector", [CostOptSelector(), PerfOptSelector()])
def test_other_strategies_follow_default(selector):
    req = NICSelectRequest(nic_set=NicArgs(num_of_interfaces=1))
    expected = DefaultSelector().select(req, IFACE_MAP, NAME_NET, {})
    assert selector.select(req, IFACE_MAP, NAME_NET, {}) == expected


class _Handler:
    def __init__(self, spec=None, error=None):
        self.spec = spec
        self.error = error
        self.asked = []

    def get_spec(self, name):
        self.asked.append(name)
        if self.error is not None:
            raise self.error
        return self.spec


def _highspeed():
    return SimpleNamespace(device_ids=[SimpleNamespace(vendor="1d0f", products=["efa1"])])


def test_dev_class_filters_by_vendor_and_product():
    handler = _Handler(spec=_highspeed())
    selector = DevClassSelector(handler, lambda: CACHE)
    req = NICSelectRequest(nic_set=NicArgs(dev_class="highspeed"))
    result = selector.select(req, IFACE_MAP, NAME_NET, {})
    assert result == [NET1]
    assert handler.asked == ["highspeed"]


def test_dev_class_does_not_mutate_input():
    selector = DevClassSelector(_Handler(spec=_highspeed()), lambda: CACHE)
    names = dict(IFACE_MAP)
    selector.select(NICSelectRequest(nic_set=NicArgs(dev_class="highspeed")), names, NAME_NET, {})
    assert names == IFACE_MAP


def test_dev_class_product_mismatch_removes():
    spec = SimpleNamespace(device_ids=[SimpleNamespace(vendor="1d0f", products=["other"])])
    selector = DevClassSelector(_Handler(spec=spec), lambda: CACHE)
    req = NICSelectRequest(nic_set=NicArgs(dev_class="highspeed"))
    assert selector.select(req, IFACE_MAP, NAME_NET, {}) == []


def test_dev_class_lookup_failure_falls_back():
    selector = DevClassSelector(_Handler(error=OSError("unreachable")), lambda: CACHE)
    req = NICSelectRequest(nic_set=NicArgs(dev_class="highspeed"))
    assert selector.select(req, IFACE_MAP, NAME_NET, {}) == [NET1, NET2]


def test_dev_class_without_class_skips_lookup():
    handler = _Handler(spec=_highspeed())
    selector = DevClassSelector(handler, lambda: CACHE)
    assert selector.select(NICSelectRequest(), IFACE_MAP, NAME_NET, {}) == [NET1, NET2]
    assert handler.asked == []