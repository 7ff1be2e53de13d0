import pytest

from multinicd.client import NicArgs, NICSelectRequest
from multinicd.resources import InterfaceInfo
from multinicd.topology import (
    GPU_RESOURCE_NAME,
    NcclTopology,
    NumaAwareSelector,
    gpu_id_bus_map,
    init_numa_aware_selector,
    load_topology,
    numa_map_from_sysfs,
    numa_map_from_topology,
    parse_topology,
)

NET1 = "10.244.0.0/24"
NET2 = "10.244.1.0/24"
GPU_ID = "GPU-00000000-0000-0000-0000-000000000001"
GPU_BUS_MAP = {GPU_ID: "0000:0c:05.0"}

TOPOLOGY_XML = """<system version="1">
  <cpu numaid="0" affinity="ff" arch="x86_64">
    <pci busid="0000:08:00.0" class="0x020000" vendor="0x1d0f" device="0xefa1"
         subsystem_vendor="0x1d0f" subsystem_device="0x0000" link_speed="16 GT/s" link_width="16"/>
  </cpu>
  <cpu numaid="1" affinity="ff00" arch="x86_64">
    <pci busid="0000:0c:00.0" class="0x060400" vendor="0x1000" device="0xc010">
      <pci busid="0000:0c:05.0" class="0x030200" vendor="0x10de" device="0x20b0"/>
    </pci>
  </cpu>
</system>
"""


def _info(name, net, pci):
    return InterfaceInfo(
        interface_name=name, net_address=net, host_ip="", vendor="", product="", pci_address=pci
    )


CACHE = {
    "test-eth1": _info("test-eth1", NET1, "0000:08:00.0"),
    "test-eth2": _info("test-eth2", NET2, "0000:0c:00.0"),
}
IFACE_MAP = {NET1: "test-eth1", NET2: "test-eth2"}
NAME_NET = {"test-eth1": NET1, "test-eth2": NET2}


@pytest.fixture
def topology_file(tmp_path):
    path = tmp_path / "topology.xml"
    path.write_text(TOPOLOGY_XML)
    return path


def test_parse_topology_structure():
    topology = parse_topology(TOPOLOGY_XML)
    assert [cpu.numa_id for cpu in topology.cpus] == ["0", "1"]
    first = topology.cpus[0].pcis[0]
    assert first.bus_id == "0000:08:00.0"
    assert first.vendor == "0x1d0f"
    assert first.link_width == "16"
    assert topology.cpus[1].pcis[0].pcis[0].bus_id == "0000:0c:05.0"


def test_parse_topology_rejects_other_root():
    with pytest.raises(ValueError):
        parse_topology("<other/>")


def test_parse_topology_rejects_bad_xml():
    with pytest.raises(ValueError):
        parse_topology("<system>")


def test_load_topology_missing_file(tmp_path):
    assert load_topology(tmp_path / "absent.xml").cpus == []


def test_numa_map_from_topology():
    numa_map = numa_map_from_topology(parse_topology(TOPOLOGY_XML))
    assert numa_map == {"0000:08:00.0": "0", "0000:0c:00.0": "1", "0000:0c:05.0": "1"}


def test_init_from_topology_file(topology_file):
    selector = init_numa_aware_selector(topology_file, {})
    assert len(selector.topology.cpus) == 2
    assert len(selector.numa_map) > 0


def test_numa_map_from_sysfs(tmp_path):
    device = tmp_path / "pci0000:00" / "0000:00:03.0"
    device.mkdir(parents=True)
    (device / "numa_node").write_text("1\n")
    (device / "other").write_text("x")
    assert numa_map_from_sysfs(tmp_path) == {"pci0000:00": "1"}


def test_numa_map_from_sysfs_missing_dir(tmp_path):
    assert numa_map_from_sysfs(tmp_path / "absent") == {}


def test_gpu_id_bus_map(tmp_path):
    gpu_dir = tmp_path / "0000:0c:05.0"
    gpu_dir.mkdir()
    (gpu_dir / "information").write_text(
        f"Model: \t Test GPU\nGPU UUID: \t {GPU_ID}\nBus Location: \t 0000:0c:05.0\n"
    )
    assert gpu_id_bus_map(tmp_path) == GPU_BUS_MAP


def test_gpu_id_bus_map_missing_dir(tmp_path):
    assert gpu_id_bus_map(tmp_path / "absent") == {}


def test_select_prefers_gpu_numa(topology_file):
    selector = init_numa_aware_selector(topology_file, GPU_BUS_MAP, lambda: CACHE)
    req = NICSelectRequest(
        master_net_addrs=[NET1, NET2], nic_set=NicArgs(num_of_interfaces=1)
    )
    result = selector.select(req, IFACE_MAP, NAME_NET, {GPU_RESOURCE_NAME: [GPU_ID]})
    assert result == [NET2]


def test_select_without_gpus_keeps_order(topology_file):
    selector = init_numa_aware_selector(topology_file, GPU_BUS_MAP, lambda: CACHE)
    req = NICSelectRequest(
        master_net_addrs=[NET1, NET2], nic_set=NicArgs(num_of_interfaces=1)
    )
    assert selector.select(req, IFACE_MAP, NAME_NET, {}) == [NET1]


def test_select_ignores_unknown_networks():
    selector = NumaAwareSelector()
    req = NICSelectRequest(master_net_addrs=["192.0.2.0/24", NET2])
    assert selector.select(req, IFACE_MAP, NAME_NET, {}) == [NET2]


def test_select_all_when_no_limit():
    selector = NumaAwareSelector()
    result = selector.select(NICSelectRequest(), IFACE_MAP, NAME_NET, {})
    assert sorted(result) == sorted(IFACE_MAP)


def test_sort_by_numa_aware_orders_by_priority(topology_file):
    selector = init_numa_aware_selector(topology_file, GPU_BUS_MAP, lambda: CACHE)
    ordered = selector.sort_by_numa_aware(
        [NET1, NET2], IFACE_MAP, {GPU_RESOURCE_NAME: [GPU_ID]}
    )
    assert ordered == [NET2, NET1]


def test_sort_without_numa_map_returns_input():
    selector = NumaAwareSelector(topology=NcclTopology())
    selected = [NET1, NET2]
    assert selector.sort_by_numa_aware(selected, IFACE_MAP, {GPU_RESOURCE_NAME: [GPU_ID]}) is selected


def test_copy_shares_state(topology_file):
    selector = init_numa_aware_selector(topology_file, GPU_BUS_MAP, lambda: CACHE)
    copied = selector.copy()
    assert copied is not selector
    assert copied.numa_map == selector.numa_map
    assert copied.gpu_id_bus_map == GPU_BUS_MAP
    assert copied.topology == selector.topology