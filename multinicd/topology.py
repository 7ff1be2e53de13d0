"""NUMA-aware NIC selection driven by an NCCL topology file or sysfs."""

from __future__ import annotations

import dataclasses
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Union

from multinicd.client import NICSelectRequest
from multinicd.resources import InterfaceInfo
from multinicd.strategies import sorted_keys_by_value

log = logging.getLogger(__name__)

GPU_RESOURCE_NAME = "nvidia.com/gpu"
DEFAULT_TOPOLOGY_FILE_PATH = "/var/run/nvidia-topologyd/virtualTopology.xml"
DEVICE_DIR = "/sys/devices"
NVIDIA_GPU_PROC_DIR = "/proc/driver/nvidia/gpus"

PathLike = Union[str, "os.PathLike[str]"]
InterfaceCache = Callable[[], Mapping[str, InterfaceInfo]]


@dataclass
class PciTag:
    bus_id: str = ""
    pci_class: str = ""
    vendor: str = ""
    device: str = ""
    sub_vendor: str = ""
    sub_device: str = ""
    link_speed: str = ""
    link_width: str = ""
    pcis: List["PciTag"] = field(default_factory=list)


@dataclass
class CpuTag:
    numa_id: str = ""
    pcis: List[PciTag] = field(default_factory=list)


@dataclass
class NcclTopology:
    cpus: List[CpuTag] = field(default_factory=list)


def _parse_pci(elem: ET.Element) -> PciTag:
    return PciTag(
        bus_id=elem.get("busid", ""),
        pci_class=elem.get("class", ""),
        vendor=elem.get("vendor", ""),
        device=elem.get("device", ""),
        sub_vendor=elem.get("subsystem_vendor", ""),
        sub_device=elem.get("subsystem_device", ""),
        link_speed=elem.get("link_speed", ""),
        link_width=elem.get("link_width", ""),
        pcis=[_parse_pci(child) for child in elem.findall("pci")],
    )


def parse_topology(data: Union[bytes, str]) -> NcclTopology:
    """Parse an NCCL topology document; raises ValueError if it is not one."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise ValueError(f"invalid topology XML: {exc}") from exc
    if root.tag != "system":
        raise ValueError(f"expected element <system> but have <{root.tag}>")
    cpus = [
        CpuTag(numa_id=cpu.get("numaid", ""), pcis=[_parse_pci(p) for p in cpu.findall("pci")])
        for cpu in root.findall("cpu")
    ]
    return NcclTopology(cpus=cpus)


def load_topology(path: PathLike) -> NcclTopology:
    """Topology from a file, or an empty one when the file is missing or unreadable."""
    try:
        return parse_topology(Path(path).read_bytes())
    except (OSError, ValueError) as exc:
        log.info("cannot load topology %s: %s", path, exc)
        return NcclTopology()


def numa_map_from_topology(topology: NcclTopology) -> Dict[str, str]:
    """Map from PCI bus ID to NUMA node for devices one or two levels below a CPU."""
    numa_map: Dict[str, str] = {}
    for cpu in topology.cpus:
        for pci in cpu.pcis:
            numa_map[pci.bus_id] = cpu.numa_id
            for sub in pci.pcis:
                numa_map[sub.bus_id] = cpu.numa_id
    return numa_map


def _walk_files(top: str) -> Iterator[str]:
    with os.scandir(top) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(entry.path)
        else:
            yield entry.path


def numa_map_from_sysfs(device_dir: PathLike = DEVICE_DIR) -> Dict[str, str]:
    """NUMA nodes read from ``numa_node`` files under ``device_dir``.

    Each value is keyed by the name of the directory above the one holding the file.
    The walk stops at the first error and keeps what it found so far.
    """
    numa_map: Dict[str, str] = {}
    try:
        for path in _walk_files(os.fspath(device_dir)):
            if not path.endswith(os.sep + "numa_node"):
                continue
            holder = os.path.dirname(path)
            key = os.path.basename(os.path.dirname(holder))
            with open(path, encoding="ascii", errors="replace") as fh:
                numa_map[key] = fh.read().strip()
    except OSError as exc:
        log.warning("failed to getNumaMapFromSysfs: %s", exc)
    return numa_map


def gpu_id_bus_map(proc_dir: PathLike = NVIDIA_GPU_PROC_DIR) -> Dict[str, str]:
    """Map from GPU UUID to PCI bus ID, read from the NVIDIA driver's proc entries."""
    result: Dict[str, str] = {}
    root = Path(proc_dir)
    try:
        gpu_dirs = sorted(root.iterdir())
    except OSError:
        return result
    for gpu_dir in gpu_dirs:
        try:
            text = (gpu_dir / "information").read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        fields: Dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.partition(":")
            if sep:
                fields[key.strip()] = value.strip()
        uuid = fields.get("GPU UUID")
        if uuid:
            result[uuid] = fields.get("Bus Location") or gpu_dir.name
    log.info("GetGPUIDMap: %s", result)
    return result


@dataclass
class NumaAwareSelector:
    """Prefers NICs on the NUMA nodes that hold most of the pod's GPUs."""

    topology: NcclTopology = field(default_factory=NcclTopology)
    gpu_id_bus_map: Dict[str, str] = field(default_factory=dict)
    numa_map: Dict[str, str] = field(default_factory=dict)
    interface_cache: Optional[InterfaceCache] = None

    def select(
        self,
        req: NICSelectRequest,
        interface_name_map: Mapping[str, str],
        name_net_map: Mapping[str, str],
        resource_map: Mapping[str, List[str]],
    ) -> List[str]:
        selected: List[str] = []
        for net_address in req.master_net_addrs:
            valid = net_address in interface_name_map
            if valid:
                selected.append(net_address)
            log.info("select by net %s: valid=%s", net_address, valid)
        if not selected:
            selected = list(interface_name_map)
        max_size = req.nic_set.num_of_interfaces
        if 0 < max_size < len(selected):
            ordered = self.sort_by_numa_aware(selected, interface_name_map, resource_map)
            if len(ordered) != len(selected):
                log.info(
                    "sorted value is not equal to origin: %d != %d, use origin",
                    len(ordered),
                    len(selected),
                )
            else:
                selected = ordered
        else:
            max_size = len(selected)
        return selected[:max_size]

    def sort_by_numa_aware(
        self,
        selected_master: List[str],
        interface_name_map: Mapping[str, str],
        resource_map: Mapping[str, List[str]],
    ) -> List[str]:
        """Order networks by how many of the pod's GPUs share their NIC's NUMA node."""
        gpu_ids = resource_map.get(GPU_RESOURCE_NAME)
        if gpu_ids is None or not self.numa_map:
            log.info(
                "cannot sort by numa node: resourceMap=%s, NumaMap length=%d",
                gpu_ids is not None,
                len(self.numa_map),
            )
            return selected_master
        numa_priority: Dict[str, int] = {}
        for gpu_id in gpu_ids:
            numa_id = self.numa_map.get(self.gpu_id_bus_map.get(gpu_id, ""), "")
            numa_priority[numa_id] = numa_priority.get(numa_id, 0) + 1
        cache = dict(self.interface_cache()) if self.interface_cache is not None else {}
        nic_priority: Dict[str, int] = {}
        for net_address in selected_master:
            dev_name = interface_name_map.get(net_address)
            if dev_name is None:
                continue
            info = cache.get(dev_name)
            if info is None:
                continue
            numa_id = self.numa_map.get(info.pci_address)
            if numa_id is not None:
                nic_priority[net_address] = numa_priority.get(numa_id, 0)
        return sorted_keys_by_value(nic_priority)

    def copy(self) -> "NumaAwareSelector":
        return dataclasses.replace(self)


def init_numa_aware_selector(
    topology_file_path: PathLike,
    gpu_id_bus_map: Mapping[str, str],
    interface_cache: Optional[InterfaceCache] = None,
) -> NumaAwareSelector:
    """Build a selector from a topology file, falling back to sysfs for NUMA nodes."""
    topology = load_topology(topology_file_path) if topology_file_path else NcclTopology()
    if topology.cpus:
        numa_map = numa_map_from_topology(topology)
    else:
        numa_map = numa_map_from_sysfs()
    log.info("InitNumaAwareSelector with %d numa nodes", len(numa_map))
    return NumaAwareSelector(
        topology=topology,
        gpu_id_bus_map=dict(gpu_id_bus_map),
        numa_map=numa_map,
        interface_cache=interface_cache,
    )