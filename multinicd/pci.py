"""PCI network devices, device-plugin checkpoints and PF name lookup from sysfs."""

from __future__ import annotations

import errno
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from multinicd.safecache import SafeCache

log = logging.getLogger(__name__)

SYS_BUS_PCI = "/sys/bus/pci/devices"
NET_CLASS = 0x02
CHECKPOINT_FILE = "/var/lib/kubelet/device-plugins/kubelet_internal_checkpoint"

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class NetDeviceInfo:
    """A network device name together with the PCI function it sits on."""

    name: str
    vendor: str
    product: str
    pci_address: str


def _sorted_entries(path: Path) -> List[str]:
    return sorted(entry.name for entry in path.iterdir())


def read_checkpoint(path: PathLike = CHECKPOINT_FILE) -> Dict[str, Any]:
    """The ``Data`` section of a kubelet device-plugin checkpoint file."""
    raw = Path(path).read_bytes()
    try:
        doc = json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"getPodEntries: error unmarshalling raw bytes {exc}") from exc
    if not isinstance(doc, dict):
        raise ValueError("getPodEntries: checkpoint is not a JSON object")
    data = doc.get("Data") or {}
    if not isinstance(data, dict):
        raise ValueError("getPodEntries: checkpoint data is not a JSON object")
    return data


def convert_device_ids(device_ids: Any) -> List[str]:
    """Flatten device IDs given either as a list or as a map of lists."""
    if isinstance(device_ids, list):
        return [str(value) for value in device_ids]
    if isinstance(device_ids, dict):
        return [str(value) for values in device_ids.values() for value in values or []]
    return []


def pod_resource_map(
    pod_uid: str, checkpoint_path: PathLike = CHECKPOINT_FILE
) -> Dict[str, List[str]]:
    """Map from resource name to the device IDs assigned to the pod.

    When a resource name appears in several entries, the first entry's IDs are kept.
    """
    if not pod_uid:
        raise ValueError("GetPodResourceMap: invalid Pod cannot be empty")
    data = read_checkpoint(checkpoint_path)
    resource_map: Dict[str, List[str]] = {}
    for entry in data.get("PodDeviceEntries") or []:
        if entry.get("PodUID") != pod_uid:
            continue
        device_ids = convert_device_ids(entry.get("DeviceIDs"))
        resource_map.setdefault(entry.get("ResourceName") or "", device_ids)
    return resource_map


def pf_name(vf: str, sys_bus_pci: PathLike = SYS_BUS_PCI) -> str:
    """Name of the physical-function net device behind a PCI address."""
    base = Path(sys_bus_pci) / vf
    net_dir = base / "net"
    if not os.path.lexists(net_dir):
        net_dir = base / "physfn" / "net"
        if not os.path.lexists(net_dir):
            raise FileNotFoundError(errno.ENOENT, "no net directory for device", str(net_dir))
    names = _sorted_entries(net_dir)
    if not names:
        raise FileNotFoundError(errno.ENOENT, "PF network device not found", str(net_dir))
    return names[0].strip()


def _virtio_net_names(top_dir: Path) -> List[str]:
    try:
        entries = _sorted_entries(top_dir)
    except OSError as exc:
        raise OSError(exc.errno, f"failed to read directory {top_dir}: {exc.strerror}") from exc
    names: List[str] = []
    for entry in entries:
        if "virtio" not in entry:
            continue
        net_dir = top_dir / entry / "net"
        if not os.path.lexists(net_dir):
            continue
        try:
            names.extend(_sorted_entries(net_dir))
        except OSError:
            continue
    if not names:
        raise FileNotFoundError(errno.ENOENT, f"no net or virtio folder from {top_dir}")
    return names


def net_names(pci_addr: str, sys_bus_pci: PathLike = SYS_BUS_PCI) -> List[str]:
    """Net device names that belong to a PCI address, virtio children included."""
    top_dir = Path(sys_bus_pci) / pci_addr
    net_dir = top_dir / "net"
    if not os.path.lexists(net_dir):
        return _virtio_net_names(top_dir)
    try:
        names = _sorted_entries(net_dir)
    except OSError as exc:
        raise OSError(exc.errno, f"failed to read net directory {net_dir}: {exc.strerror}") from exc
    if not names:
        raise FileNotFoundError(errno.ENOENT, f"no net in {net_dir}")
    return names


def _read_hex(path: Path) -> Optional[str]:
    try:
        text = path.read_text(encoding="ascii").strip().lower()
    except OSError:
        return None
    return text[2:] if text.startswith("0x") else text


def target_networks(sys_bus_pci: PathLike = SYS_BUS_PCI) -> List[NetDeviceInfo]:
    """Every net device on a PCI function of the network class."""
    root = Path(sys_bus_pci)
    try:
        addresses = _sorted_entries(root)
    except OSError as exc:
        log.warning("cannot get PCI info: %s", exc)
        return []
    devices: List[NetDeviceInfo] = []
    for address in addresses:
        device_dir = root / address
        class_code = _read_hex(device_dir / "class")
        if not class_code:
            continue
        try:
            dev_class = int(class_code[:2], 16)
        except ValueError:
            continue
        if dev_class != NET_CLASS:
            continue
        try:
            names = net_names(address, root)
        except OSError:
            continue
        vendor = _read_hex(device_dir / "vendor") or ""
        product = _read_hex(device_dir / "device") or ""
        devices.extend(
            NetDeviceInfo(name=name, vendor=vendor, product=product, pci_address=address)
            for name in names
        )
    return devices


class DeviceMap:
    """Cache from PCI address to net device name."""

    def __init__(self, sys_bus_pci: PathLike = SYS_BUS_PCI) -> None:
        self.sys_bus_pci = sys_bus_pci
        self._cache = SafeCache()

    def set(self, pci_address: str, name: str) -> None:
        self._cache.set(pci_address, name)

    def get_device_name(self, device_id: str) -> str:
        """Cached name of the device, looked up in sysfs on a miss; empty if unknown."""
        name = self._cache.get(device_id)
        if name is not None:
            return name
        try:
            name = pf_name(device_id, self.sys_bus_pci)
        except OSError as exc:
            log.warning("cannot get physical device %s: %s", device_id, exc)
            return ""
        log.info("set deviceMapCache %s=%s", device_id, name)
        self._cache.set(device_id, name)
        return name

    def __len__(self) -> int:
        return len(self._cache)