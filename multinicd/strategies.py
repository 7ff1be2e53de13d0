"""NIC selection strategies that pick network addresses for a pod."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from multinicd.client import NICSelectRequest
from multinicd.kube import KubeError
from multinicd.resources import InterfaceInfo

log = logging.getLogger(__name__)

InterfaceCache = Callable[[], Mapping[str, InterfaceInfo]]


class Strategy(str, enum.Enum):
    """Attachment strategies a MultiNicNetwork policy may name."""

    NONE = "none"
    COST_OPT = "costOpt"
    PERF_OPT = "perfOpt"
    DEV_CLASS = "devClass"
    TOPOLOGY = "topology"


@dataclass
class Metric:
    """Usage statistics of one interface."""

    name: str = ""
    values: List[float] = field(default_factory=list)


def interface_stat(interface_name_map: Mapping[str, str]) -> Dict[str, Metric]:
    """An empty metric for every interface in the map."""
    return {master: Metric() for master in interface_name_map.values()}


def sorted_keys_by_value(value_map: Mapping[str, int]) -> List[str]:
    """Keys ordered from the highest value to the lowest."""
    return [key for key, _ in sorted(value_map.items(), key=lambda kv: kv[1], reverse=True)]


class DefaultSelector:
    """Selects interfaces in order: fixed names, requested networks, else all networks."""

    def select(
        self,
        req: NICSelectRequest,
        interface_name_map: Mapping[str, str],
        name_net_map: Mapping[str, str],
        resource_map: Mapping[str, List[str]],
    ) -> List[str]:
        selected: List[str] = []
        fixed_set = req.nic_set.interface_names
        if fixed_set:
            selected = [name_net_map[name] for name in fixed_set if name in name_net_map]
        else:
            for net_address in req.master_net_addrs:
                log.info("select by net %s", net_address)
                selected.append(net_address)
        if not selected:
            selected = sorted(interface_name_map)
            for net_address in selected:
                log.info("select %s", net_address)
        max_size = req.nic_set.num_of_interfaces
        if max_size > 0:
            max_size = min(len(selected), max_size)
        else:
            max_size = len(selected)
        return selected[:max_size]


class CostOptSelector:
    """Cost-optimised selection; currently the default order."""

    def select(
        self,
        req: NICSelectRequest,
        interface_name_map: Mapping[str, str],
        name_net_map: Mapping[str, str],
        resource_map: Mapping[str, List[str]],
    ) -> List[str]:
        return DefaultSelector().select(req, interface_name_map, name_net_map, resource_map)


class PerfOptSelector:
    """Performance-optimised selection; currently the default order."""

    def select(
        self,
        req: NICSelectRequest,
        interface_name_map: Mapping[str, str],
        name_net_map: Mapping[str, str],
        resource_map: Mapping[str, List[str]],
    ) -> List[str]:
        return DefaultSelector().select(req, interface_name_map, name_net_map, resource_map)


@dataclass
class DevClassSelector:
    """Keeps only interfaces whose vendor and product belong to the requested device class."""

    device_class_handler: Any
    interface_cache: Optional[InterfaceCache] = None

    def _filter(
        self, dev_class: str, interface_name_map: Dict[str, str], name_net_map: Mapping[str, str]
    ) -> None:
        try:
            spec = self.device_class_handler.get_spec(dev_class)
        except (KubeError, OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("cannot get device class %s: %s", dev_class, exc)
            return
        allowed = {device_id.vendor: list(device_id.products or []) for device_id in spec.device_ids}
        cache = dict(self.interface_cache()) if self.interface_cache is not None else {}
        for dev_name in list(interface_name_map.values()):
            net_address = name_net_map.get(dev_name)
            if net_address is None:
                continue
            info = cache.get(dev_name)
            if info is None:
                continue
            products = allowed.get(info.vendor)
            if products is None or info.product not in products:
                interface_name_map.pop(net_address, None)

    def select(
        self,
        req: NICSelectRequest,
        interface_name_map: Mapping[str, str],
        name_net_map: Mapping[str, str],
        resource_map: Mapping[str, List[str]],
    ) -> List[str]:
        candidates = dict(interface_name_map)
        if req.nic_set.dev_class:
            self._filter(req.nic_set.dev_class, candidates, name_net_map)
        else:
            log.info("no device class")
        return DefaultSelector().select(req, candidates, name_net_map, resource_map)