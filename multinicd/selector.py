"""NIC selection for a pod: device-plugin devices first, then the network's strategy."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from multinicd.client import NICSelectRequest, NICSelectResponse
from multinicd.iface import InterfaceInspector, device_exists
from multinicd.kube import KubeError
from multinicd.pci import CHECKPOINT_FILE, DeviceMap, PathLike, pod_resource_map
from multinicd.strategies import (
    CostOptSelector,
    DefaultSelector,
    DevClassSelector,
    PerfOptSelector,
    Strategy,
)
from multinicd.topology import NumaAwareSelector

log = logging.getLogger(__name__)


def is_empty_device_ids(device_ids: List[str]) -> bool:
    """True when no entry of ``device_ids`` is a non-empty ID."""
    return all(not device_id for device_id in device_ids)


def _pod_uid(pod: Any) -> str:
    if isinstance(pod, Mapping):
        metadata = pod.get("metadata") or {}
        return str(metadata.get("uid") or "")
    return str(getattr(pod, "uid", "") or "")


def _policy_strategy(spec: Any) -> str:
    policy = getattr(spec, "policy", None)
    return str(getattr(policy, "strategy", "") or "")


def _flatten(master_name_map: Mapping[str, Mapping[str, str]]) -> Dict[str, str]:
    """One interface name per network address; the last one seen wins."""
    flat: Dict[str, str] = {}
    for net_address, devices in master_name_map.items():
        for master in devices.values():
            flat[net_address] = master
    return flat


class NicSelector:
    """Chooses the master interfaces a pod attaches to on this host."""

    def __init__(
        self,
        inspector: InterfaceInspector,
        device_map: DeviceMap,
        multinicnet_handler: Any,
        net_attach_def_handler: Any,
        device_class_handler: Any = None,
        kube_client: Any = None,
        numa_selector: Optional[NumaAwareSelector] = None,
        checkpoint_path: PathLike = CHECKPOINT_FILE,
        netlink: Any = None,
    ) -> None:
        self.inspector = inspector
        self.device_map = device_map
        self.multinicnet_handler = multinicnet_handler
        self.net_attach_def_handler = net_attach_def_handler
        self.device_class_handler = device_class_handler
        self.kube_client = kube_client
        self.numa_selector = (
            numa_selector
            if numa_selector is not None
            else NumaAwareSelector(interface_cache=inspector.interface_info_cache)
        )
        self.checkpoint_path = checkpoint_path
        self.netlink = netlink

    def init_cache(self, host_interface_handler: Any) -> None:
        """Fill the device map from the host's HostInterface resource."""
        try:
            infos = host_interface_handler.get_host_interfaces()
        except (KubeError, OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("cannot set cache from hostinterface CR: %s", exc)
            return
        for info in infos:
            if info.pci_address:
                self.device_map.set(info.pci_address, info.interface_name)
        log.info("set %d devices cache from hostinterface CR", len(self.device_map))

    def _pod_devices(
        self, req: NICSelectRequest
    ) -> Tuple[Dict[str, List[str]], List[str], List[str]]:
        resource_map: Dict[str, List[str]] = {}
        device_ids: List[str] = []
        masters: List[str] = []
        if self.kube_client is None:
            log.info("Cannot get pod: no Kubernetes client")
            return resource_map, device_ids, masters
        try:
            pod = self.kube_client.get_pod(req.pod_name, req.pod_namespace)
        except KubeError as exc:
            log.info("Cannot get pod: %s", exc)
            return resource_map, device_ids, masters
        uid = _pod_uid(pod)
        try:
            resource_map = pod_resource_map(uid, self.checkpoint_path)
        except (OSError, ValueError) as exc:
            log.info("Cannot get pod resource map: %s", exc)
            return {}, device_ids, masters
        log.info("resourceMap of %s: %s", uid, resource_map)
        try:
            resource_names = self.net_attach_def_handler.get_resource_names(
                req.net_attach_def_name, req.pod_namespace
            )
        except KubeError as exc:
            log.info("Cannot get NetworkAttachDef %s", exc)
            resource_names = []
        for resource_name in resource_names or []:
            ids = resource_map.get(resource_name)
            if ids is None:
                continue
            device_ids.extend(ids)
            masters.extend(self.device_map.get_device_name(device_id) for device_id in ids)
        return resource_map, device_ids, masters

    def _existing(self, name: str) -> bool:
        if device_exists(name, self.netlink):
            return True
        log.info("device %s not exists, skip", name)
        return False

    def _strategy_selector(self, name: str) -> Any:
        try:
            strategy = Strategy(name)
        except ValueError:
            return DefaultSelector()
        if strategy is Strategy.COST_OPT:
            return CostOptSelector()
        if strategy is Strategy.PERF_OPT:
            return PerfOptSelector()
        if strategy is Strategy.DEV_CLASS:
            return DevClassSelector(
                self.device_class_handler, interface_cache=self.inspector.interface_info_cache
            )
        if strategy is Strategy.TOPOLOGY:
            return self.numa_selector.copy()
        return DefaultSelector()

    def select(self, req: NICSelectRequest) -> NICSelectResponse:
        """Masters (and device IDs when the pod holds devices) for the request."""
        resource_map, pod_device_ids, pod_masters = self._pod_devices(req)
        if pod_masters:
            return NICSelectResponse(device_ids=pod_device_ids, masters=pod_masters)

        master_name_map = self.inspector.interface_name_map()
        log.info("master name map: %s", master_name_map)
        name_net_map = self.inspector.name_net_map()
        flat = _flatten(master_name_map)
        try:
            spec = self.multinicnet_handler.get_spec(req.net_attach_def_name, req.pod_namespace)
        except KubeError as exc:
            log.info("failed to get network spec (use default policy): %s", exc)
            selected = DefaultSelector().select(req, flat, name_net_map, resource_map)
            log.info("selected master networks: %s", selected)
            masters = [
                master
                for master in (flat.get(net, "") for net in selected)
                if self._existing(master)
            ]
            return NICSelectResponse(device_ids=[], masters=masters)

        selector = self._strategy_selector(_policy_strategy(spec))
        selected = selector.select(req, flat, name_net_map, resource_map)
        log.info("masterNets %s, %s, %s", selected, flat, name_net_map)
        masters = []
        for net_address in selected:
            master = flat.get(net_address)
            if master and self._existing(master):
                masters.append(master)
        return NICSelectResponse(device_ids=[], masters=masters)