"""Typed access to the custom resources the daemon reads and patches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from multinicd.kube import JSON_PATCH_TYPE, DynamicHandler, KubeClient, KubeError

log = logging.getLogger(__name__)

IPPOOL_RESOURCE = "ippools.v1.multinic.fms.io"
IPPOOL_KIND = "IPPool"
MULTINICNET_RESOURCE = "multinicnetworks.v1.multinic.fms.io"
MULTINICNET_KIND = "MultiNicNetwork"
NET_ATTACH_DEF_RESOURCE = "network-attachment-definitions.v1.k8s.cni.cncf.io"
NET_ATTACH_DEF_KIND = "NetworkAttachmentDefinition"
RESOURCE_ANNOTATION = "k8s.v1.cni.cncf.io/resourceName"
DEVICECLASS_RESOURCE = "deviceclasses.v1.multinic.fms.io"
DEVICECLASS_KIND = "DeviceClass"
HOSTINTERFACE_RESOURCE = "hostinterfaces.v1.multinic.fms.io"
HOSTINTERFACE_KIND = "hostinterfaces"


@dataclass
class Allocation:
    pod: str = ""
    namespace: str = ""
    index: int = 0
    address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pod": self.pod,
            "namespace": self.namespace,
            "index": self.index,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Allocation":
        return cls(
            pod=data.get("pod") or "",
            namespace=data.get("namespace") or "",
            index=int(data.get("index") or 0),
            address=data.get("address") or "",
        )


@dataclass
class IPPool:
    pod_cidr: str = ""
    vlan_cidr: str = ""
    net_attach_def_name: str = ""
    host_name: str = ""
    interface_name: str = ""
    excludes: List[str] = field(default_factory=list)
    allocations: List[Allocation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IPPool":
        return cls(
            pod_cidr=data.get("podCIDR") or "",
            vlan_cidr=data.get("vlanCIDR") or "",
            net_attach_def_name=data.get("netAttachDef") or "",
            host_name=data.get("hostName") or "",
            interface_name=data.get("interfaceName") or "",
            excludes=list(data.get("excludes") or []),
            allocations=[Allocation.from_dict(a) for a in data.get("allocations") or []],
        )


class IPPoolHandler(DynamicHandler):
    """Lists IP pools and replaces their allocations."""

    def __init__(self, client: KubeClient) -> None:
        super().__init__(client, IPPOOL_RESOURCE, IPPOOL_KIND)

    def pool_name(self, net_attach_def: str, pod_cidr: str) -> str:
        return net_attach_def + "-" + pod_cidr.replace("/", "-")

    def list_ippools(self, label_selector: Optional[str]) -> Dict[str, IPPool]:
        """Map pool name to pool spec for all pools matching the selector."""
        log.info("ListIPPool with selector: %s", label_selector)
        return {
            self.get_name(item): IPPool.from_dict(item.get("spec") or {})
            for item in self.list("", label_selector)
        }

    def patch_ippool(self, name: str, allocations: List[Allocation]) -> Dict[str, Any]:
        """Replace the allocation list of a pool."""
        data = [
            {
                "op": "replace",
                "path": "/spec/allocations",
                "value": [a.to_dict() for a in allocations],
            }
        ]
        return self.patch(name, "", JSON_PATCH_TYPE, data)


@dataclass
class AttachmentPolicy:
    strategy: str = ""
    target: str = ""


@dataclass
class MultiNicNetworkSpec:
    policy: AttachmentPolicy = field(default_factory=AttachmentPolicy)
    master_net_addrs: List[str] = field(default_factory=list)


def _parse_network_spec(data: Mapping[str, Any]) -> MultiNicNetworkSpec:
    policy = data.get("attachPolicy") or {}
    return MultiNicNetworkSpec(
        policy=AttachmentPolicy(
            strategy=policy.get("strategy") or "", target=policy.get("target") or ""
        ),
        master_net_addrs=list(data.get("masterNets") or []),
    )


class MultiNicNetworkHandler(DynamicHandler):
    def __init__(self, client: KubeClient) -> None:
        super().__init__(client, MULTINICNET_RESOURCE, MULTINICNET_KIND)

    def get_spec(self, name: str, namespace: str) -> MultiNicNetworkSpec:
        """Fetch a network's spec; raises KubeError when it cannot be read."""
        obj = self.get(name, namespace)
        return _parse_network_spec((obj or {}).get("spec") or {})


class NetAttachDefHandler(DynamicHandler):
    def __init__(self, client: KubeClient) -> None:
        super().__init__(client, NET_ATTACH_DEF_RESOURCE, NET_ATTACH_DEF_KIND)

    def get_resource_names(self, name: str, namespace: str) -> List[str]:
        """Device-plugin resource names from the definition's annotation, or []."""
        try:
            obj = self.get(name, namespace)
        except KubeError as exc:
            log.warning("Cannot get NetworkAttachDef %s", exc)
            return []
        annotations = (obj.get("metadata") or {}).get("annotations") or {}
        combined = annotations.get(RESOURCE_ANNOTATION)
        names = combined.split(",") if combined is not None else []
        log.info("Resource names: %s", names)
        return names


@dataclass
class DeviceID:
    vendor: str = ""
    products: List[str] = field(default_factory=list)


@dataclass
class DeviceClassSpec:
    device_ids: List[DeviceID] = field(default_factory=list)


class DeviceClassHandler(DynamicHandler):
    def __init__(self, client: KubeClient) -> None:
        super().__init__(client, DEVICECLASS_RESOURCE, DEVICECLASS_KIND)

    def get_spec(self, name: str) -> DeviceClassSpec:
        """Fetch a device class; raises KubeError when it cannot be read."""
        obj = self.get(name, "")
        spec = (obj or {}).get("spec") or {}
        return DeviceClassSpec(
            device_ids=[
                DeviceID(vendor=d.get("vendor") or "", products=list(d.get("products") or []))
                for d in spec.get("ids") or []
            ]
        )


@dataclass
class InterfaceInfo:
    interface_name: str = ""
    net_address: str = ""
    host_ip: str = ""
    vendor: str = ""
    product: str = ""
    pci_address: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "interfaceName": self.interface_name,
            "netAddress": self.net_address,
            "hostIP": self.host_ip,
            "vendor": self.vendor,
            "product": self.product,
            "pciAddress": self.pci_address,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InterfaceInfo":
        return cls(
            interface_name=data.get("interfaceName") or "",
            net_address=data.get("netAddress") or "",
            host_ip=data.get("hostIP") or "",
            vendor=data.get("vendor") or "",
            product=data.get("product") or "",
            pci_address=data.get("pciAddress") or "",
        )


class HostInterfaceHandler(DynamicHandler):
    """Reads the host interface record of one node."""

    def __init__(self, client: KubeClient, host_name: str) -> None:
        super().__init__(client, HOSTINTERFACE_RESOURCE, HOSTINTERFACE_KIND)
        self.host_name = host_name

    def get_host_interfaces(self) -> List[InterfaceInfo]:
        obj = self.get(self.host_name, "")
        spec = (obj or {}).get("spec") or {}
        if "interfaces" not in spec:
            raise KubeError("`interfaces` field not found")
        values = spec["interfaces"]
        if not isinstance(values, list):
            raise KubeError("cannot parse value of interfaces")
        return [InterfaceInfo.from_dict(v) for v in values]