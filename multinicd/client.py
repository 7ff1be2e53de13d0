"""Client side of the daemon's NIC selection and IP allocation endpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests

from multinicd.allocator import IPResponse

NIC_SELECT_PATH = "select"
ALLOCATE_PATH = "allocate"
DEALLOCATE_PATH = "deallocate"
DEFAULT_DAEMON_PORT = 11000
DEFAULT_DAEMON_IP = "localhost"
REQUEST_TIMEOUT = 120.0
CONTENT_TYPE = "application/json; charset=utf-8"


class DaemonError(Exception):
    """The daemon could not be reached or gave an unusable answer."""


@dataclass
class NicArgs:
    """Extra selection settings from a pod annotation."""

    num_of_interfaces: int = 0
    interface_names: List[str] = field(default_factory=list)
    target: str = ""
    dev_class: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.num_of_interfaces:
            out["nics"] = self.num_of_interfaces
        if self.interface_names:
            out["masters"] = list(self.interface_names)
        if self.target:
            out["target"] = self.target
        if self.dev_class:
            out["class"] = self.dev_class
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NicArgs":
        return cls(
            num_of_interfaces=int(data.get("nics") or 0),
            interface_names=list(data.get("masters") or []),
            target=data.get("target") or "",
            dev_class=data.get("class") or "",
        )


@dataclass
class NICSelectRequest:
    pod_name: str = ""
    pod_namespace: str = ""
    host_name: str = ""
    net_attach_def_name: str = ""
    master_net_addrs: List[str] = field(default_factory=list)
    nic_set: NicArgs = field(default_factory=NicArgs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pod": self.pod_name,
            "namespace": self.pod_namespace,
            "host": self.host_name,
            "def": self.net_attach_def_name,
            "masterNets": list(self.master_net_addrs),
            "args": self.nic_set.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NICSelectRequest":
        return cls(
            pod_name=data.get("pod") or "",
            pod_namespace=data.get("namespace") or "",
            host_name=data.get("host") or "",
            net_attach_def_name=data.get("def") or "",
            master_net_addrs=list(data.get("masterNets") or []),
            nic_set=NicArgs.from_dict(data.get("args") or {}),
        )


@dataclass
class NICSelectResponse:
    device_ids: List[str] = field(default_factory=list)
    masters: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"deviceIDs": list(self.device_ids), "masters": list(self.masters)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NICSelectResponse":
        return cls(
            device_ids=list(data.get("deviceIDs") or []),
            masters=list(data.get("masters") or []),
        )


def _post(daemon_ip: str, daemon_port: int, path: str, payload: Any) -> requests.Response:
    address = f"http://{daemon_ip}:{daemon_port}/{path}"
    try:
        resp = requests.post(
            address,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": CONTENT_TYPE},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise DaemonError(f"post fail: {exc}") from exc
    if resp.status_code != 200:
        raise DaemonError(f"{resp.status_code} {resp.reason}")
    return resp


def _decode(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise DaemonError(f"read body: {exc}") from exc


def _ip_request(
    pod_name: str,
    pod_namespace: str,
    host_name: str,
    def_name: str,
    masters: Optional[List[str]],
) -> Dict[str, Any]:
    return {
        "pod": pod_name,
        "namespace": pod_namespace,
        "host": host_name,
        "def": def_name,
        "masters": list(masters) if masters is not None else None,
    }


def select_nics(
    daemon_ip: str,
    daemon_port: int,
    pod_name: str,
    pod_namespace: str,
    host_name: str,
    def_name: str,
    nic_set: NicArgs,
    master_nets: List[str],
) -> NICSelectResponse:
    """Ask the daemon which interfaces the pod should use."""
    daemon_port = daemon_port or DEFAULT_DAEMON_PORT
    daemon_ip = daemon_ip or DEFAULT_DAEMON_IP
    request = NICSelectRequest(
        pod_name=pod_name,
        pod_namespace=pod_namespace,
        host_name=host_name,
        net_attach_def_name=def_name,
        master_net_addrs=list(master_nets or []),
        nic_set=nic_set,
    )
    data = _decode(_post(daemon_ip, daemon_port, NIC_SELECT_PATH, request.to_dict()))
    if not isinstance(data, dict):
        raise DaemonError("response nothing")
    response = NICSelectResponse.from_dict(data)
    if not response.masters:
        raise DaemonError("response nothing")
    return response


def request_ip(
    daemon_ip: str,
    daemon_port: int,
    pod_name: str,
    pod_namespace: str,
    host_name: str,
    def_name: str,
    masters: List[str],
) -> List[IPResponse]:
    """Ask the daemon for one address on each of ``masters``."""
    payload = _ip_request(pod_name, pod_namespace, host_name, def_name, masters)
    data = _decode(_post(daemon_ip, daemon_port, ALLOCATE_PATH, payload))
    if data is not None and not isinstance(data, list):
        raise DaemonError("unexpected answer")
    responses = [
        IPResponse(
            interface_name=item.get("interface") or "",
            ip_address=item.get("ip") or "",
            vlan_block_size=item.get("block") or "",
        )
        for item in data or []
    ]
    if not responses:
        raise DaemonError("response nothing")
    return responses


def deallocate(
    daemon_ip: str,
    daemon_port: int,
    pod_name: str,
    pod_namespace: str,
    host_name: str,
    def_name: str,
) -> None:
    """Tell the daemon to release the pod's addresses."""
    payload = _ip_request(pod_name, pod_namespace, host_name, def_name, None)
    _post(daemon_ip, daemon_port, DEALLOCATE_PATH, payload)