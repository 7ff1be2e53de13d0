"""IP address allocation from the IP pools of a host."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from multinicd.kube import KubeClient, KubeError, label_selector
from multinicd.resources import Allocation, IPPool, IPPoolHandler

log = logging.getLogger(__name__)

SHIFT_BYTE_VAL = 256
HISTORY_TIMEOUT = 60  # seconds

HOSTNAME_LABEL_NAME = "hostname"
DEFNAME_LABEL_NAME = "netname"


@dataclass
class IPRequest:
    """Allocation or deallocation request sent by the CNI plugin."""

    pod_name: str = ""
    pod_namespace: str = ""
    host_name: str = ""
    net_attach_def_name: str = ""
    interface_names: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IPRequest":
        return cls(
            pod_name=data.get("pod") or "",
            pod_namespace=data.get("namespace") or "",
            host_name=data.get("host") or "",
            net_attach_def_name=data.get("def") or "",
            interface_names=list(data.get("masters") or []),
        )


@dataclass
class IPResponse:
    """One address handed out on one interface."""

    interface_name: str = ""
    ip_address: str = ""
    vlan_block_size: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "interface": self.interface_name,
            "ip": self.ip_address,
            "block": self.vlan_block_size,
        }


@dataclass(frozen=True)
class ExcludeRange:
    """Inclusive range of pool indexes that must never be handed out."""

    min_index: int
    max_index: int

    def contains(self, index: int) -> bool:
        return self.min_index <= index <= self.max_index


@dataclass
class AllocateRecord:
    """Remembers a recent deallocation so a quick re-allocation gets a new address."""

    started: float = field(default_factory=time.time)
    last_offset: int = 1

    def expired(self) -> bool:
        return time.time() - self.started > HISTORY_TIMEOUT


def find_available_index(indexes: Sequence[int], left_index: int) -> int:
    """First free index after ``left_index`` in a sorted list of used ones, or -1."""
    if not indexes:
        return -1
    if indexes[-1] - left_index == len(indexes):
        # every index in the range is taken
        return -1
    if indexes[0] != left_index + 1:
        return left_index + 1
    mid = len(indexes) // 2
    found = find_available_index(indexes[:mid], left_index)
    if found != -1:
        return found
    return find_available_index(indexes[mid:], left_index + mid)


def generate_allocate_indexes(
    allocations: Iterable[Allocation], max_index: int, excludes: Iterable[ExcludeRange]
) -> List[int]:
    """Sorted indexes taken either by allocations or by exclude ranges."""
    indexes = [allocation.index for allocation in allocations]
    for exclude in excludes:
        upper = min(exclude.max_index, max_index)
        indexes.extend(range(exclude.min_index, upper + 1))
    return sorted(indexes)


def value_to_addr(value: int) -> str:
    """Dotted IPv4 text of a 32-bit value."""
    octets = []
    for _ in range(4):
        octets.append(value % SHIFT_BYTE_VAL)
        value //= SHIFT_BYTE_VAL
    return ".".join(str(octet) for octet in reversed(octets))


def addr_to_value(address: str) -> int:
    """Numeric value of a dotted address; unparsable parts count as zero."""
    value = 0
    for part in address.split("."):
        try:
            number = int(part)
        except ValueError:
            number = 0
        value = value * SHIFT_BYTE_VAL + number
    return value


def _ip_value(address: str) -> int:
    return addr_to_value(address.split("/")[0])


def address_by_index(cidr: str, index: int) -> str:
    """Address ``index`` steps after the start of ``cidr``."""
    return value_to_addr(_ip_value(cidr) + index)


def _prefix_len(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        return 0


def get_exclude_ranges(cidr: str, excludes: Iterable[str]) -> List[ExcludeRange]:
    """Index ranges within ``cidr`` covered by the excluded addresses or networks."""
    start = _ip_value(cidr)
    ranges = []
    for exclude in excludes:
        start_index = _ip_value(exclude) - start
        if start_index < 0:
            log.info("exclude index %d < 0: %s", start_index, exclude)
            continue
        parts = exclude.split("/")
        block = _prefix_len(parts[1]) if len(parts) >= 2 else 32
        width = 2 ** (32 - block) - 1
        ranges.append(ExcludeRange(min_index=start_index, max_index=start_index + width))
    return ranges


def _vlan_block(spec: IPPool) -> str:
    return spec.vlan_cidr.partition("/")[2]


class Allocator:
    """Hands out and takes back pod addresses, recording them in IP pools."""

    def __init__(
        self, ippool_handler: IPPoolHandler, kube_client: Optional[KubeClient] = None
    ) -> None:
        self.ippool_handler = ippool_handler
        self.kube_client = kube_client
        self.deallocate_history: Dict[str, AllocateRecord] = {}
        self._lock = threading.Lock()
        self._history_lock = threading.Lock()

    def flush_expired_history(self) -> None:
        """Forget deallocation records older than the history timeout."""
        with self._history_lock:
            for pod_name, record in list(self.deallocate_history.items()):
                if record.expired():
                    log.info("Flush expired deallocateHistory: %s", pod_name)
                    del self.deallocate_history[pod_name]

    def _next_offset(self, pod_name: str) -> int:
        with self._history_lock:
            record = self.deallocate_history.get(pod_name)
            if record is None:
                return 1
            record.last_offset += 1
            log.info("Found anomaly allocating %s: %d", pod_name, record.last_offset)
            return record.last_offset

    def allocate(self, req: IPRequest) -> List[IPResponse]:
        """Allocate one address from each requested interface's pool."""
        self.flush_expired_history()
        offset = self._next_offset(req.pod_name)
        responses: List[IPResponse] = []
        start = time.monotonic()
        selector = label_selector(
            {HOSTNAME_LABEL_NAME: req.host_name, DEFNAME_LABEL_NAME: req.net_attach_def_name}
        )
        with self._lock:
            try:
                pools = self.ippool_handler.list_ippools(selector)
            except KubeError as exc:
                log.warning("Fail to list IPPool: %s", exc)
                return responses
            remaining = list(req.interface_names)
            for pool_name, spec in pools.items():
                if not remaining:
                    log.info("No more interfaces to assign")
                    break
                if spec.interface_name not in remaining:
                    log.info("Interface %s is not requested by %s", spec.interface_name, remaining)
                    continue
                remaining.remove(spec.interface_name)
                response = self._allocate_in_pool(pool_name, spec, req, offset)
                if response is not None:
                    responses.append(response)
        elapsed = int((time.monotonic() - start) * 1_000_000)
        log.info("Allocate elapsed: %d us", elapsed)
        return responses

    def _allocate_in_pool(
        self, pool_name: str, spec: IPPool, req: IPRequest, offset: int
    ) -> Optional[IPResponse]:
        pod_cidr = spec.pod_cidr
        _, sep, block_text = pod_cidr.partition("/")
        if not sep:
            log.warning("Invalid pod CIDR %r in %s", pod_cidr, pool_name)
            return None
        max_index = 2 ** (32 - _prefix_len(block_text)) - 2  # except broadcast address
        exclude_ranges = get_exclude_ranges(pod_cidr, spec.excludes)
        indexes = generate_allocate_indexes(spec.allocations, max_index, exclude_ranges)
        log.info("exclude %s, indexes %s", exclude_ranges, indexes)

        next_index = indexes[-1] + offset if indexes else offset
        if next_index >= max_index:
            next_index = find_available_index(indexes, 0)
            if next_index == -1:
                log.warning("Cannot get NextAddress for %s", pod_cidr)
                return None
        next_address = address_by_index(pod_cidr, next_index)

        new_allocation = Allocation(
            pod=req.pod_name, namespace=req.pod_namespace, index=next_index, address=next_address
        )
        log.info("%s", new_allocation)
        allocations = list(spec.allocations)
        insert_at = None
        for position, allocation in enumerate(allocations):
            if allocation.index > new_allocation.index:
                insert_at = position
        if insert_at is None:
            allocations.append(new_allocation)
        else:
            allocations.insert(insert_at, new_allocation)

        try:
            self.ippool_handler.patch_ippool(pool_name, allocations)
        except KubeError as exc:
            log.warning("Cannot patch IPPool: %s", exc)
            return None
        response = IPResponse(
            interface_name=spec.interface_name,
            ip_address=next_address,
            vlan_block_size=_vlan_block(spec),
        )
        log.info("Append response %s (ip=%s)", response, next_address)
        return response

    def deallocate(self, req: IPRequest) -> List[IPResponse]:
        """Release the pod's addresses and report what was released."""
        with self._history_lock:
            if req.pod_name not in self.deallocate_history:
                log.info("Add %s to deallocateHistory", req.pod_name)
                self.deallocate_history[req.pod_name] = AllocateRecord()

        responses: List[IPResponse] = []
        start = time.monotonic()
        selector = label_selector(
            {HOSTNAME_LABEL_NAME: req.host_name, DEFNAME_LABEL_NAME: req.net_attach_def_name}
        )
        with self._lock:
            try:
                pools = self.ippool_handler.list_ippools(selector)
            except KubeError as exc:
                log.warning("Fail to list IPPool: %s", exc)
                return responses
            for pool_name, spec in pools.items():
                if spec.net_attach_def_name != req.net_attach_def_name:
                    continue
                if req.host_name not in spec.host_name:
                    continue
                allocations = spec.allocations
                for position, allocation in enumerate(allocations):
                    if allocation.pod == req.pod_name and allocation.namespace == req.pod_namespace:
                        remains = allocations[:position] + allocations[position + 1 :]
                        try:
                            self.ippool_handler.patch_ippool(pool_name, remains)
                        except KubeError as exc:
                            log.warning("Cannot patch IPPool: %s", exc)
                        responses.append(
                            IPResponse(
                                interface_name=spec.interface_name,
                                ip_address=allocation.address,
                                vlan_block_size=_vlan_block(spec),
                            )
                        )
                        break
        elapsed = int((time.monotonic() - start) * 1_000_000)
        log.info("Deallocate elapsed: %d us", elapsed)
        return responses

    def _pod_exists(self, name: str, namespace: str) -> bool:
        if self.kube_client is None:
            raise RuntimeError("no Kubernetes client configured")
        try:
            self.kube_client.get_pod(name, namespace)
        except KubeError:
            return False
        return True

    def clean_hanging_allocations(self, host_name: str) -> None:
        """Drop allocations of pods that no longer exist; raises KubeError if pools cannot be listed."""
        pools = self.ippool_handler.list_ippools(label_selector({HOSTNAME_LABEL_NAME: host_name}))
        for pool_name, spec in pools.items():
            remains = [a for a in spec.allocations if self._pod_exists(a.pod, a.namespace)]
            try:
                self.ippool_handler.patch_ippool(pool_name, remains)
            except KubeError as exc:
                log.warning("Cannot patch IPPool: %s", exc)