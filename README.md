# multinicd

`multinicd` is a library with the parts a per-node daemon needs in a
multi-NIC container networking setup on Kubernetes:

- **IP allocation** (`multinicd.allocator`) – `Allocator` hands out addresses
  from `IPPool` custom resources, skips excluded ranges and avoids handing a
  pod the same address again right after it released it.
- **NIC selection** (`multinicd.selector`, `multinicd.strategies`,
  `multinicd.topology`) – `NicSelector` picks which host interfaces a pod
  attaches to. Devices the pod already holds through a device plugin (read
  from the kubelet checkpoint) come first; otherwise the network's attachment
  policy decides: `none`, `costOpt`, `perfOpt`, `devClass` or `topology`
  (NUMA-aware, using an NCCL topology file or sysfs).
- **L3 routing** (`multinicd.router`, `multinicd.rttable`, `multinicd.netlink`)
  – `Router` adds and removes host routes and per-network routing tables and
  policy rules through a small routing-netlink client, and keeps the
  `rt_tables` file up to date.
- **Interface discovery** (`multinicd.iface`, `multinicd.pci`) –
  `InterfaceInspector` reports the host's secondary interfaces: name, network
  address, host IP, PCI vendor/product and PCI address.
- **Kubernetes access** (`multinicd.kube`, `multinicd.resources`) – a thin
  JSON client (`KubeClient`, built from a kubeconfig or the in-cluster service
  account) and typed handlers for `IPPool`, `MultiNicNetwork`,
  `NetworkAttachmentDefinition`, `DeviceClass` and `HostInterface` resources.
- **Client** (`multinicd.client`) – `select_nics`, `request_ip` and
  `deallocate` call a daemon's `/select`, `/allocate` and `/deallocate`
  endpoints over HTTP.

## Installation

```
pip install multinicd
```

Linux is required for the netlink and sysfs features.

## Examples

The index search the allocator uses:

```python
from multinicd.allocator import ExcludeRange, find_available_index, generate_allocate_indexes
from multinicd.resources import Allocation

allocations = [Allocation(pod="", namespace="", index=i, address="") for i in (1, 2, 3, 8)]
indexes = generate_allocate_indexes(allocations, 20, [ExcludeRange(4, 6)])
find_available_index(indexes, 0)   # -> 7
```

Calling a running daemon the way the CNI plugin does:

```python
from multinicd.client import NicArgs, request_ip, select_nics

selected = select_nics("10.0.0.5", 11000, "pod-a", "default", "node1",
                       "multi-nic-sample", NicArgs(), ["10.0.0.0/16"])
ips = request_ip("10.0.0.5", 11000, "pod-a", "default", "node1",
                 "multi-nic-sample", selected.masters)
```

Both raise `DaemonError` when the daemon cannot be reached, answers with a
status other than 200, or returns nothing.

Applying an L3 configuration (the body is the JSON the daemon receives):

```python
from multinicd.netlink import Netlink
from multinicd.router import Router

with Netlink() as nl:
    response = Router(nl).apply_l3_config(
        b'{"name": "l3net", "subnet": "192.168.0.0/16", '
        b'"routes": [{"net": "172.23.0.64/26", "via": "10.244.1.6", "iface": "ens10"}]}'
    )
    print(response.to_dict())   # {"success": ..., "msg": ...}
```

## Environment variables

| Variable        | Meaning                                                               |
|-----------------|-----------------------------------------------------------------------|
| `RT_TABLE_PATH` | Routing table names file (default `/etc/iproute2/rt_tables`)          |
| `TEST_MODE`     | When `true`, `multinicd.iface.device_exists` treats every name as existing |

## What this package does not include

There is no HTTP server and no command to start one. The package provides the
allocator, selector, router and interface inspector that such a server would
call, and the client functions that talk to one, but wiring them to HTTP
routes, reading the node name and port, and running the service are left to
the application that uses it.

## Development

```
pip install -e .[test]
pytest
```