import json

import pytest
import responses

from multinicd.kube import KubeClient, KubeConfig, KubeError
from multinicd.resources import (
    RESOURCE_ANNOTATION,
    Allocation,
    DeviceClassHandler,
    HostInterfaceHandler,
    InterfaceInfo,
    IPPool,
    IPPoolHandler,
    MultiNicNetworkHandler,
    NetAttachDefHandler,
)

SERVER = "https://kube.example.com"
API = SERVER + "/apis/multinic.fms.io/v1"


@pytest.fixture
def client():
    return KubeClient(KubeConfig(server=SERVER, token="token"))


@pytest.fixture
def mocked():
    with responses.RequestsMock() as rsps:
        yield rsps


def test_allocation_round_trip():
    alloc = Allocation(pod="sample-pod", namespace="default", index=3, address="10.244.0.3")
    assert Allocation.from_dict(alloc.to_dict()) == alloc
    assert set(alloc.to_dict()) == {"pod", "namespace", "index", "address"}


def test_ippool_from_dict():
    pool = IPPool.from_dict(
        {
            "podCIDR": "192.168.0.0/26",
            "vlanCIDR": "192.168.0.0/18",
            "netAttachDef": "multi-nic-sample",
            "hostName": "master0",
            "interfaceName": "eth1",
            "excludes": ["192.168.0.1/32"],
            "allocations": [{"pod": "p", "namespace": "default", "index": 1, "address": "a"}],
        }
    )
    assert pool.pod_cidr == "192.168.0.0/26"
    assert pool.interface_name == "eth1"
    assert pool.excludes == ["192.168.0.1/32"]
    assert pool.allocations == [Allocation("p", "default", 1, "a")]


def test_ippool_defaults_when_empty():
    pool = IPPool.from_dict({})
    assert pool.allocations == []
    assert pool.excludes == []


def test_interface_info_round_trip():
    info = InterfaceInfo("test-eth1", "10.244.0.0/24", "10.244.0.1", "1d0f", "efa1", "0000:08:00.0")
    assert InterfaceInfo.from_dict(info.to_dict()) == info


def test_pool_name(client):
    assert IPPoolHandler(client).pool_name("net", "10.0.0.0/24") == "net-10.0.0.0-24"


def test_list_ippools(client, mocked):
    mocked.add(
        responses.GET,
        API + "/ippools",
        json={
            "items": [
                {"metadata": {"name": "pool-a"}, "spec": {"interfaceName": "eth1"}},
                {"metadata": {"name": "pool-b"}, "spec": {"interfaceName": "eth2"}},
            ]
        },
    )
    pools = IPPoolHandler(client).list_ippools("hostname=master0")
    assert {name: p.interface_name for name, p in pools.items()} == {
        "pool-a": "eth1",
        "pool-b": "eth2",
    }


def test_list_ippools_error(client, mocked):
    mocked.add(responses.GET, API + "/ippools", status=500)
    with pytest.raises(KubeError):
        IPPoolHandler(client).list_ippools(None)


def test_patch_ippool_body(client, mocked):
    mocked.add(responses.PATCH, API + "/ippools/pool-a", json={})
    alloc = Allocation("p", "default", 2, "10.0.0.2")
    IPPoolHandler(client).patch_ippool("pool-a", [alloc])
    body = json.loads(mocked.calls[0].request.body)
    assert body == [{"op": "replace", "path": "/spec/allocations", "value": [alloc.to_dict()]}]


def test_multinicnetwork_spec(client, mocked):
    mocked.add(
        responses.GET,
        API + "/namespaces/default/multinicnetworks/net",
        json={"spec": {"attachPolicy": {"strategy": "topology"}, "masterNets": ["10.0.0.0/16"]}},
    )
    spec = MultiNicNetworkHandler(client).get_spec("net", "default")
    assert spec.policy.strategy == "topology"
    assert spec.master_net_addrs == ["10.0.0.0/16"]


def test_multinicnetwork_missing_raises(client, mocked):
    mocked.add(responses.GET, API + "/namespaces/default/multinicnetworks/net", status=404)
    with pytest.raises(KubeError):
        MultiNicNetworkHandler(client).get_spec("net", "default")


def test_resource_names(client, mocked):
    url = SERVER + "/apis/k8s.cni.cncf.io/v1/namespaces/default/network-attachment-definitions/net"
    mocked.add(
        responses.GET,
        url,
        json={"metadata": {"annotations": {RESOURCE_ANNOTATION: "res/a,res/b"}}},
    )
    assert NetAttachDefHandler(client).get_resource_names("net", "default") == ["res/a", "res/b"]


def test_resource_names_on_error_is_empty(client, mocked):
    url = SERVER + "/apis/k8s.cni.cncf.io/v1/namespaces/default/network-attachment-definitions/net"
    mocked.add(responses.GET, url, status=404)
    assert NetAttachDefHandler(client).get_resource_names("net", "default") == []


def test_device_class(client, mocked):
    mocked.add(
        responses.GET,
        API + "/deviceclasses/highspeed",
        json={"spec": {"ids": [{"vendor": "1d0f", "products": ["efa1"]}]}},
    )
    spec = DeviceClassHandler(client).get_spec("highspeed")
    assert [(d.vendor, d.products) for d in spec.device_ids] == [("1d0f", ["efa1"])]


def test_host_interfaces(client, mocked):
    info = InterfaceInfo("test-eth1", "10.244.0.0/24", "10.244.0.1", "1d0f", "efa1", "0000:08:00.0")
    mocked.add(
        responses.GET,
        API + "/hostinterfaces/master0",
        json={"spec": {"interfaces": [info.to_dict()]}},
    )
    assert HostInterfaceHandler(client, "master0").get_host_interfaces() == [info]


def test_host_interfaces_missing_field(client, mocked):
    mocked.add(responses.GET, API + "/hostinterfaces/master0", json={"spec": {}})
    with pytest.raises(KubeError, match="interfaces"):
        HostInterfaceHandler(client, "master0").get_host_interfaces()


def test_host_interfaces_bad_value(client, mocked):
    mocked.add(
        responses.GET, API + "/hostinterfaces/master0", json={"spec": {"interfaces": "x"}}
    )
    with pytest.raises(KubeError, match="cannot parse"):
        HostInterfaceHandler(client, "master0").get_host_interfaces()