import errno
import ipaddress
import struct

import pytest

from multinicd.netlink import (
    NLMSG_DONE,
    RT_TABLE_LOCAL,
    RTM_NEWROUTE,
    RTPROT_BOOT,
    Address,
    Netlink,
    NetlinkError,
    Route,
    Rule,
    _build_message,
    _check_error,
    _decode_route,
    _decode_rule,
    _encode_route,
    _encode_rule,
    _pack_attrs,
    _parse_attrs,
    _parse_messages,
)


def test_attrs_round_trip_and_alignment():
    attrs = [(3, b"ens10\0"), (4, b"\x01\x02"), (15, struct.pack("=I", 100))]
    packed = _pack_attrs(attrs)
    assert len(packed) % 4 == 0
    assert _parse_attrs(packed) == dict(attrs)


def test_message_round_trip():
    payload = b"\x02" + b"\0" * 11
    data = _build_message(RTM_NEWROUTE, 0x5, 42, payload) + _build_message(NLMSG_DONE, 0, 42, b"")
    messages = list(_parse_messages(data))
    assert messages == [(RTM_NEWROUTE, 0x5, 42, payload), (NLMSG_DONE, 0, 42, b"")]


def test_error_message_raises_and_ack_passes():
    with pytest.raises(NetlinkError) as info:
        _check_error(struct.pack("=i", -errno.EPERM) + bytes(16))
    assert info.value.errno == errno.EPERM
    assert _check_error(struct.pack("=i", 0) + bytes(16)) is None


def test_route_encode_decode_round_trip():
    route = Route(
        link_index=3,
        dst=ipaddress.ip_network("172.23.0.64/26"),
        gw=ipaddress.ip_address("10.244.1.6"),
        table=100,
        protocol=RTPROT_BOOT,
    )
    assert _decode_route(_encode_route(route)) == route


def test_route_with_large_table_round_trip():
    route = Route(link_index=2, dst=ipaddress.ip_network("192.168.0.0/16"), table=1000)
    assert _decode_route(_encode_route(route)).table == 1000


def test_rule_encode_decode_round_trip():
    rule = Rule(table=100, src=ipaddress.ip_network("192.168.0.0/16"), priority=-1)
    assert _decode_rule(_encode_rule(rule)) == rule


def test_route_str_mentions_destination():
    route = Route(link_index=3, dst=ipaddress.ip_network("172.23.0.64/26"))
    assert "172.23.0.64/26" in str(route)


def test_address_network():
    addr = Address(ip="10.244.0.1", prefix_len=24, link_index=2)
    assert addr.network == ipaddress.ip_network("10.244.0.0/24")


def test_link_by_name_and_index_round_trip():
    with Netlink() as nl:
        lo = nl.link_by_name("lo")
        assert lo.name == "lo"
        assert nl.link_by_index(lo.index) == lo
        assert lo.is_up


def test_missing_link_raises():
    with Netlink() as nl:
        with pytest.raises(NetlinkError) as info:
            nl.link_by_name("no-such-dev0")
    assert info.value.errno == errno.ENODEV


def test_loopback_has_address():
    with Netlink() as nl:
        lo = nl.link_by_name("lo")
        addrs = nl.addr_list(lo)
    assert "127.0.0.1" in {a.ip for a in addrs}
    assert all(a.link_index == lo.index for a in addrs)


def test_local_table_rule_and_routes():
    with Netlink() as nl:
        rules = nl.rule_list()
        local_routes = nl.route_list_table(RT_TABLE_LOCAL)
    assert any(rule.table == RT_TABLE_LOCAL for rule in rules)
    assert all(route.table == RT_TABLE_LOCAL for route in local_routes)
    assert local_routes