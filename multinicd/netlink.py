"""Routing-netlink access for links, addresses, routes and policy rules (IPv4)."""

from __future__ import annotations

import errno
import ipaddress
import os
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

AF_NETLINK = getattr(socket, "AF_NETLINK", 16)
NETLINK_ROUTE = 0

NLMSG_ERROR = 2
NLMSG_DONE = 3

RTM_NEWLINK = 16
RTM_GETLINK = 18
RTM_NEWADDR = 20
RTM_GETADDR = 22
RTM_NEWROUTE = 24
RTM_DELROUTE = 25
RTM_GETROUTE = 26
RTM_NEWRULE = 32
RTM_DELRULE = 33
RTM_GETRULE = 34

NLM_F_REQUEST = 0x1
NLM_F_MULTI = 0x2
NLM_F_ACK = 0x4
NLM_F_DUMP = 0x300
NLM_F_EXCL = 0x200
NLM_F_CREATE = 0x400

IFLA_IFNAME = 3
IFLA_MTU = 4
IFA_ADDRESS = 1
IFA_LOCAL = 2
IFA_LABEL = 3
RTA_DST = 1
RTA_OIF = 4
RTA_GATEWAY = 5
RTA_PRIORITY = 6
RTA_PREFSRC = 7
RTA_TABLE = 15
FRA_DST = 1
FRA_SRC = 2
FRA_PRIORITY = 6
FRA_TABLE = 15

FR_ACT_TO_TBL = 1
RT_SCOPE_UNIVERSE = 0
RT_SCOPE_LINK = 253
RT_SCOPE_HOST = 254
RTPROT_BOOT = 3
RTN_UNICAST = 1
RT_TABLE_UNSPEC = 0
RT_TABLE_COMPAT = 252
RT_TABLE_MAIN = 254
RT_TABLE_LOCAL = 255
IFF_UP = 0x1

_NLMSGHDR = struct.Struct("=LHHLL")
_IFINFOMSG = struct.Struct("=BxHiII")
_IFADDRMSG = struct.Struct("=BBBBi")
_RTMSG = struct.Struct("=BBBBBBBBI")
_RTATTR = struct.Struct("=HH")
_U32 = struct.Struct("=I")
_I32 = struct.Struct("=i")
_RECV_SIZE = 1 << 18


class NetlinkError(OSError):
    """A netlink request failed."""


@dataclass(frozen=True)
class Link:
    index: int
    name: str
    flags: int = 0
    mtu: int = 0

    @property
    def is_up(self) -> bool:
        return bool(self.flags & IFF_UP)


@dataclass(frozen=True)
class Address:
    ip: str
    prefix_len: int
    link_index: int = 0
    label: str = ""

    @property
    def interface(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface(f"{self.ip}/{self.prefix_len}")

    @property
    def network(self) -> ipaddress.IPv4Network:
        return self.interface.network


@dataclass
class Route:
    link_index: int = 0
    dst: Optional[ipaddress.IPv4Network] = None
    gw: Optional[ipaddress.IPv4Address] = None
    table: int = 0
    scope: int = RT_SCOPE_UNIVERSE
    src: Optional[ipaddress.IPv4Address] = None
    priority: int = 0
    protocol: int = 0
    type: int = RTN_UNICAST

    def __str__(self) -> str:
        dst = self.dst if self.dst is not None else "<nil>"
        gw = self.gw if self.gw is not None else "<nil>"
        return f"{{Ifindex: {self.link_index} Dst: {dst} Gw: {gw} Table: {self.table}}}"


@dataclass
class Rule:
    table: int = 0
    src: Optional[ipaddress.IPv4Network] = None
    dst: Optional[ipaddress.IPv4Network] = None
    priority: int = -1
    action: int = FR_ACT_TO_TBL


def _align(length: int) -> int:
    return (length + 3) & ~3


def _pack_attrs(attrs: Iterable[Tuple[int, bytes]]) -> bytes:
    out = bytearray()
    for attr_type, value in attrs:
        length = _RTATTR.size + len(value)
        out += _RTATTR.pack(length, attr_type)
        out += value
        out += b"\0" * (_align(length) - length)
    return bytes(out)


def _parse_attrs(data: bytes) -> Dict[int, bytes]:
    attrs: Dict[int, bytes] = {}
    offset = 0
    while offset + _RTATTR.size <= len(data):
        length, attr_type = _RTATTR.unpack_from(data, offset)
        if length < _RTATTR.size:
            break
        attrs[attr_type & 0x3FFF] = data[offset + _RTATTR.size : offset + length]
        offset += _align(length)
    return attrs


def _build_message(msg_type: int, flags: int, seq: int, payload: bytes) -> bytes:
    return _NLMSGHDR.pack(_NLMSGHDR.size + len(payload), msg_type, flags, seq, 0) + payload


def _parse_messages(data: bytes) -> Iterator[Tuple[int, int, int, bytes]]:
    """Yield (type, flags, seq, body) for every message in a datagram."""
    offset = 0
    while offset + _NLMSGHDR.size <= len(data):
        length, msg_type, flags, seq, _pid = _NLMSGHDR.unpack_from(data, offset)
        if length < _NLMSGHDR.size:
            break
        yield msg_type, flags, seq, data[offset + _NLMSGHDR.size : offset + length]
        offset += _align(length)


def _check_error(body: bytes) -> None:
    """Raise NetlinkError for a non-zero error message; an acknowledgement passes."""
    (code,) = _I32.unpack_from(body)
    if code:
        err = -code
        raise NetlinkError(err, os.strerror(err))


def _network(raw: bytes, prefix_len: int) -> ipaddress.IPv4Network:
    return ipaddress.IPv4Network((raw, prefix_len), strict=False)


def _decode_link(body: bytes) -> Link:
    _family, _type, index, flags, _change = _IFINFOMSG.unpack_from(body)
    attrs = _parse_attrs(body[_IFINFOMSG.size :])
    name = attrs.get(IFLA_IFNAME, b"").split(b"\0", 1)[0].decode("utf-8", "replace")
    mtu = _U32.unpack(attrs[IFLA_MTU])[0] if len(attrs.get(IFLA_MTU, b"")) == 4 else 0
    return Link(index=index, name=name, flags=flags, mtu=mtu)


def _decode_addr(body: bytes) -> Optional[Address]:
    family, prefix_len, _flags, _scope, index = _IFADDRMSG.unpack_from(body)
    if family != socket.AF_INET:
        return None
    attrs = _parse_attrs(body[_IFADDRMSG.size :])
    raw = attrs.get(IFA_LOCAL) or attrs.get(IFA_ADDRESS)
    if raw is None or len(raw) != 4:
        return None
    label = attrs.get(IFA_LABEL, b"").split(b"\0", 1)[0].decode("utf-8", "replace")
    return Address(
        ip=str(ipaddress.IPv4Address(raw)), prefix_len=prefix_len, link_index=index, label=label
    )


def _encode_route(route: Route) -> bytes:
    table = route.table or RT_TABLE_MAIN
    header = _RTMSG.pack(
        socket.AF_INET,
        route.dst.prefixlen if route.dst is not None else 0,
        0,
        0,
        table if table < 256 else RT_TABLE_UNSPEC,
        route.protocol,
        route.scope,
        route.type,
        0,
    )
    attrs: List[Tuple[int, bytes]] = []
    if route.dst is not None:
        attrs.append((RTA_DST, route.dst.network_address.packed))
    if route.src is not None:
        attrs.append((RTA_PREFSRC, route.src.packed))
    if route.gw is not None:
        attrs.append((RTA_GATEWAY, route.gw.packed))
    if route.link_index:
        attrs.append((RTA_OIF, _U32.pack(route.link_index)))
    if route.priority:
        attrs.append((RTA_PRIORITY, _U32.pack(route.priority)))
    attrs.append((RTA_TABLE, _U32.pack(table)))
    return header + _pack_attrs(attrs)


def _decode_route(body: bytes) -> Optional[Route]:
    family, dst_len, _src_len, _tos, table, protocol, scope, rtype, _flags = _RTMSG.unpack_from(
        body
    )
    if family != socket.AF_INET:
        return None
    attrs = _parse_attrs(body[_RTMSG.size :])
    if RTA_TABLE in attrs:
        table = _U32.unpack(attrs[RTA_TABLE])[0]
    return Route(
        link_index=_U32.unpack(attrs[RTA_OIF])[0] if RTA_OIF in attrs else 0,
        dst=_network(attrs[RTA_DST], dst_len) if RTA_DST in attrs else None,
        gw=ipaddress.IPv4Address(attrs[RTA_GATEWAY]) if RTA_GATEWAY in attrs else None,
        table=table,
        scope=scope,
        src=ipaddress.IPv4Address(attrs[RTA_PREFSRC]) if RTA_PREFSRC in attrs else None,
        priority=_U32.unpack(attrs[RTA_PRIORITY])[0] if RTA_PRIORITY in attrs else 0,
        protocol=protocol,
        type=rtype,
    )


def _encode_rule(rule: Rule) -> bytes:
    header = _RTMSG.pack(
        socket.AF_INET,
        rule.dst.prefixlen if rule.dst is not None else 0,
        rule.src.prefixlen if rule.src is not None else 0,
        0,
        rule.table if 0 < rule.table < 256 else RT_TABLE_UNSPEC,
        0,
        0,
        rule.action,
        0,
    )
    attrs: List[Tuple[int, bytes]] = []
    if rule.dst is not None:
        attrs.append((FRA_DST, rule.dst.network_address.packed))
    if rule.src is not None:
        attrs.append((FRA_SRC, rule.src.network_address.packed))
    if rule.priority >= 0:
        attrs.append((FRA_PRIORITY, _U32.pack(rule.priority)))
    if rule.table > 0:
        attrs.append((FRA_TABLE, _U32.pack(rule.table)))
    return header + _pack_attrs(attrs)


def _decode_rule(body: bytes) -> Optional[Rule]:
    family, dst_len, src_len, _tos, table, _r1, _r2, action, _flags = _RTMSG.unpack_from(body)
    if family != socket.AF_INET:
        return None
    attrs = _parse_attrs(body[_RTMSG.size :])
    if FRA_TABLE in attrs:
        table = _U32.unpack(attrs[FRA_TABLE])[0]
    return Rule(
        table=table,
        src=_network(attrs[FRA_SRC], src_len) if FRA_SRC in attrs else None,
        dst=_network(attrs[FRA_DST], dst_len) if FRA_DST in attrs else None,
        priority=_U32.unpack(attrs[FRA_PRIORITY])[0] if FRA_PRIORITY in attrs else -1,
        action=action,
    )


class Netlink:
    """A routing-netlink socket; use as a context manager to close it."""

    def __init__(self) -> None:
        try:
            self._sock = socket.socket(AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE)
            self._sock.bind((0, 0))
        except OSError as exc:
            raise NetlinkError(exc.errno or errno.EIO, f"cannot open netlink socket: {exc}") from exc
        self._seq = 0
        self._lock = threading.Lock()

    def _request(self, msg_type: int, flags: int, payload: bytes) -> List[Tuple[int, bytes]]:
        with self._lock:
            self._seq += 1
            seq = self._seq
            self._sock.send(_build_message(msg_type, flags | NLM_F_REQUEST, seq, payload))
            replies: List[Tuple[int, bytes]] = []
            while True:
                data = self._sock.recv(_RECV_SIZE)
                if not data:
                    raise NetlinkError(errno.EIO, "netlink socket closed")
                for reply_type, _flags, reply_seq, body in _parse_messages(data):
                    if reply_seq != seq:
                        continue
                    if reply_type == NLMSG_DONE:
                        return replies
                    if reply_type == NLMSG_ERROR:
                        _check_error(body)
                        return replies
                    replies.append((reply_type, body))

    def _dump(self, msg_type: int, payload: bytes) -> List[bytes]:
        return [body for _t, body in self._request(msg_type, NLM_F_DUMP, payload)]

    def _links(self) -> List[Link]:
        payload = _IFINFOMSG.pack(socket.AF_UNSPEC, 0, 0, 0, 0)
        return [_decode_link(body) for body in self._dump(RTM_GETLINK, payload)]

    def link_by_name(self, name: str) -> Link:
        for link in self._links():
            if link.name == name:
                return link
        raise NetlinkError(errno.ENODEV, f"Link not found: {name}")

    def link_by_index(self, index: int) -> Link:
        for link in self._links():
            if link.index == index:
                return link
        raise NetlinkError(errno.ENODEV, f"Link not found: index {index}")

    def addr_list(self, link: Optional[Link]) -> List[Address]:
        """IPv4 addresses, of one link or of all when ``link`` is None."""
        payload = _IFADDRMSG.pack(socket.AF_INET, 0, 0, 0, 0)
        addrs = (_decode_addr(body) for body in self._dump(RTM_GETADDR, payload))
        return [a for a in addrs if a is not None and (link is None or a.link_index == link.index)]

    def _routes(self) -> List[Route]:
        payload = _RTMSG.pack(socket.AF_INET, 0, 0, 0, 0, 0, 0, 0, 0)
        routes = (_decode_route(body) for body in self._dump(RTM_GETROUTE, payload))
        return [r for r in routes if r is not None]

    def route_list(self, link: Optional[Link]) -> List[Route]:
        """IPv4 routes of the main table, through one link or through any."""
        return [
            r
            for r in self._routes()
            if r.table == RT_TABLE_MAIN and (link is None or r.link_index == link.index)
        ]

    def route_list_table(self, table_id: int) -> List[Route]:
        return [r for r in self._routes() if r.table == table_id]

    def route_add(self, route: Route) -> None:
        if not route.protocol:
            route = Route(**{**route.__dict__, "protocol": RTPROT_BOOT})
        flags = NLM_F_ACK | NLM_F_CREATE | NLM_F_EXCL
        self._request(RTM_NEWROUTE, flags, _encode_route(route))

    def route_del(self, route: Route) -> None:
        self._request(RTM_DELROUTE, NLM_F_ACK, _encode_route(route))

    def rule_list(self) -> List[Rule]:
        payload = _RTMSG.pack(socket.AF_INET, 0, 0, 0, 0, 0, 0, 0, 0)
        rules = (_decode_rule(body) for body in self._dump(RTM_GETRULE, payload))
        return [r for r in rules if r is not None]

    def rule_add(self, rule: Rule) -> None:
        flags = NLM_F_ACK | NLM_F_CREATE | NLM_F_EXCL
        self._request(RTM_NEWRULE, flags, _encode_rule(rule))

    def rule_del(self, rule: Rule) -> None:
        self._request(RTM_DELRULE, NLM_F_ACK, _encode_rule(rule))

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "Netlink":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()