"""Route and layer-3 configuration requests."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from multinicd.netlink import RT_SCOPE_UNIVERSE, Link, Netlink, NetlinkError, Route
from multinicd.rttable import RouteTables

log = logging.getLogger(__name__)

Body = Union[bytes, str]


@dataclass
class HostRoute:
    subnet: str = ""
    next_hop: str = ""
    interface_name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"net": self.subnet, "via": self.next_hop, "iface": self.interface_name}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HostRoute":
        return cls(
            subnet=data.get("net") or "",
            next_hop=data.get("via") or "",
            interface_name=data.get("iface") or "",
        )


@dataclass
class L3ConfigRequest:
    name: str = ""
    subnet: str = ""
    routes: List[HostRoute] = field(default_factory=list)
    force: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "subnet": self.subnet,
            "routes": [r.to_dict() for r in self.routes],
            "force": self.force,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "L3ConfigRequest":
        return cls(
            name=data.get("name") or "",
            subnet=data.get("subnet") or "",
            routes=[HostRoute.from_dict(r) for r in data.get("routes") or []],
            force=bool(data.get("force", False)),
        )


@dataclass
class RouteUpdateResponse:
    success: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "msg": self.message}


def _load_object(body: Body) -> Mapping[str, Any]:
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("request body is not a JSON object")
    return data


def _parse_ip(text: str) -> Optional[ipaddress.IPv4Address]:
    try:
        return ipaddress.IPv4Address(text)
    except ValueError:
        return None


def _parse_cidr(text: str) -> Optional[ipaddress.IPv4Network]:
    try:
        return ipaddress.IPv4Network(text, strict=False)
    except ValueError:
        return None


class Router:
    """Applies host routes and per-network routing tables."""

    def __init__(self, netlink: Netlink, tables: Optional[RouteTables] = None) -> None:
        self.netlink = netlink
        self.tables = tables if tables is not None else RouteTables(netlink)

    def _build_route(self, host_route: HostRoute, link: Link, table: int = 0) -> Route:
        return Route(
            link_index=link.index,
            scope=RT_SCOPE_UNIVERSE,
            dst=_parse_cidr(host_route.subnet),
            gw=_parse_ip(host_route.next_hop),
            table=table,
        )

    def _route_exists(self, route: Route, link: Link) -> bool:
        try:
            routes = self.netlink.route_list(link)
        except NetlinkError:
            return False
        for existing in routes:
            if None in (existing.gw, route.gw, existing.dst, route.dst):
                continue
            if str(existing.dst) == str(route.dst) and str(existing.gw) == str(route.gw):
                return True
        return False

    def _routes_from_request(
        self, req: L3ConfigRequest, add_if_not_exists: bool
    ) -> Tuple[int, Dict[Link, List[Route]]]:
        if req.force:
            try:
                old_id = self.tables.get_table_id(req.name, req.subnet, False)
            except (OSError, ValueError) as exc:
                log.info("cannot delete %s: %s", req.name, exc)
            else:
                self._delete_l3_config(req.name, old_id)
                log.info("force delete %s (%d)", req.name, old_id)

        table_id = self.tables.get_table_id(req.name, req.subnet, add_if_not_exists)
        dev_routes: Dict[Link, List[Route]] = {}
        if table_id == -1:
            return table_id, dev_routes
        for host_route in req.routes:
            try:
                link = self.netlink.link_by_name(host_route.interface_name)
            except NetlinkError:
                continue
            dev_routes.setdefault(link, []).append(self._build_route(host_route, link, table_id))
        return table_id, dev_routes

    def _delete_l3_config(self, table_name: str, table_id: int) -> Tuple[bool, str]:
        if table_id == -1:
            success, message = False, "Failed to get tableID"
        else:
            try:
                self.tables.delete_table(table_name, table_id)
            except (OSError, ValueError) as exc:
                success, message = False, str(exc)
            else:
                success, message = True, ""
        log.info("Delete L3 config %s (%s): %s", table_name, success, message)
        return success, message

    def apply_l3_config(self, body: Body) -> RouteUpdateResponse:
        """Create the network's table if needed and add its routes."""
        try:
            req = L3ConfigRequest.from_dict(_load_object(body))
            table_id, dev_routes = self._routes_from_request(req, True)
        except (OSError, ValueError, TypeError) as exc:
            log.info("Apply L3 config failed: %s", exc)
            return RouteUpdateResponse(success=False, message=f"AddRoutesError {exc};")
        messages: List[str] = []
        success = True
        for link, routes in dev_routes.items():
            for route in routes:
                exists = self._route_exists(route, link)
                log.info("Add route %s; (%s)", route, exists)
                if exists:
                    messages.append("Route exists")
                    success = False
                    continue
                try:
                    self.netlink.route_add(route)
                except NetlinkError as exc:
                    messages.append(f"AddRouteError {exc};")
                    success = False
                else:
                    messages.append(f"Add route {route};")
        log.info("Apply L3 config %d; (%s)", table_id, success)
        return RouteUpdateResponse(success=success, message="".join(messages))

    def delete_l3_config(self, body: Body) -> RouteUpdateResponse:
        """Remove the network's table, routes and rule."""
        name, table_id = "", -1
        try:
            req = L3ConfigRequest.from_dict(_load_object(body))
        except (ValueError, TypeError):
            pass
        else:
            name = req.name
            try:
                table_id, _ = self._routes_from_request(req, False)
            except (OSError, ValueError):
                table_id = -1
        success, message = self._delete_l3_config(name, table_id)
        return RouteUpdateResponse(success=success, message=message)

    def _route_from_request(self, body: Body) -> Tuple[Route, Link]:
        host_route = HostRoute.from_dict(_load_object(body))
        link = self.netlink.link_by_name(host_route.interface_name)
        return self._build_route(host_route, link), link

    def add_route(self, body: Body) -> RouteUpdateResponse:
        """Add one host route, replacing a different route to the same destination."""
        try:
            route, link = self._route_from_request(body)
        except (OSError, ValueError, TypeError) as exc:
            return RouteUpdateResponse(success=False, message=f"GetRouteError {exc};")
        exists = self._route_exists(route, link)
        log.info("Add route %s; (%s)", route, exists)
        if exists:
            return RouteUpdateResponse(success=False, message="Route exists")
        try:
            self.netlink.route_del(Route(scope=RT_SCOPE_UNIVERSE, dst=route.dst))
        except NetlinkError:
            pass
        try:
            self.netlink.route_add(route)
        except NetlinkError as exc:
            return RouteUpdateResponse(success=False, message=f"AddRouteError {exc};")
        log.info("Successfully add route %s", route)
        return RouteUpdateResponse(success=True, message="")

    def delete_route(self, body: Body) -> RouteUpdateResponse:
        """Delete the route to the request's destination."""
        try:
            route, _ = self._route_from_request(body)
        except (OSError, ValueError, TypeError) as exc:
            return RouteUpdateResponse(success=False, message=f"GetRouteError {exc};")
        try:
            self.netlink.route_del(Route(scope=RT_SCOPE_UNIVERSE, dst=route.dst))
        except NetlinkError as exc:
            return RouteUpdateResponse(success=False, message=f"DeleteRouteError {exc};")
        return RouteUpdateResponse(success=True, message=f"Delete route {route};")

    def get_routes(self, table_id: int) -> List[Route]:
        """IPv4 routes in the given table."""
        return self.netlink.route_list_table(table_id)