"""Named policy-routing tables kept in an rt_tables file plus their rules."""

from __future__ import annotations

import errno
import ipaddress
import logging
import os
from typing import List, Optional, Tuple

from multinicd.netlink import Netlink, NetlinkError, Rule

log = logging.getLogger(__name__)

MIX_TABLE_INDEX = 100
DEFAULT_RT_TABLE_PATH = "/etc/iproute2/rt_tables"
RT_TABLE_PATH_ENV = "RT_TABLE_PATH"


def rt_table_path() -> str:
    """The rt_tables file named by the environment, or the system default."""
    path = os.environ.get(RT_TABLE_PATH_ENV)
    return path if path else DEFAULT_RT_TABLE_PATH


def table_line(table_id: int, table_name: str) -> str:
    """The line that declares a table in the rt_tables file."""
    return f"{table_id}\t{table_name}\n"


def _parse_subnet(subnet: str) -> Optional[ipaddress.IPv4Network]:
    try:
        return ipaddress.IPv4Network(subnet, strict=False)
    except ValueError:
        return None


class RouteTables:
    """Looks up, creates and removes named routing tables."""

    def __init__(self, netlink: Netlink, path: Optional[str] = None) -> None:
        self.netlink = netlink
        self.path = path or rt_table_path()

    def table_ids(self, table_name: str) -> Tuple[int, List[int]]:
        """ID of ``table_name`` (-1 if absent) and the other IDs from 100 up."""
        found = -1
        reserved: List[int] = []
        try:
            with open(self.path, encoding="utf-8") as fh:
                lines = fh.readlines()
        except OSError as exc:
            log.warning("Cannot open rt_tables file %s: %s", self.path, exc)
            raise
        for line in lines:
            fields = line.split()
            if len(fields) < 2 or "#" in fields[0]:
                continue
            try:
                table_id = int(fields[0])
            except ValueError as exc:
                log.warning("Cannot parse table ID %s: %s", fields[0], exc)
                continue
            if fields[1] == table_name:
                found = table_id
            elif table_id >= MIX_TABLE_INDEX:
                reserved.append(table_id)
        return found, reserved

    def get_table_id(self, table_name: str, subnet: str, add_if_not_exists: bool) -> int:
        """Table ID of ``table_name``, creating the table and its rule when asked.

        Returns -1 when the table does not exist and is not to be added.
        """
        found, reserved = self.table_ids(table_name)
        if add_if_not_exists and found == -1:
            found = self._add_table(table_name, reserved)
            try:
                self._delete_rule(found)
            except (OSError, ValueError):
                pass
            self._add_rule(subnet, found)
        elif found != -1 and not self._rule_exists(found):
            self._add_rule(subnet, found)
        return found

    def delete_table(self, table_name: str, table_id: int) -> None:
        """Flush the table's routes, drop its line and delete its rule."""
        self._delete_routes(table_id)
        try:
            with open(self.path, encoding="utf-8") as fh:
                content = fh.read()
        except OSError as exc:
            log.warning("failed to read %s: %s", self.path, exc)
            raise
        updated = content.replace(table_line(table_id, table_name), "", 1)
        try:
            with open(self.path, "w", encoding="utf-8") as fh:
                fh.write(updated)
        except OSError as exc:
            log.warning("failed to update %s: %s", self.path, exc)
        self._delete_rule(table_id)

    def _add_table(self, table_name: str, reserved: List[int]) -> int:
        found = -1
        for position, table_id in enumerate(sorted(reserved)):
            if position + MIX_TABLE_INDEX != table_id:
                found = position + MIX_TABLE_INDEX
                break
        if found == -1:
            raise OSError(errno.ENOSPC, "No available ID")
        try:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(table_line(found, table_name))
        except OSError as exc:
            raise OSError(exc.errno, f"failed to add table: {exc} ({self.path})") from exc
        return found

    def _add_rule(self, subnet: str, table_id: int) -> None:
        if table_id == -1:
            raise ValueError("add rule tableID = -1")
        rule = Rule(table=table_id, src=_parse_subnet(subnet))
        try:
            self.netlink.rule_add(rule)
        except NetlinkError as exc:
            log.warning("add rule %s: %s", rule, exc)
            raise
        log.info("add rule %s", rule)

    def _delete_rule(self, table_id: int) -> None:
        if table_id == -1:
            raise ValueError("delete rule tableID = -1")
        rule = Rule(table=table_id)
        try:
            self.netlink.rule_del(rule)
        except NetlinkError as exc:
            log.info("delete rule %s: %s", rule, exc)
            raise
        log.info("delete rule %s", rule)

    def _rule_exists(self, table_id: int) -> bool:
        try:
            rules = self.netlink.rule_list()
        except NetlinkError:
            return False
        return any(rule.table == table_id for rule in rules)

    def _delete_routes(self, table_id: int) -> None:
        routes = self.netlink.route_list_table(table_id)
        deleted = 0
        for route in routes:
            if route.table != table_id:
                continue
            try:
                self.netlink.route_del(route)
            except NetlinkError:
                continue
            deleted += 1
        log.info("delete %d of %d routes from table %d", deleted, len(routes), table_id)