# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/inventory/inventory.py
from __future__ import annotations

import ipaddress
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from ..config.loader import load_topology, parse_topology
from ..config.models import HostSpec, TopologyConfig
from ..core.errors import ConfigError, InvalidInventory
from .models import Host, HostStatus

log = logging.getLogger("kubeweave")

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_HOST_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

InventorySource = Union[TopologyConfig, Mapping[str, Any], str, Path]


def is_valid_address(address: str) -> bool:
    """IPv4/IPv6 literal or an RFC 1123 hostname."""
    if not address:
        return False
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        pass
    if len(address) > 253:
        return False
    labels = address.rstrip(".").split(".")
    if all(label.isdigit() for label in labels):
        return False  # looks like a broken IPv4 literal
    return all(_HOSTNAME_LABEL.match(label) for label in labels)


class Inventory:
    """Hosts in declaration order, indexed by name and by role tag."""

    def __init__(self, hosts: Iterable[Host]):
        self._hosts: Dict[str, Host] = {}
        for h in hosts:
            if h.name in self._hosts:
                raise InvalidInventory(f"Duplicate host name '{h.name}'")
            self._hosts[h.name] = h

    def __iter__(self) -> Iterator[Host]:
        return iter(self._hosts.values())

    def __len__(self) -> int:
        return len(self._hosts)

    def __contains__(self, name: object) -> bool:
        return name in self._hosts

    def get(self, name: str) -> Host:
        return self._hosts[name]

    def names(self) -> List[str]:
        return list(self._hosts)

    def hosts_with_role(self, role: str) -> Set[Host]:
        return {h for h in self._hosts.values() if role in h.roles}

    def hosts_with_any_role(self, roles: Iterable[str]) -> List[Host]:
        """Hosts carrying at least one of ``roles``, in declaration order."""
        wanted = set(roles)
        return [h for h in self._hosts.values() if h.roles & wanted]

    def roles(self) -> Set[str]:
        out: Set[str] = set()
        for h in self._hosts.values():
            out |= h.roles
        return out

    def reset_status(self) -> None:
        for h in self._hosts.values():
            h.status = HostStatus.PENDING


# ------------------------------------------------------------------------------
# INI inventories (Ansible style)
# ------------------------------------------------------------------------------

_INI_KEYS = {
    "ansible_host": "address",
    "ansible_port": "port",
    "ansible_user": "username",
    "ansible_ssh_user": "username",
    "ansible_password": "password",
    "ansible_ssh_pass": "password",
    "ansible_ssh_private_key_file": "pkey_path",
    "ansible_connection": "connection",
    "ansible_become": "become",
}


def _split_kv(parts: Iterable[str], where: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for p in parts:
        if "=" not in p:
            raise InvalidInventory(f"{where}: expected key=value, got '{p}'")
        k, v = p.split("=", 1)
        out[k.strip()] = v.strip().strip("'\"")
    return out


def _host_fields(raw: Dict[str, str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for k, v in raw.items():
        target = _INI_KEYS.get(k)
        if target is None:
            extra[k] = v
        elif target == "become":
            fields[target] = v.lower() in ("1", "true", "yes")
        elif target == "connection":
            # paramiko/smart/ssh all mean "remote"
            fields[target] = "local" if v == "local" else "ssh"
        else:
            fields[target] = v
    if extra:
        fields["vars"] = extra
    return fields


def parse_ini_inventory(text: str, *, source: str = "<inventory>") -> List[Dict[str, Any]]:
    """
    Parse an INI inventory into host dicts shaped like ``HostSpec``.

    ``[group]`` sections become role tags, ``[group:vars]`` apply to the
    group's hosts and ``[group:children]`` nest groups.
    """
    hosts: Dict[str, Dict[str, str]] = {}
    members: Dict[str, List[str]] = {}
    group_vars: Dict[str, Dict[str, str]] = {}
    children: Dict[str, List[str]] = {}

    section: Tuple[str, str] = ("ungrouped", "hosts")
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith(";"):
            continue
        where = f"{source}:{lineno}"
        if line.startswith("[") and line.endswith("]"):
            header = line[1:-1].strip()
            name, _, kind = header.partition(":")
            if kind not in ("", "vars", "children"):
                raise InvalidInventory(f"{where}: unknown section type '{kind}'")
            section = (name, kind or "hosts")
            continue

        group, kind = section
        if kind == "vars":
            group_vars.setdefault(group, {}).update(_split_kv([line], where))
        elif kind == "children":
            children.setdefault(group, []).append(line.split()[0])
        else:
            parts = line.split()
            hname = parts[0]
            hosts.setdefault(hname, {}).update(_split_kv(parts[1:], where))
            group_members = members.setdefault(group, [])
            if hname not in group_members:
                group_members.append(hname)

    def expand(group: str, seen: Set[str]) -> List[str]:
        if group in seen:
            raise InvalidInventory(f"{source}: group '{group}' is its own descendant")
        seen = seen | {group}
        out = list(members.get(group, []))
        for child in children.get(group, []):
            out.extend(expand(child, seen))
        return out

    roles: Dict[str, List[str]] = {h: [] for h in hosts}
    all_groups = set(members) | set(children)
    for group in sorted(all_groups - {"ungrouped", "all"}):
        for hname in expand(group, set()):
            if hname not in roles:
                raise InvalidInventory(f"{source}: group '{group}' references unknown host '{hname}'")
            if group not in roles[hname]:
                roles[hname].append(group)

    out: List[Dict[str, Any]] = []
    for hname, raw_vars in hosts.items():
        merged: Dict[str, str] = dict(group_vars.get("all", {}))
        for group in roles[hname]:
            merged.update(group_vars.get(group, {}))
        merged.update(raw_vars)
        spec = {"name": hname, "roles": roles[hname], **_host_fields(merged)}
        out.append(spec)
    return out


def read_ini_inventory(path: str | Path) -> List[Dict[str, Any]]:
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read inventory {path}: {e}") from e
    return parse_ini_inventory(text, source=str(path))


# ------------------------------------------------------------------------------
# Loading
# ------------------------------------------------------------------------------

def _to_host(spec: HostSpec, extra_roles: Iterable[str] = (), defaults: Optional[Mapping[str, Any]] = None) -> Host:
    if not spec.name or not _HOST_NAME.match(spec.name):
        raise InvalidInventory(f"Invalid host name '{spec.name}'")

    roles = frozenset([*spec.roles, *extra_roles])
    if not roles:
        raise InvalidInventory(f"Host '{spec.name}' has no role")

    address = spec.address or spec.name
    if not is_valid_address(address):
        raise InvalidInventory(f"Host '{spec.name}' has malformed address '{address}'")

    if not 1 <= spec.port <= 65535:
        raise InvalidInventory(f"Host '{spec.name}' has invalid port {spec.port}")

    return Host(
        name=spec.name,
        address=address,
        roles=roles,
        port=spec.port,
        username=spec.username,
        password=spec.password,
        pkey_path=Path(spec.pkey_path).expanduser() if spec.pkey_path else None,
        connection=spec.connection,
        become=spec.become,
        vars={**(defaults or {}), **spec.vars},
    )


def _host_specs(raw: Iterable[Mapping[str, Any]]) -> List[HostSpec]:
    specs: List[HostSpec] = []
    for item in raw:
        try:
            specs.append(HostSpec.model_validate(item))
        except ValueError as e:
            raise InvalidInventory(f"Invalid host entry {dict(item).get('name', '?')!r}: {e}") from e
    return specs


def inventory_from_topology(topology: TopologyConfig) -> Inventory:
    """Build the Inventory described by a topology (inline hosts, INI file, groups)."""
    specs: List[HostSpec] = list(topology.hosts)
    if topology.inventory:
        specs.extend(_host_specs(read_ini_inventory(topology.inventory)))

    names = [s.name for s in specs]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise InvalidInventory(f"Duplicate host name(s): {', '.join(dupes)}")

    extra: Dict[str, List[str]] = {n: [] for n in names}
    for group, members in topology.groups.items():
        for hname in members:
            if hname not in extra:
                raise InvalidInventory(f"Group '{group}' references unknown host '{hname}'")
            extra[hname].append(group)

    inv = Inventory(_to_host(s, extra[s.name], topology.vars) for s in specs)
    log.debug("inventory loaded: %d host(s), roles=%s", len(inv), sorted(inv.roles()))
    return inv


def load_inventory(source: InventorySource) -> Inventory:
    """
    Load an Inventory from a topology object, a mapping, a YAML topology
    path or an INI inventory path. Raises InvalidInventory.
    """
    if isinstance(source, TopologyConfig):
        return inventory_from_topology(source)

    if isinstance(source, Mapping):
        data = dict(source)
        # host entries first, so bad connection data reports as InvalidInventory
        data["hosts"] = _host_specs(data.get("hosts") or [])
        return inventory_from_topology(parse_topology(data))

    path = Path(source)
    if path.suffix.lower() in (".ini", ".cfg", ".hosts", ""):
        return Inventory(_to_host(s) for s in _host_specs(read_ini_inventory(path)))
    return inventory_from_topology(load_topology(path))
