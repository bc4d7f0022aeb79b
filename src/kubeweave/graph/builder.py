# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..config.models import RoleSpec, StepSpec
from ..core.errors import ConfigError, CyclicDependency, UnknownRoleReference
from ..inventory.inventory import Inventory
from ..inventory.models import Host

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import GraphBuilt, GraphFailed, new_ctx, stamp

log = logging.getLogger("kubeweave")


@dataclass(frozen=True, eq=False)
class TaskNode:
    """One Step of one Role on one Host."""

    host: Host
    role: RoleSpec
    step: StepSpec
    seq: int          # declaration order, used to break ties deterministically

    @property
    def id(self) -> str:
        return f"{self.host.name}/{self.role.name}/{self.step.name}"

    @property
    def tags(self) -> Set[str]:
        # the role name is an implicit tag so whole roles can be selected
        return {*self.step.tags, *self.role.tags, self.role.name}

    def __repr__(self) -> str:
        return f"TaskNode({self.id})"


class TaskGraph:
    """
    DAG of TaskNodes. ``nodes`` is a topological order; per-host
    sequences returned by ``nodes_for_host`` follow it.
    """

    def __init__(
        self,
        nodes: Sequence[TaskNode],
        preds: Dict[str, Set[str]],
        succs: Dict[str, Set[str]],
    ):
        self._nodes: Dict[str, TaskNode] = {n.id: n for n in nodes}
        self._preds = {nid: frozenset(preds.get(nid, ())) for nid in self._nodes}
        self._succs = {nid: frozenset(succs.get(nid, ())) for nid in self._nodes}
        self._by_host: Dict[str, List[TaskNode]] = {}
        for n in nodes:
            self._by_host.setdefault(n.host.name, []).append(n)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self._nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def nodes(self) -> List[TaskNode]:
        return list(self._nodes.values())

    @property
    def edge_count(self) -> int:
        return sum(len(s) for s in self._succs.values())

    def node(self, node_id: str) -> TaskNode:
        return self._nodes[node_id]

    def ids(self) -> List[str]:
        return list(self._nodes)

    def predecessors(self, node_id: str) -> frozenset:
        return self._preds[node_id]

    def successors(self, node_id: str) -> frozenset:
        return self._succs[node_id]

    def roots(self) -> List[TaskNode]:
        return [n for nid, n in self._nodes.items() if not self._preds[nid]]

    def hosts(self) -> List[Host]:
        return [nodes[0].host for nodes in self._by_host.values()]

    def nodes_for_host(self, host_name: str) -> List[TaskNode]:
        return list(self._by_host.get(host_name, ()))

    def has_path(self, src: str, dst: str) -> bool:
        """True if ``dst`` is reachable from ``src`` by one or more edges."""
        seen: Set[str] = set()
        queue = deque(self._succs[src])
        while queue:
            nid = queue.popleft()
            if nid == dst:
                return True
            if nid in seen:
                continue
            seen.add(nid)
            queue.extend(self._succs[nid])
        return False


# ------------------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------------------

def _validate_roles(roles: Sequence[RoleSpec]) -> None:
    names: Set[str] = set()
    for r in roles:
        if r.name in names:
            raise ConfigError(f"Duplicate role name '{r.name}'")
        names.add(r.name)

    for r in roles:
        for d in r.depends_on:
            if d not in names:
                raise UnknownRoleReference(r.name, d)

    # role-level cycles are reported even if tag filters would hide them
    indeg: Dict[str, int] = {r.name: len(set(r.depends_on)) for r in roles}
    dependents: Dict[str, List[str]] = {r.name: [] for r in roles}
    for r in roles:
        for d in set(r.depends_on):
            dependents[d].append(r.name)

    queue = deque(n for n, deg in indeg.items() if deg == 0)
    visited = 0
    while queue:
        n = queue.popleft()
        visited += 1
        for m in dependents[n]:
            indeg[m] -= 1
            if indeg[m] == 0:
                queue.append(m)

    if visited != len(roles):
        raise CyclicDependency(f"role:{n}" for n, deg in indeg.items() if deg > 0)


# ------------------------------------------------------------------------------
# Construction
# ------------------------------------------------------------------------------

def _add_edge(preds: Dict[str, Set[str]], succs: Dict[str, Set[str]], a: str, b: str) -> None:
    if a == b:
        return
    succs[a].add(b)
    preds[b].add(a)


def _drop_node(nid: str, preds: Dict[str, Set[str]], succs: Dict[str, Set[str]]) -> None:
    """Remove ``nid``, wiring each predecessor to each successor."""
    before = preds.pop(nid)
    after = succs.pop(nid)
    for p in before:
        succs[p].discard(nid)
    for s in after:
        preds[s].discard(nid)
    for p in before:
        for s in after:
            _add_edge(preds, succs, p, s)


def _selected(tags: Set[str], include: Set[str], exclude: Set[str]) -> bool:
    if exclude and tags & exclude:
        return False  # exclude wins over include
    if include and not tags & include:
        return False
    return True


def _toposort(nodes: Dict[str, TaskNode], preds: Dict[str, Set[str]], succs: Dict[str, Set[str]]) -> List[TaskNode]:
    indeg = {nid: len(preds[nid]) for nid in nodes}
    heap: List[Tuple[int, str]] = [(nodes[nid].seq, nid) for nid, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: List[TaskNode] = []

    while heap:
        _, nid = heapq.heappop(heap)
        order.append(nodes[nid])
        for m in succs[nid]:
            indeg[m] -= 1
            if indeg[m] == 0:
                heapq.heappush(heap, (nodes[m].seq, m))

    if len(order) != len(nodes):
        raise CyclicDependency(nid for nid, d in indeg.items() if d > 0)
    return order


def build_graph(
    inventory: Inventory,
    roles: Sequence[RoleSpec],
    include_tags: Optional[Iterable[str]] = None,
    exclude_tags: Optional[Iterable[str]] = None,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> TaskGraph:
    """
    Expand roles over the inventory into a DAG of (host, step) nodes.

    Steps of a role run in declared order on each host. Tag filters drop
    nodes and reconnect their neighbours. ``depends_on`` makes every node of
    the dependent role wait for every node of the named role on all of its
    hosts. Emits GraphBuilt / GraphFailed if an EventBus is provided.
    """
    ctx = run_ctx or new_ctx(env="dev", context=None)
    include = set(include_tags or ())
    exclude = set(exclude_tags or ())

    try:
        _validate_roles(roles)

        nodes: Dict[str, TaskNode] = {}
        preds: Dict[str, Set[str]] = {}
        succs: Dict[str, Set[str]] = {}
        # role -> one chain of node ids per host, in step order
        chains: Dict[str, List[List[str]]] = {}

        # 1) one chain of nodes per (role, host)
        seq = 0
        for role in roles:
            for host in inventory.hosts_with_any_role(role.hosts):
                chain: List[str] = []
                for step in role.steps:
                    node = TaskNode(host=host, role=role, step=step, seq=seq)
                    seq += 1
                    if node.id in nodes:
                        raise ConfigError(f"duplicate task node id '{node.id}'")
                    nodes[node.id] = node
                    preds[node.id] = set()
                    succs[node.id] = set()
                    if chain:
                        _add_edge(preds, succs, chain[-1], node.id)
                    chain.append(node.id)
                if chain:
                    chains.setdefault(role.name, []).append(chain)

        # 2) cross-role dependencies; the tail of each chain of A gates the
        # head of each chain of B, which covers every A node -> B node pair.
        # A role with no nodes passes its own upstream gates through.
        by_name = {r.name: r for r in roles}
        gates: Dict[str, List[str]] = {}

        def gates_of(name: str) -> List[str]:
            if name not in gates:
                own = [c[-1] for c in chains.get(name, ())]
                if not own:
                    own = sorted({g for d in by_name[name].depends_on for g in gates_of(d)})
                gates[name] = own
            return gates[name]

        for role in roles:
            for chain in chains.get(role.name, ()):
                for dep in role.depends_on:
                    for tail in gates_of(dep):
                        _add_edge(preds, succs, tail, chain[0])

        # 3) tag filters; dropped nodes hand their edges on
        if include or exclude:
            for nid in list(nodes):
                if not _selected(nodes[nid].tags, include, exclude):
                    _drop_node(nid, preds, succs)
                    del nodes[nid]

        # 4) cycle detection / ordering
        order = _toposort(nodes, preds, succs)
        graph = TaskGraph(order, preds, succs)

        log.debug("graph built: %d node(s), %d edge(s)", len(graph), graph.edge_count)
        if bus:
            bus.emit(GraphBuilt(
                nodes=len(graph),
                edges=graph.edge_count,
                order=[n.id for n in order],
                **stamp(ctx),
            ))
        return graph

    except Exception as e:
        if bus:
            bus.emit(GraphFailed(error=str(e), **stamp(ctx)))
        raise
