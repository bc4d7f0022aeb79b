import pytest

from kubeweave.config.models import RoleSpec
from kubeweave.core.errors import ConfigError, CyclicDependency, UnknownRoleReference
from kubeweave.graph.builder import build_graph
from kubeweave.inventory.inventory import Inventory
from kubeweave.inventory.models import Host
from kubeweave.observers.dispatcher import EventBus
from kubeweave.observers.events import GraphBuilt, GraphFailed


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


def _inv():
    return Inventory([
        Host(name="m1", address="10.0.0.10", roles=frozenset({"master"})),
        Host(name="w1", address="10.0.0.11", roles=frozenset({"worker"})),
        Host(name="w2", address="10.0.0.12", roles=frozenset({"worker"})),
    ])


def _role(name, steps, hosts=None, depends_on=(), tags=(), step_tags=None):
    step_tags = step_tags or {}
    return RoleSpec(
        name=name,
        hosts=list(hosts or [name]),
        depends_on=list(depends_on),
        tags=list(tags),
        steps=[{"name": s, "command": "true", "tags": step_tags.get(s, [])} for s in steps],
    )


def _cluster_roles():
    return [
        _role("master-setup", ["packages", "init"], hosts=["master"]),
        _role("network", ["calico"], hosts=["master"], depends_on=["master-setup"], tags=["cni"]),
        _role("worker-setup", ["packages", "join"], hosts=["worker"], depends_on=["network"]),
    ]


def _pos(graph):
    return {nid: i for i, nid in enumerate(graph.ids())}


def test_steps_chain_per_host_and_roles_expand_over_hosts():
    g = build_graph(_inv(), _cluster_roles())
    assert len(g) == 2 + 1 + 2 * 2
    assert g.predecessors("w1/worker-setup/join") == frozenset({"w1/worker-setup/packages"})
    assert g.has_path("m1/master-setup/packages", "m1/master-setup/init")
    assert [n.id for n in g.roots()] == ["m1/master-setup/packages"]


def test_cross_role_dependency_orders_every_pair():
    g = build_graph(_inv(), _cluster_roles())
    pos = _pos(g)
    for w in ("w1", "w2"):
        for step in ("packages", "join"):
            nid = f"{w}/worker-setup/{step}"
            assert g.has_path("m1/network/calico", nid)
            assert g.has_path("m1/master-setup/init", nid)
            assert pos["m1/network/calico"] < pos[nid]


def test_every_edge_respects_order():
    g = build_graph(_inv(), _cluster_roles())
    pos = _pos(g)
    for nid in g.ids():
        for s in g.successors(nid):
            assert pos[nid] < pos[s]
            assert nid in g.predecessors(s)
        assert not g.has_path(nid, nid)


def test_order_is_deterministic_by_declaration():
    roles = [
        _role("a", ["one"], hosts=["worker"]),
        _role("b", ["one"], hosts=["master"]),
    ]
    first = build_graph(_inv(), roles).ids()
    assert first == ["w1/a/one", "w2/a/one", "m1/b/one"]
    assert build_graph(_inv(), roles).ids() == first


def test_role_without_matching_hosts_contributes_nothing():
    roles = _cluster_roles() + [_role("storage", ["ceph"], hosts=["osd"], depends_on=["network"])]
    g = build_graph(_inv(), roles)
    assert not any(n.role.name == "storage" for n in g)


def test_unknown_role_reference():
    roles = [_role("worker-setup", ["join"], hosts=["worker"], depends_on=["ghost"])]
    cap = Capture()
    with pytest.raises(UnknownRoleReference, match="unknown role 'ghost'"):
        build_graph(_inv(), roles, bus=EventBus([cap]))
    assert any(isinstance(e, GraphFailed) for e in cap.events)


def test_role_cycle_detected():
    roles = [
        _role("a", ["x"], hosts=["master"], depends_on=["b"]),
        _role("b", ["x"], hosts=["worker"], depends_on=["a"]),
    ]
    with pytest.raises(CyclicDependency) as exc:
        build_graph(_inv(), roles)
    assert exc.value.nodes == ["role:a", "role:b"]


def test_duplicate_role_names_rejected():
    with pytest.raises(ConfigError, match="Duplicate role"):
        build_graph(_inv(), [_role("a", ["x"], hosts=["master"]), _role("a", ["y"], hosts=["master"])])


def test_slash_in_role_or_step_name_rejected():
    with pytest.raises(ValueError, match="must not contain"):
        _role("a/b", ["c"], hosts=["master"])
    with pytest.raises(ValueError, match="must not contain"):
        _role("a", ["b/c"], hosts=["master"])


def test_colliding_node_ids_rejected():
    # bypasses model validation to reach the builder guard
    step = _role("x", ["c"]).steps[0]
    clash = RoleSpec.model_construct(name="a/b", hosts=["master"], depends_on=[], tags=[], steps=[step])
    other = _role("a", ["x"], hosts=["master"])
    other.steps[0] = other.steps[0].model_copy(update={"name": "b/c"})
    with pytest.raises(ConfigError, match="duplicate task node id 'm1/a/b/c'"):
        build_graph(_inv(), [clash, other])


def test_graph_built_event_carries_order():
    cap = Capture()
    g = build_graph(_inv(), _cluster_roles(), bus=EventBus([cap]))
    built = [e for e in cap.events if isinstance(e, GraphBuilt)]
    assert len(built) == 1
    assert built[0].order == g.ids()
    assert built[0].nodes == len(g)
    assert built[0].edges == g.edge_count


# ----------------- tag filters -----------------

def test_include_tags_select_nodes_and_reconnect_edges():
    roles = [
        _role("master-setup", ["packages", "init", "verify"], hosts=["master"],
              step_tags={"packages": ["pkg"], "verify": ["pkg"]}),
    ]
    g = build_graph(_inv(), roles, include_tags=["pkg"])
    assert g.ids() == ["m1/master-setup/packages", "m1/master-setup/verify"]
    assert g.predecessors("m1/master-setup/verify") == frozenset({"m1/master-setup/packages"})


def test_exclude_wins_over_include():
    roles = [_role("network", ["calico", "wait-ready"], hosts=["master"], tags=["cni"],
                   step_tags={"wait-ready": ["slow"]})]
    g = build_graph(_inv(), roles, include_tags=["cni"], exclude_tags=["slow"])
    assert g.ids() == ["m1/network/calico"]


def test_role_name_is_an_implicit_tag():
    g = build_graph(_inv(), _cluster_roles(), include_tags=["worker-setup"])
    assert {n.role.name for n in g} == {"worker-setup"}
    assert len(g) == 4


def test_filtered_middle_role_keeps_transitive_order():
    g = build_graph(_inv(), _cluster_roles(), exclude_tags=["cni"])
    assert not any(n.role.name == "network" for n in g)
    # master-setup -> network -> worker-setup collapses to master-setup -> worker-setup
    assert g.has_path("m1/master-setup/init", "w1/worker-setup/packages")


def test_filters_partition_the_full_graph():
    full = set(build_graph(_inv(), _cluster_roles()).ids())
    kept = set(build_graph(_inv(), _cluster_roles(), exclude_tags=["cni"]).ids())
    dropped = set(build_graph(_inv(), _cluster_roles(), include_tags=["cni"]).ids())
    assert kept | dropped == full
    assert not kept & dropped


def test_role_cycle_reported_even_when_filtered_out():
    roles = [
        _role("a", ["x"], hosts=["master"], depends_on=["b"], tags=["hidden"]),
        _role("b", ["x"], hosts=["worker"], depends_on=["a"], tags=["hidden"]),
    ]
    with pytest.raises(CyclicDependency):
        build_graph(_inv(), roles, exclude_tags=["hidden"])


def test_role_without_hosts_passes_dependencies_through():
    roles = [
        _role("master-setup", ["init"], hosts=["master"]),
        _role("storage", ["ceph"], hosts=["osd"], depends_on=["master-setup"]),
        _role("worker-setup", ["join"], hosts=["worker"], depends_on=["storage"]),
    ]
    g = build_graph(_inv(), roles)
    assert g.predecessors("w1/worker-setup/join") == frozenset({"m1/master-setup/init"})
