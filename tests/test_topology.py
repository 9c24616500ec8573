import pytest

from topology import (
    DependencyCycleError,
    DuplicateResourceError,
    Resource,
    TopologyError,
    TopologyGraph,
    UnresolvedReferenceError,
    iter_refs,
    parse_ref,
    ref,
)


def _node(name, args=None, tier="network", **kwargs):
    return Resource(name=name, type="ec2.Vpc", args=args or {}, tier=tier, **kwargs)


def test_parse_ref_defaults_to_id():
    assert parse_ref("ref:vpc") == ("vpc", "id")
    assert parse_ref("ref:web-alb.dns_name") == ("web-alb", "dns_name")
    assert ref("web-tg", "arn") == "ref:web-tg.arn"


@pytest.mark.parametrize("value", ["vpc.id", "ref:", "ref:.id"])
def test_parse_ref_rejects_malformed_values(value):
    with pytest.raises(TopologyError):
        parse_ref(value)


def test_iter_refs_walks_nested_arguments():
    args = {
        "vpc_id": "ref:vpc.id",
        "routes": [{"cidr_block": "0.0.0.0/0", "gateway_id": "ref:igw"}],
        "subnets": ["ref:a.id", "ref:b.id"],
        "port": 80,
    }

    assert sorted(iter_refs(args)) == ["ref:a.id", "ref:b.id", "ref:igw", "ref:vpc.id"]


def test_add_returns_reference_and_rejects_duplicates():
    graph = TopologyGraph()

    assert graph.add(_node("vpc")) == "ref:vpc.id"
    with pytest.raises(DuplicateResourceError):
        graph.add(_node("vpc"))


def test_add_rejects_unknown_tier():
    with pytest.raises(TopologyError, match="tier"):
        TopologyGraph().add(_node("vpc", tier="cache"))


def test_dependencies_include_bindings_and_ordering_edges():
    graph = TopologyGraph()
    graph.add(_node("vpc"))
    graph.add(_node("igw", {"vpc_id": "ref:vpc.id"}))
    graph.add(_node("nat", {"subnet_id": "ref:vpc.id"}, depends_on=["igw"]))

    assert graph.dependencies("nat") == ["vpc", "igw"]
    assert sorted(graph.dependents("vpc")) == ["igw", "nat"]


def test_topological_order_places_producers_first():
    graph = TopologyGraph()
    # Declared out of order on purpose.
    graph.add(_node("db", {"sg": "ref:db-sg.id", "subnets": ["ref:subnet.id"]}, tier="data"))
    graph.add(_node("db-sg", {"vpc_id": "ref:vpc.id"}, tier="data"))
    graph.add(_node("subnet", {"vpc_id": "ref:vpc.id"}))
    graph.add(_node("vpc"))

    order = [r.name for r in graph.topological_order()]

    assert order.index("vpc") < order.index("subnet") < order.index("db")
    assert order.index("db-sg") < order.index("db")


def test_unresolved_references_are_all_reported():
    graph = TopologyGraph()
    graph.add(_node("subnet", {"vpc_id": "ref:vpc.id"}))
    graph.add(_node("nat", {}, depends_on=["igw"]))
    graph.export("vpc_id", "ref:vpc.id")

    with pytest.raises(UnresolvedReferenceError) as excinfo:
        graph.topological_order()

    assert excinfo.value.missing == [("subnet", "vpc"), ("nat", "igw"), ("output:vpc_id", "vpc")]


def test_cycles_are_rejected():
    graph = TopologyGraph()
    graph.add(_node("a", {"x": "ref:b.id"}))
    graph.add(_node("b", {"x": "ref:a.id"}))
    graph.add(_node("c"))

    with pytest.raises(DependencyCycleError) as excinfo:
        graph.topological_order()

    assert excinfo.value.nodes == ["a", "b"]


def test_find_filters_on_every_criterion():
    graph = TopologyGraph()
    graph.add(Resource("public-a", "ec2.Subnet", {}, "network", zone="a", role="public"))
    graph.add(Resource("private-a", "ec2.Subnet", {}, "network", zone="a", role="private"))
    graph.add(Resource("private-b", "ec2.Subnet", {}, "network", zone="b", role="private"))

    assert [r.name for r in graph.find(type="ec2.Subnet", role="private")] == ["private-a", "private-b"]
    assert [r.name for r in graph.find(zone="a", role="public")] == ["public-a"]
    assert graph.find_one(zone="b").name == "private-b"
    with pytest.raises(TopologyError):
        graph.find_one(zone="a")


def test_to_dict_renders_plain_data():
    graph = TopologyGraph()
    graph.add(_node("vpc", {"cidr_block": "10.0.0.0/16"}))
    graph.export("vpc_id", "ref:vpc.id")

    assert graph.to_dict() == {
        "resources": [{"name": "vpc", "type": "ec2.Vpc", "tier": "network", "args": {"cidr_block": "10.0.0.0/16"}}],
        "outputs": {"vpc_id": "ref:vpc.id"},
    }
