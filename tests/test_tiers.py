import base64
import os

from config import Config, load_config
from conftest import REPO_ROOT
from tiers import (
    INTERNAL_LB_TYPE,
    PUBLIC_LB_TYPE,
    AppTier,
    NetworkFoundation,
    WebTier,
    aws_short_name,
    build_topology,
)
from topology import TopologyGraph


def _zones_of(graph, refs):
    return {graph.resolve(value).zone for value in refs}


def test_two_zones_yield_two_public_and_two_private_subnets(graph):
    public = graph.find(type="ec2.Subnet", role="public")
    private = graph.find(type="ec2.Subnet", role="private")

    assert len(public) == 2
    assert len(private) == 2
    assert {s.zone for s in public} == {s.zone for s in private} == {"us-east-1a", "us-east-1b"}
    assert len(graph.find(type="ec2.InternetGateway")) == 1


def test_one_nat_gateway_per_zone_by_default(graph):
    nats = graph.find(type="ec2.NatGateway")

    assert {n.zone for n in nats} == {"us-east-1a", "us-east-1b"}
    for nat in nats:
        assert graph.resolve(nat.args["subnet_id"]).role == "public"
        assert graph.resolve(nat.args["subnet_id"]).zone == nat.zone
        assert nat.depends_on == ["igw"]


def test_private_route_tables_use_same_zone_nat(graph):
    for route_table in graph.find(type="ec2.RouteTable", role="private"):
        (route,) = route_table.args["routes"]
        assert graph.resolve(route["nat_gateway_id"]).zone == route_table.zone


def test_single_nat_mode_shares_one_gateway(config_data):
    config_data["network"]["nat_gateways"] = "single"
    graph = build_topology(Config.from_dict(config_data))

    (nat,) = graph.find(type="ec2.NatGateway")
    for route_table in graph.find(type="ec2.RouteTable", role="private"):
        assert graph.resolve(route_table.args["routes"][0]["nat_gateway_id"]) is nat


def test_web_load_balancer_and_fleet_span_both_zones(graph):
    alb = graph.get("web-alb")
    asg = graph.get("web-asg")

    assert alb.args["internal"] is False
    assert alb.args["load_balancer_type"] == PUBLIC_LB_TYPE
    assert _zones_of(graph, alb.args["subnets"]) == {"us-east-1a", "us-east-1b"}
    assert _zones_of(graph, asg.args["vpc_zone_identifiers"]) == {"us-east-1a", "us-east-1b"}
    assert asg.args["target_group_arns"] == ["ref:web-tg.arn"]
    assert asg.args["desired_capacity"] == 2


def test_app_tier_uses_internal_network_load_balancer(graph):
    nlb = graph.get("app-nlb")
    target_group = graph.get("app-tg")

    assert nlb.args["internal"] is True
    assert nlb.args["load_balancer_type"] == INTERNAL_LB_TYPE
    assert {graph.resolve(s).role for s in nlb.args["subnets"]} == {"private"}
    assert target_group.args["protocol"] == "TCP"
    assert target_group.args["health_check"]["protocol"] == "TCP"
    assert target_group.args["preserve_client_ip"] == "false"


def test_no_public_addresses_on_app_or_data(graph):
    app_template = graph.get("app-lt")
    db = graph.get("db")

    for interface in app_template.args["network_interfaces"]:
        assert interface["associate_public_ip_address"] == "false"
    assert db.args["publicly_accessible"] is False
    assert all(graph.resolve(s).role == "private" for s in graph.get("db-subnet-group").args["subnet_ids"])
    assert all(not s.args["map_public_ip_on_launch"] for s in graph.find(type="ec2.Subnet"))


def test_database_follows_replication_flag(config_data):
    assert build_topology(Config.from_dict(config_data)).get("db").args["multi_az"] is True

    config_data["database"]["multi_az"] = False
    db = build_topology(Config.from_dict(config_data)).get("db")

    assert db.args["multi_az"] is False
    assert db.args["availability_zone"] == "us-east-1a"


def test_https_listener_carries_certificate(config_data):
    config_data["web"]["listener_ports"] = [80, 443]
    config_data["web"]["certificate_arn"] = "arn:aws:acm:us-east-1:123456789012:certificate/abc"
    graph = build_topology(Config.from_dict(config_data))

    https = graph.get("web-listener-443")
    assert https.args["protocol"] == "HTTPS"
    assert https.args["certificate_arn"].endswith("/abc")
    assert graph.get("web-listener-80").args["protocol"] == "HTTP"
    assert {r.args["from_port"] for r in graph.find(tier="web", role="ingress")} == {80, 443}


def test_web_to_app_flow_passes_through_load_balancer_group(graph):
    nlb_groups = [graph.resolve(value) for value in graph.get("app-nlb").args["security_groups"]]
    web_egress = [
        graph.resolve(rule.args["referenced_security_group_id"])
        for rule in graph.find(type="vpc.SecurityGroupEgressRule")
        if graph.resolve(rule.args["security_group_id"]).name == "web-sg"
    ]
    app_sources = [
        graph.resolve(rule.args["referenced_security_group_id"])
        for rule in graph.find(type="vpc.SecurityGroupIngressRule")
        if graph.resolve(rule.args["security_group_id"]).name == "app-sg"
    ]

    (lb_group,) = nlb_groups
    assert lb_group.name == "app-lb-sg"
    assert lb_group in web_egress
    assert app_sources == [lb_group]
    assert graph.get("app-lb-sg-egress-app").args["referenced_security_group_id"] == "ref:app-sg.id"


def test_bootstrap_scripts_need_no_internet_access(graph):
    for tier in ("web", "app"):
        with open(os.path.join(REPO_ROOT, "bootstrap", f"{tier}.sh")) as script:
            body = script.read()
        for fetch in ("dnf ", "yum ", "apt-get ", "apt ", "curl ", "wget ", "pip install"):
            assert fetch not in body, f"{tier}.sh runs {fetch.strip()}"

    for rule in graph.find(type="vpc.SecurityGroupEgressRule"):
        if rule.tier in ("web", "app"):
            assert "cidr_ipv4" not in rule.args
            assert "prefix_list_id" not in rule.args
            assert rule.args["referenced_security_group_id"].startswith("ref:")


def test_bootstrap_scripts_are_base64_encoded():
    config = load_config(os.path.join(REPO_ROOT, "config.yaml"))
    graph = build_topology(config)

    encoded = graph.get("web-lt").args["user_data"]
    with open(os.path.join(REPO_ROOT, "bootstrap", "web.sh"), "rb") as script:
        assert base64.b64decode(encoded) == script.read()


def test_tiers_only_read_upstream_outputs(config):
    graph = TopologyGraph()
    network = NetworkFoundation(config).build(graph)
    web = WebTier(config, network).build(graph)

    # Everything declared so far resolves without the app or data tiers.
    graph.check_references()
    assert web.security_group_id == "ref:web-sg.id"

    AppTier(config, network, web).build(graph)
    graph.check_references()
    assert "db" not in graph


def test_published_outputs(graph):
    assert set(graph.outputs) == {
        "vpc_id",
        "public_subnet_ids",
        "private_subnet_ids",
        "public_route_table_id",
        "private_route_table_ids",
        "web_lb_address",
        "web_security_group_id",
        "app_lb_address",
        "app_lb_security_group_id",
        "app_security_group_id",
        "db_endpoint",
        "db_security_group_id",
    }
    assert graph.outputs["web_lb_address"] == "ref:web-alb.dns_name"
    assert graph.outputs["db_endpoint"] == "ref:db.endpoint"
    assert set(graph.outputs["private_route_table_ids"]) == {"us-east-1a", "us-east-1b"}


def test_load_balancer_names_fit_aws_limit(config_data):
    config_data["service"] = "a-very-long-service-name-for-testing"
    config = Config.from_dict(config_data)

    assert len(aws_short_name(config, "web-tg")) <= 32
    assert not aws_short_name(config, "web-tg").endswith("-")


def test_graph_is_acyclic(graph):
    assert len(graph.topological_order()) == len(graph)
