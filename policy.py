"""
Topology and security assertions evaluated against the declared graph.

Every check returns a list of Violation records rather than raising, so one
run reports every problem. ``enforce`` is the gate used before provisioning.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pulumi

from config import Config
from tiers import ANYWHERE
from topology import Resource, TopologyGraph, is_ref, parse_ref

INGRESS_RULE = "vpc.SecurityGroupIngressRule"
EGRESS_RULE = "vpc.SecurityGroupEgressRule"


@dataclass
class Violation:
    rule: str
    resource: str
    message: str

    def __str__(self) -> str:
        return f"[{self.rule}] {self.resource}: {self.message}"


class PolicyViolationError(ValueError):
    def __init__(self, violations: List[Violation]):
        self.violations = violations
        lines = "\n".join(f"  - {v}" for v in violations)
        super().__init__(f"Topology violates {len(violations)} policy rule(s):\n{lines}")


def _target(graph: TopologyGraph, value: Any) -> Optional[Resource]:
    if not is_ref(value):
        return None
    name, _ = parse_ref(value)
    return graph.resources.get(name)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _security_group(graph: TopologyGraph, tier: str, role: str = "tier") -> Optional[Resource]:
    groups = graph.find(type="ec2.SecurityGroup", tier=tier, role=role)
    return groups[0] if len(groups) == 1 else None


def _rules_for(graph: TopologyGraph, rule_type: str, group: Resource) -> List[Resource]:
    return [
        r for r in graph.find(type=rule_type)
        if _target(graph, r.args.get("security_group_id")) is group
    ]


def _route_table_for(graph: TopologyGraph, subnet: Resource) -> Optional[Resource]:
    for association in graph.find(type="ec2.RouteTableAssociation"):
        if _target(graph, association.args.get("subnet_id")) is subnet:
            return _target(graph, association.args.get("route_table_id"))
    return None


def _default_route_targets(graph: TopologyGraph, route_table: Resource) -> List[Resource]:
    targets = []
    for route in route_table.args.get("routes", []):
        if route.get("cidr_block") != ANYWHERE:
            continue
        for key in ("gateway_id", "nat_gateway_id"):
            target = _target(graph, route.get(key))
            if target is not None:
                targets.append(target)
    return targets


def _subnets(graph: TopologyGraph, values: List[Any]) -> List[Resource]:
    return [s for s in (_target(graph, v) for v in values or []) if s is not None]


def _placed_subnets(graph: TopologyGraph, resource: Resource) -> List[Resource]:
    for key in ("subnets", "vpc_zone_identifiers", "subnet_ids"):
        if key in resource.args:
            return _subnets(graph, resource.args[key])
    return []


def _port_range(rule: Resource):
    return rule.args.get("from_port"), rule.args.get("to_port")


def check_zone_span(graph: TopologyGraph, config: Config) -> List[Violation]:
    violations = []
    placed_types = ("lb.LoadBalancer", "autoscaling.Group", "rds.SubnetGroup")
    for resource in graph:
        if resource.type not in placed_types:
            continue
        zones = {s.zone for s in _placed_subnets(graph, resource)}
        if len(zones) < 2:
            violations.append(Violation(
                "zone-span", resource.name,
                f"spans {len(zones)} zone(s), at least 2 independent zones are required",
            ))
    return violations


def check_private_subnet_egress(graph: TopologyGraph, config: Config) -> List[Violation]:
    violations = []
    for subnet in graph.find(type="ec2.Subnet", role="private"):
        route_table = _route_table_for(graph, subnet)
        if route_table is None:
            violations.append(Violation("private-subnet-egress", subnet.name, "has no route table association"))
            continue
        targets = _default_route_targets(graph, route_table)
        if any(t.type == "ec2.InternetGateway" for t in targets):
            violations.append(Violation(
                "private-subnet-egress", subnet.name,
                f"route table {route_table.name} routes to an internet gateway",
            ))
        if not any(t.type == "ec2.NatGateway" for t in targets):
            violations.append(Violation(
                "private-subnet-egress", subnet.name,
                f"route table {route_table.name} has no default route through a NAT gateway",
            ))
        if _truthy(subnet.args.get("map_public_ip_on_launch")):
            violations.append(Violation("private-subnet-egress", subnet.name, "maps public IPs on launch"))
    return violations


def check_public_subnet_route(graph: TopologyGraph, config: Config) -> List[Violation]:
    violations = []
    for subnet in graph.find(type="ec2.Subnet", role="public"):
        route_table = _route_table_for(graph, subnet)
        targets = _default_route_targets(graph, route_table) if route_table is not None else []
        if not any(t.type == "ec2.InternetGateway" for t in targets):
            violations.append(Violation(
                "public-subnet-route", subnet.name,
                "has no default route to the internet gateway",
            ))
    return violations


def check_web_ingress(graph: TopologyGraph, config: Config) -> List[Violation]:
    group = _security_group(graph, "web")
    if group is None:
        return [Violation("web-ingress", "web", "expected exactly one web security group")]

    violations = []
    allowed = set(config.web.listener_ports)
    protected = {config.app.port, config.database.port}
    for rule in _rules_for(graph, INGRESS_RULE, group):
        low, high = _port_range(rule)
        if rule.args.get("ip_protocol") != "tcp" or low != high or low not in allowed:
            violations.append(Violation(
                "web-ingress", rule.name,
                f"opens {rule.args.get('ip_protocol')} {low}-{high}, only web ports {sorted(allowed)} are allowed",
            ))
        if rule.args.get("cidr_ipv4") != ANYWHERE:
            violations.append(Violation("web-ingress", rule.name, "web ports must be reachable from anywhere"))
        for port in protected:
            if low is not None and high is not None and low <= port <= high:
                violations.append(Violation(
                    "web-ingress", rule.name, f"exposes lower-tier port {port} to the internet",
                ))
    return violations


def _check_single_source(graph: TopologyGraph, rule_name: str, group: Optional[Resource],
                         source: Optional[Resource], port: int) -> List[Violation]:
    if group is None or source is None:
        return [Violation(rule_name, "security groups", "expected one group for each end of the flow")]

    rules = _rules_for(graph, INGRESS_RULE, group)
    if len(rules) != 1:
        return [Violation(
            rule_name, group.name,
            f"has {len(rules)} ingress rules, exactly one (from {source.name} on {port}) is allowed",
        )]
    rule = rules[0]
    violations = []
    if _target(graph, rule.args.get("referenced_security_group_id")) is not source or rule.args.get("cidr_ipv4"):
        violations.append(Violation(rule_name, rule.name, f"source must be {source.name} only"))
    if _port_range(rule) != (port, port) or rule.args.get("ip_protocol") != "tcp":
        violations.append(Violation(rule_name, rule.name, f"must allow tcp {port} only"))
    return violations


def check_app_ingress(graph: TopologyGraph, config: Config) -> List[Violation]:
    # The app tier is entered through its load balancer's group only.
    web, lb, app = _security_group(graph, "web"), _security_group(graph, "app", "lb"), _security_group(graph, "app")
    return (
        _check_single_source(graph, "app-ingress", lb, web, config.app.port)
        + _check_single_source(graph, "app-ingress", app, lb, config.app.port)
    )


def check_db_ingress(graph: TopologyGraph, config: Config) -> List[Violation]:
    return _check_single_source(
        graph, "db-ingress", _security_group(graph, "data"), _security_group(graph, "app"), config.database.port,
    )


def check_egress_chain(graph: TopologyGraph, config: Config) -> List[Violation]:
    web, app_lb, app, data = (
        _security_group(graph, "web"),
        _security_group(graph, "app", "lb"),
        _security_group(graph, "app"),
        _security_group(graph, "data"),
    )
    if None in (web, app_lb, app, data):
        return [Violation("egress-chain", "security groups", "expected the web, app-lb, app and data groups")]

    # group -> permitted (destination group, port) pairs
    permitted = {
        web.name: {(app_lb.name, config.app.port), (web.name, config.web.port)},
        app_lb.name: {(app.name, config.app.port)},
        app.name: {(data.name, config.database.port)},
        data.name: set(),
    }
    violations = []
    for group in (web, app_lb, app, data):
        for rule in _rules_for(graph, EGRESS_RULE, group):
            destination = _target(graph, rule.args.get("referenced_security_group_id"))
            low, high = _port_range(rule)
            pair = (destination.name if destination else None, low)
            if rule.args.get("cidr_ipv4") or low != high or pair not in permitted[group.name]:
                violations.append(Violation(
                    "egress-chain", rule.name,
                    f"{group.name} may only reach the next hop, got "
                    f"{pair[0] or rule.args.get('cidr_ipv4')} on {low}-{high}",
                ))
    for source, destination, port in ((web, app_lb, config.app.port), (app_lb, app, config.app.port),
                                      (app, data, config.database.port)):
        reachable = {
            (getattr(_target(graph, r.args.get("referenced_security_group_id")), "name", None), _port_range(r))
            for r in _rules_for(graph, EGRESS_RULE, source)
        }
        if (destination.name, (port, port)) not in reachable:
            violations.append(Violation(
                "egress-chain", source.name, f"has no egress to {destination.name} on {port}",
            ))
    return violations


def check_load_balancer_groups(graph: TopologyGraph, config: Config) -> List[Violation]:
    expected = {"web": _security_group(graph, "web"), "app": _security_group(graph, "app", "lb")}
    violations = []
    for lb in graph.find(type="lb.LoadBalancer"):
        groups = [_target(graph, value) for value in lb.args.get("security_groups") or []]
        group = expected.get(lb.tier)
        if group is None or groups != [group]:
            violations.append(Violation(
                "load-balancer-groups", lb.name,
                f"must carry exactly the {group.name if group else lb.tier} security group, "
                f"got {[g.name if g else None for g in groups]}",
            ))
    return violations


def check_public_exposure(graph: TopologyGraph, config: Config) -> List[Violation]:
    violations = []
    for lb in graph.find(type="lb.LoadBalancer"):
        if not _truthy(lb.args.get("internal")) and lb.tier != "web":
            violations.append(Violation("public-exposure", lb.name, "only the web load balancer may be internet-facing"))
    if not any(lb.tier == "web" and not _truthy(lb.args.get("internal"))
               for lb in graph.find(type="lb.LoadBalancer")):
        violations.append(Violation("public-exposure", "web", "web tier has no internet-facing load balancer"))

    for template in graph.find(type="ec2.LaunchTemplate"):
        for interface in template.args.get("network_interfaces", []):
            if _truthy(interface.get("associate_public_ip_address")):
                violations.append(Violation("public-exposure", template.name, "assigns public IP addresses"))

    for db in graph.find(type="rds.Instance"):
        if _truthy(db.args.get("publicly_accessible", False)):
            violations.append(Violation("public-exposure", db.name, "database is publicly accessible"))

    for resource in graph:
        if resource.tier not in ("app", "data"):
            continue
        for subnet in _placed_subnets(graph, resource):
            if subnet.role != "private":
                violations.append(Violation(
                    "public-exposure", resource.name, f"is placed in non-private subnet {subnet.name}",
                ))
    return violations


RULES: Dict[str, Callable[[TopologyGraph, Config], List[Violation]]] = {
    "zone-span": check_zone_span,
    "private-subnet-egress": check_private_subnet_egress,
    "public-subnet-route": check_public_subnet_route,
    "web-ingress": check_web_ingress,
    "app-ingress": check_app_ingress,
    "db-ingress": check_db_ingress,
    "egress-chain": check_egress_chain,
    "load-balancer-groups": check_load_balancer_groups,
    "public-exposure": check_public_exposure,
}


def evaluate(graph: TopologyGraph, config: Config) -> List[Violation]:
    violations = []
    for check in RULES.values():
        violations.extend(check(graph, config))
    return violations


def enforce(graph: TopologyGraph, config: Config) -> None:
    violations = evaluate(graph, config)
    for violation in violations:
        pulumi.log.error(str(violation))
    if violations:
        raise PolicyViolationError(violations)
    pulumi.log.info(f"Topology satisfies all {len(RULES)} policy rules")
