"""
The four components of the topology, declared as graph nodes.

    network foundation -> web tier -> app tier -> data tier

Each component is constructed from the Config and the outputs of the
component before it, and only ever reads identifiers produced upstream.
Rules that open a path from tier N to tier N+1 (for example the web group's
egress to the app port) are declared by tier N+1, since only it knows the
target group's identifier.
"""

import base64
from dataclasses import dataclass
from typing import Dict, List, Optional

import pulumi

from config import Config, FleetConfig
from topology import Resource, TopologyGraph, ref

ANYWHERE = "0.0.0.0/0"

PUBLIC_LB_TYPE = "application"
INTERNAL_LB_TYPE = "network"

# AWS caps load balancer and target group names at 32 characters.
LB_NAME_LIMIT = 32


def aws_short_name(config: Config, base: str, limit: int = LB_NAME_LIMIT) -> str:
    name = f"{config.service}-{config.environment}-{base}".lower()
    return name[:limit].rstrip("-")


def read_user_data(path: Optional[str]) -> Optional[str]:
    """Return the bootstrap script base64-encoded, as launch templates expect."""
    if not path:
        return None
    with open(path, "rb") as script:
        return base64.b64encode(script.read()).decode("ascii")


def add_group_rule(graph: TopologyGraph, name: str, tier: str, direction: str,
                   group: str, peer: str, port: int, description: str) -> str:
    """Allow tcp on one port between two security groups."""
    rule_type = "vpc.SecurityGroupIngressRule" if direction == "ingress" else "vpc.SecurityGroupEgressRule"
    return graph.add(Resource(
        name=name,
        type=rule_type,
        tier=tier,
        role=direction,
        args={
            "security_group_id": group,
            "ip_protocol": "tcp",
            "from_port": port,
            "to_port": port,
            "referenced_security_group_id": peer,
            "description": description,
        },
    ))


def tier_tags(config: Config, tier: str, name: str) -> Dict[str, str]:
    tags = dict(config.tags)
    tags.update({"Name": name, "Tier": tier, "Environment": config.environment})
    return tags


@dataclass
class NetworkOutputs:
    vpc_id: str
    public_subnet_ids: List[str]
    private_subnet_ids: List[str]
    public_route_table_id: str
    private_route_table_ids: Dict[str, str]
    zones: List[str]


@dataclass
class WebTierOutputs:
    load_balancer_address: str
    security_group_id: str


@dataclass
class AppTierOutputs:
    load_balancer_address: str
    security_group_id: str
    load_balancer_security_group_id: str


@dataclass
class DataTierOutputs:
    endpoint: str
    security_group_id: str


class NetworkFoundation:
    """VPC, one public and one private subnet per zone, IGW, NAT egress."""

    tier = "network"

    def __init__(self, config: Config):
        self.config = config

    def build(self, graph: TopologyGraph) -> NetworkOutputs:
        network = self.config.network

        vpc = graph.add(Resource(
            name="vpc",
            type="ec2.Vpc",
            tier=self.tier,
            args={
                "cidr_block": network.cidr,
                "enable_dns_support": True,
                "enable_dns_hostnames": True,
            },
        ))
        igw = graph.add(Resource(
            name="igw",
            type="ec2.InternetGateway",
            tier=self.tier,
            args={"vpc_id": vpc},
        ))
        public_rt = graph.add(Resource(
            name="public-rt",
            type="ec2.RouteTable",
            tier=self.tier,
            role="public",
            args={
                "vpc_id": vpc,
                "routes": [{"cidr_block": ANYWHERE, "gateway_id": igw}],
            },
        ))

        public_subnets: Dict[str, str] = {}
        private_subnets: Dict[str, str] = {}
        for zone in network.zones:
            public_subnets[zone.name] = graph.add(Resource(
                name=f"public-subnet-{zone.name}",
                type="ec2.Subnet",
                tier=self.tier,
                zone=zone.name,
                role="public",
                args={
                    "vpc_id": vpc,
                    "cidr_block": zone.public_cidr,
                    "availability_zone": zone.name,
                    "map_public_ip_on_launch": False,
                },
            ))
            graph.add(Resource(
                name=f"public-rta-{zone.name}",
                type="ec2.RouteTableAssociation",
                tier=self.tier,
                zone=zone.name,
                role="public",
                args={"subnet_id": public_subnets[zone.name], "route_table_id": public_rt},
            ))
            private_subnets[zone.name] = graph.add(Resource(
                name=f"private-subnet-{zone.name}",
                type="ec2.Subnet",
                tier=self.tier,
                zone=zone.name,
                role="private",
                args={
                    "vpc_id": vpc,
                    "cidr_block": zone.private_cidr,
                    "availability_zone": zone.name,
                    "map_public_ip_on_launch": False,
                },
            ))

        nat_zones = self.config.zone_names
        if network.nat_gateways == "single":
            nat_zones = nat_zones[:1]
            pulumi.log.warn(
                f"Single NAT gateway in {nat_zones[0]}: private egress from other zones depends on that zone"
            )
        nat_gateways: Dict[str, str] = {}
        for zone_name in nat_zones:
            eip = graph.add(Resource(
                name=f"nat-eip-{zone_name}",
                type="ec2.Eip",
                tier=self.tier,
                zone=zone_name,
                args={"domain": "vpc"},
                depends_on=["igw"],
            ))
            nat_gateways[zone_name] = graph.add(Resource(
                name=f"nat-{zone_name}",
                type="ec2.NatGateway",
                tier=self.tier,
                zone=zone_name,
                args={"allocation_id": eip, "subnet_id": public_subnets[zone_name]},
                depends_on=["igw"],
            ))

        private_route_tables: Dict[str, str] = {}
        for zone_name in self.config.zone_names:
            nat = nat_gateways.get(zone_name) or nat_gateways[nat_zones[0]]
            private_route_tables[zone_name] = graph.add(Resource(
                name=f"private-rt-{zone_name}",
                type="ec2.RouteTable",
                tier=self.tier,
                zone=zone_name,
                role="private",
                args={
                    "vpc_id": vpc,
                    "routes": [{"cidr_block": ANYWHERE, "nat_gateway_id": nat}],
                },
            ))
            graph.add(Resource(
                name=f"private-rta-{zone_name}",
                type="ec2.RouteTableAssociation",
                tier=self.tier,
                zone=zone_name,
                role="private",
                args={
                    "subnet_id": private_subnets[zone_name],
                    "route_table_id": private_route_tables[zone_name],
                },
            ))

        return NetworkOutputs(
            vpc_id=vpc,
            public_subnet_ids=list(public_subnets.values()),
            private_subnet_ids=list(private_subnets.values()),
            public_route_table_id=public_rt,
            private_route_table_ids=private_route_tables,
            zones=self.config.zone_names,
        )


class _FleetTier:
    """Shared pieces of the web and app tiers: security group, rules, fleet."""

    tier = ""

    def __init__(self, config: Config, network: NetworkOutputs):
        self.config = config
        self.network = network

    def security_group(self, graph: TopologyGraph, description: str,
                       name: Optional[str] = None, role: str = "tier") -> str:
        # No inline rules: every allowed flow is a separate rule node, so a
        # group without rules denies everything.
        return graph.add(Resource(
            name=name or f"{self.tier}-sg",
            type="ec2.SecurityGroup",
            tier=self.tier,
            role=role,
            args={"vpc_id": self.network.vpc_id, "description": description},
        ))

    def fleet(self, graph: TopologyGraph, fleet: FleetConfig, security_group: str,
              subnets: List[str], target_group: str) -> str:
        instance_name = aws_short_name(self.config, self.tier, limit=255)
        args = {
            "image_id": fleet.image_id,
            "instance_type": fleet.instance_type,
            "network_interfaces": [{
                "associate_public_ip_address": "false",
                "delete_on_termination": "true",
                "security_groups": [security_group],
            }],
            "metadata_options": {"http_endpoint": "enabled", "http_tokens": "required"},
            "tag_specifications": [{
                "resource_type": "instance",
                "tags": tier_tags(self.config, self.tier, instance_name),
            }],
        }
        user_data = read_user_data(fleet.user_data)
        if user_data:
            args["user_data"] = user_data
        launch_template = graph.add(Resource(
            name=f"{self.tier}-lt",
            type="ec2.LaunchTemplate",
            tier=self.tier,
            args=args,
        ))
        return graph.add(Resource(
            name=f"{self.tier}-asg",
            type="autoscaling.Group",
            tier=self.tier,
            args={
                "min_size": fleet.min_size,
                "max_size": fleet.max_size,
                "desired_capacity": fleet.desired_capacity,
                "vpc_zone_identifiers": list(subnets),
                "target_group_arns": [ref(target_group, "arn")],
                "health_check_type": "ELB",
                "health_check_grace_period": 300,
                "launch_template": {"id": launch_template, "version": "$Latest"},
                "tags": [
                    {"key": key, "value": value, "propagate_at_launch": True}
                    for key, value in tier_tags(self.config, self.tier, instance_name).items()
                ],
            },
        ))


class WebTier(_FleetTier):
    """Internet-facing application load balancer and a fleet in the public subnets."""

    tier = "web"

    def build(self, graph: TopologyGraph) -> WebTierOutputs:
        web = self.config.web

        sg = self.security_group(graph, "Web tier: inbound on the web ports from anywhere")
        for port in web.listener_ports:
            graph.add(Resource(
                name=f"web-sg-ingress-{port}",
                type="vpc.SecurityGroupIngressRule",
                tier=self.tier,
                role="ingress",
                args={
                    "security_group_id": sg,
                    "ip_protocol": "tcp",
                    "from_port": port,
                    "to_port": port,
                    "cidr_ipv4": ANYWHERE,
                    "description": f"Port {port} from the internet",
                },
            ))
        # The load balancer shares the web group, so it needs this to reach its targets.
        add_group_rule(graph, "web-sg-egress-web", self.tier, "egress", sg, sg, web.port, "Load balancer to web fleet")

        alb = graph.add(Resource(
            name="web-alb",
            type="lb.LoadBalancer",
            tier=self.tier,
            role="public",
            args={
                "name": aws_short_name(self.config, "web"),
                "internal": False,
                "load_balancer_type": PUBLIC_LB_TYPE,
                "subnets": list(self.network.public_subnet_ids),
                "security_groups": [sg],
                "drop_invalid_header_fields": True,
            },
        ))
        target_group = graph.add(Resource(
            name="web-tg",
            type="lb.TargetGroup",
            tier=self.tier,
            args={
                "name": aws_short_name(self.config, "web-tg"),
                "port": web.port,
                "protocol": "HTTP",
                "target_type": "instance",
                "vpc_id": self.network.vpc_id,
                "health_check": {
                    "enabled": True,
                    "protocol": "HTTP",
                    "path": web.health_check_path,
                    "matcher": "200-399",
                    "healthy_threshold": 2,
                    "unhealthy_threshold": 3,
                    "interval": 15,
                },
            },
        ))
        for port in web.listener_ports:
            args = {
                "load_balancer_arn": ref("web-alb", "arn"),
                "port": port,
                "protocol": "HTTP",
                "default_actions": [{"type": "forward", "target_group_arn": ref("web-tg", "arn")}],
            }
            if port == 443:
                args.update({
                    "protocol": "HTTPS",
                    "certificate_arn": web.certificate_arn,
                    "ssl_policy": "ELBSecurityPolicy-TLS13-1-2-2021-06",
                })
            graph.add(Resource(
                name=f"web-listener-{port}",
                type="lb.Listener",
                tier=self.tier,
                args=args,
            ))

        self.fleet(graph, web, sg, self.network.public_subnet_ids, "web-tg")

        return WebTierOutputs(
            load_balancer_address=ref("web-alb", "dns_name"),
            security_group_id=sg,
        )


class AppTier(_FleetTier):
    """Internal network load balancer and a fleet in the private subnets.

    The load balancer has its own group, so the chain is
    web-sg -> app-lb-sg -> app-sg. Client IPs are not preserved: targets see
    the load balancer as the source of both traffic and health checks.
    """

    tier = "app"

    def __init__(self, config: Config, network: NetworkOutputs, web: WebTierOutputs):
        super().__init__(config, network)
        self.web = web

    def build(self, graph: TopologyGraph) -> AppTierOutputs:
        app = self.config.app

        lb_sg = self.security_group(
            graph, "App load balancer: inbound on the app port from the web tier only",
            name="app-lb-sg", role="lb",
        )
        sg = self.security_group(graph, "App tier: inbound on the app port from its load balancer only")

        add_group_rule(graph, "web-sg-egress-app-lb", "web", "egress",
                       self.web.security_group_id, lb_sg, app.port, "Web tier to the app load balancer")
        add_group_rule(graph, "app-lb-sg-ingress-web", self.tier, "ingress",
                       lb_sg, self.web.security_group_id, app.port, "App port from the web tier")
        add_group_rule(graph, "app-lb-sg-egress-app", self.tier, "egress",
                       lb_sg, sg, app.port, "Load balancer to app fleet, traffic and health checks")
        add_group_rule(graph, "app-sg-ingress-app-lb", self.tier, "ingress",
                       sg, lb_sg, app.port, "App port from the app load balancer")

        graph.add(Resource(
            name="app-nlb",
            type="lb.LoadBalancer",
            tier=self.tier,
            role="internal",
            args={
                "name": aws_short_name(self.config, "app"),
                "internal": True,
                "load_balancer_type": INTERNAL_LB_TYPE,
                "subnets": list(self.network.private_subnet_ids),
                "security_groups": [lb_sg],
                "enable_cross_zone_load_balancing": True,
            },
        ))
        graph.add(Resource(
            name="app-tg",
            type="lb.TargetGroup",
            tier=self.tier,
            args={
                "name": aws_short_name(self.config, "app-tg"),
                "port": app.port,
                "protocol": "TCP",
                "target_type": "instance",
                "preserve_client_ip": "false",
                "vpc_id": self.network.vpc_id,
                "health_check": {
                    "enabled": True,
                    "protocol": "TCP",
                    "port": "traffic-port",
                    "healthy_threshold": 3,
                    "unhealthy_threshold": 3,
                    "interval": 10,
                },
            },
        ))
        graph.add(Resource(
            name="app-listener",
            type="lb.Listener",
            tier=self.tier,
            args={
                "load_balancer_arn": ref("app-nlb", "arn"),
                "port": app.port,
                "protocol": "TCP",
                "default_actions": [{"type": "forward", "target_group_arn": ref("app-tg", "arn")}],
            },
        ))

        self.fleet(graph, app, sg, self.network.private_subnet_ids, "app-tg")

        return AppTierOutputs(
            load_balancer_address=ref("app-nlb", "dns_name"),
            security_group_id=sg,
            load_balancer_security_group_id=lb_sg,
        )


class DataTier:
    """Managed relational database in the private subnets."""

    tier = "data"

    def __init__(self, config: Config, network: NetworkOutputs, app: AppTierOutputs):
        self.config = config
        self.network = network
        self.app = app

    def build(self, graph: TopologyGraph) -> DataTierOutputs:
        database = self.config.database

        sg = graph.add(Resource(
            name="db-sg",
            type="ec2.SecurityGroup",
            tier=self.tier,
            role="tier",
            args={
                "vpc_id": self.network.vpc_id,
                "description": "Data tier: inbound on the database port from the app tier only",
            },
        ))
        add_group_rule(graph, "db-sg-ingress-app", self.tier, "ingress",
                       sg, self.app.security_group_id, database.port, "Database port from the app tier")
        add_group_rule(graph, "app-sg-egress-db", "app", "egress",
                       self.app.security_group_id, sg, database.port, "App tier to the database port")

        graph.add(Resource(
            name="db-subnet-group",
            type="rds.SubnetGroup",
            tier=self.tier,
            args={
                "subnet_ids": list(self.network.private_subnet_ids),
                "description": "Private subnets for the data tier",
            },
        ))

        args = {
            "engine": database.engine,
            "instance_class": database.instance_class,
            "allocated_storage": database.allocated_storage,
            "storage_type": "gp3",
            "storage_encrypted": True,
            "multi_az": database.multi_az,
            "port": database.port,
            "db_name": database.name,
            "username": database.username,
            "manage_master_user_password": True,
            "db_subnet_group_name": ref("db-subnet-group", "name"),
            "vpc_security_group_ids": [sg],
            "publicly_accessible": False,
            "backup_retention_period": database.backup_retention_days,
            "deletion_protection": database.deletion_protection,
            "skip_final_snapshot": not database.deletion_protection,
            "apply_immediately": False,
        }
        if database.engine_version:
            args["engine_version"] = database.engine_version
        if database.deletion_protection:
            args["final_snapshot_identifier"] = aws_short_name(self.config, "db-final", limit=255)
        if not database.multi_az:
            args["availability_zone"] = self.network.zones[0]
            pulumi.log.warn("database.multi_az is off: the data tier has no standby in a second zone")
        graph.add(Resource(
            name="db",
            type="rds.Instance",
            tier=self.tier,
            args=args,
        ))

        return DataTierOutputs(
            endpoint=ref("db", "endpoint"),
            security_group_id=sg,
        )


def build_topology(config: Config) -> TopologyGraph:
    """Declare every tier in order and the outputs published after provisioning."""
    graph = TopologyGraph()

    network = NetworkFoundation(config).build(graph)
    web = WebTier(config, network).build(graph)
    app = AppTier(config, network, web).build(graph)
    data = DataTier(config, network, app).build(graph)

    graph.export("vpc_id", network.vpc_id)
    graph.export("public_subnet_ids", network.public_subnet_ids)
    graph.export("private_subnet_ids", network.private_subnet_ids)
    graph.export("public_route_table_id", network.public_route_table_id)
    graph.export("private_route_table_ids", network.private_route_table_ids)
    graph.export("web_lb_address", web.load_balancer_address)
    graph.export("web_security_group_id", web.security_group_id)
    graph.export("app_lb_address", app.load_balancer_address)
    graph.export("app_security_group_id", app.security_group_id)
    graph.export("app_lb_security_group_id", app.load_balancer_security_group_id)
    graph.export("db_endpoint", data.endpoint)
    graph.export("db_security_group_id", data.security_group_id)

    graph.check_references()
    pulumi.log.info(f"Declared {len(graph)} resources across {len(config.zone_names)} zones")
    return graph
