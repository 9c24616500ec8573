# config.py
"""
This module defines the data structures for our configuration.
The YAML variables file is parsed into these dataclasses, and every tier
component receives the resulting Config object explicitly.
"""

import ipaddress
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

DEFAULT_IMAGE_ID = "resolve:ssm:/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"

DATABASE_DEFAULT_PORTS = {
    "postgres": 5432,
    "mysql": 3306,
    "mariadb": 3306,
}

NAT_GATEWAY_MODES = ("per_zone", "single")


class ConfigError(ValueError):
    """Raised when the variables file is missing keys or holds invalid values."""


@dataclass
class ZoneConfig:
    name: str
    public_cidr: str
    private_cidr: str


@dataclass
class NetworkConfig:
    cidr: str
    zones: List[ZoneConfig]
    nat_gateways: str = "per_zone"


@dataclass
class FleetConfig:
    instance_type: str
    port: int
    min_size: int = 2
    max_size: int = 4
    desired_capacity: int = 2
    image_id: str = DEFAULT_IMAGE_ID
    user_data: Optional[str] = None
    health_check_path: str = "/"


@dataclass
class WebFleetConfig(FleetConfig):
    listener_ports: List[int] = field(default_factory=lambda: [80])
    certificate_arn: Optional[str] = None


@dataclass
class DatabaseConfig:
    engine: str
    instance_class: str
    engine_version: Optional[str] = None
    allocated_storage: int = 20
    multi_az: bool = True
    port: Optional[int] = None
    name: str = "app"
    username: str = "app"
    backup_retention_days: int = 7
    deletion_protection: bool = True


@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    network: NetworkConfig
    web: WebFleetConfig
    app: FleetConfig
    database: DatabaseConfig
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def zone_names(self) -> List[str]:
        return [zone.name for zone in self.network.zones]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: str = ".") -> "Config":
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping at the top level")

        required_keys = ["team", "service", "environment", "region", "network", "web", "app", "database"]
        for key in required_keys:
            if key not in data:
                raise ConfigError(f"Missing required configuration key: {key}")
        _reject_unknown_keys(cls, data, "")

        network_data = _section(data, "network")
        zones_data = network_data.get("zones") or []
        if not isinstance(zones_data, list):
            raise ConfigError("network.zones must be a list")
        zones = [
            _build(ZoneConfig, zone, f"network.zones[{i}]")
            for i, zone in enumerate(zones_data)
        ]
        network = _build(NetworkConfig, dict(network_data, zones=zones), "network")

        web = _build(WebFleetConfig, _section(data, "web"), "web")
        app = _build(FleetConfig, _section(data, "app"), "app")
        database = _build(DatabaseConfig, _section(data, "database"), "database")

        if database.port is None and isinstance(database.engine, str):
            database.port = DATABASE_DEFAULT_PORTS.get(database.engine)

        for fleet, path in ((web, "web"), (app, "app")):
            if fleet.user_data is not None:
                _check_str(fleet.user_data, f"{path}.user_data")
                fleet.user_data = os.path.normpath(os.path.join(base_dir, fleet.user_data))

        tags = data.get("tags") or {}
        if not isinstance(tags, dict):
            raise ConfigError("tags must be a mapping of strings")

        config = cls(
            team=str(data["team"]),
            service=str(data["service"]),
            environment=str(data["environment"]),
            region=str(data["region"]),
            network=network,
            web=web,
            app=app,
            database=database,
            tags={str(k): str(v) for k, v in tags.items()},
        )
        validate_config(config)
        return config


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"Configuration key '{key}' must be a mapping")
    return value


def _reject_unknown_keys(cls, data: Dict[str, Any], path: str) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        where = path or "top level"
        raise ConfigError(f"Unrecognized configuration key(s) at {where}: {', '.join(unknown)}")


def _build(cls, data: Any, path: str):
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration key '{path}' must be a mapping")
    _reject_unknown_keys(cls, data, path)
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration at '{path}': {e}") from e


def _network(value: str, path: str):
    try:
        return ipaddress.ip_network(value)
    except ValueError as e:
        raise ConfigError(f"{path}: '{value}' is not a valid CIDR block") from e


def _check_int(value: Any, path: str, minimum: Optional[int] = None) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{path} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{path} must be at least {minimum}, got {value}")


def _check_bool(value: Any, path: str) -> None:
    if not isinstance(value, bool):
        raise ConfigError(f"{path} must be true or false, got {value!r}")


def _check_str(value: Any, path: str) -> None:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{path} must be a non-empty string, got {value!r}")


def _check_port(port: Any, path: str) -> None:
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        raise ConfigError(f"{path}: port must be an integer between 1 and 65535, got {port!r}")


def _check_fleet(fleet: FleetConfig, path: str) -> None:
    _check_str(fleet.instance_type, f"{path}.instance_type")
    _check_str(fleet.image_id, f"{path}.image_id")
    _check_port(fleet.port, f"{path}.port")
    _check_int(fleet.min_size, f"{path}.min_size", minimum=1)
    _check_int(fleet.max_size, f"{path}.max_size")
    _check_int(fleet.desired_capacity, f"{path}.desired_capacity")
    if not fleet.min_size <= fleet.desired_capacity <= fleet.max_size:
        raise ConfigError(
            f"{path}: expected min_size <= desired_capacity <= max_size, "
            f"got {fleet.min_size} / {fleet.desired_capacity} / {fleet.max_size}"
        )
    if fleet.user_data and not os.path.isfile(fleet.user_data):
        raise ConfigError(f"{path}.user_data: bootstrap script '{fleet.user_data}' does not exist")


def validate_config(config: Config) -> None:
    """Check cross-field constraints that the dataclasses cannot express."""
    network = config.network
    _check_str(network.nat_gateways, "network.nat_gateways")
    if network.nat_gateways not in NAT_GATEWAY_MODES:
        raise ConfigError(
            f"network.nat_gateways must be one of {', '.join(NAT_GATEWAY_MODES)}, got '{network.nat_gateways}'"
        )
    if len(network.zones) < 2:
        raise ConfigError("network.zones must list at least two availability zones")
    for i, zone in enumerate(network.zones):
        for attr in ("name", "public_cidr", "private_cidr"):
            _check_str(getattr(zone, attr), f"network.zones[{i}].{attr}")
    names = [zone.name for zone in network.zones]
    if len(set(names)) != len(names):
        raise ConfigError(f"network.zones contains duplicate zone names: {names}")

    _check_str(network.cidr, "network.cidr")
    vpc_block = _network(network.cidr, "network.cidr")
    subnet_blocks = []
    for i, zone in enumerate(network.zones):
        for attr in ("public_cidr", "private_cidr"):
            path = f"network.zones[{i}].{attr}"
            block = _network(getattr(zone, attr), path)
            if block.version != vpc_block.version or not block.subnet_of(vpc_block):
                raise ConfigError(f"{path}: {block} is not inside the VPC range {vpc_block}")
            for other_path, other in subnet_blocks:
                if block.overlaps(other):
                    raise ConfigError(f"{path}: {block} overlaps {other_path} ({other})")
            subnet_blocks.append((path, block))

    web = config.web
    _check_fleet(web, "web")
    _check_fleet(config.app, "app")
    if not isinstance(web.listener_ports, list) or not web.listener_ports:
        raise ConfigError("web.listener_ports must name at least one port")
    for port in web.listener_ports:
        _check_port(port, "web.listener_ports")
    if web.port not in web.listener_ports:
        raise ConfigError(f"web.port {web.port} must be one of web.listener_ports {web.listener_ports}")
    if 443 in web.listener_ports and not web.certificate_arn:
        raise ConfigError("web.certificate_arn is required when listening on port 443")

    database = config.database
    for attr in ("engine", "instance_class", "name", "username"):
        _check_str(getattr(database, attr), f"database.{attr}")
    if database.engine_version is not None:
        _check_str(database.engine_version, "database.engine_version")
    _check_int(database.allocated_storage, "database.allocated_storage")
    _check_int(database.backup_retention_days, "database.backup_retention_days", minimum=0)
    _check_bool(database.multi_az, "database.multi_az")
    _check_bool(database.deletion_protection, "database.deletion_protection")
    if database.engine not in DATABASE_DEFAULT_PORTS:
        raise ConfigError(
            f"database.engine must be one of {', '.join(sorted(DATABASE_DEFAULT_PORTS))}, got '{database.engine}'"
        )
    _check_port(database.port, "database.port")
    if database.allocated_storage < 20:
        raise ConfigError("database.allocated_storage must be at least 20 GiB")

    # Lower tiers must never be reachable on a port the internet can reach.
    for path, port in (("app.port", config.app.port), ("database.port", database.port)):
        if port in web.listener_ports:
            raise ConfigError(f"{path} {port} collides with a public web listener port")
    if config.app.port == database.port:
        raise ConfigError(f"app.port and database.port must differ, both are {database.port}")


def load_config(file_path: str) -> Config:
    """Load and validate YAML configuration from the given file path."""
    try:
        with open(file_path, "r") as file:
            config_data = yaml.safe_load(file)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse '{file_path}': {e}") from e
    if config_data is None:
        raise ConfigError(f"Configuration file '{file_path}' is empty")

    base_dir = os.path.dirname(os.path.abspath(file_path))
    return Config.from_dict(config_data, base_dir=base_dir)
