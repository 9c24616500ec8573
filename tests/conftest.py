import copy
import os

import pytest

from config import Config
from tiers import build_topology

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

BASE_CONFIG = {
    "team": "platform",
    "service": "shop",
    "environment": "test",
    "region": "us-east-1",
    "tags": {"Owner": "platform-team"},
    "network": {
        "cidr": "10.0.0.0/16",
        "zones": [
            {"name": "us-east-1a", "public_cidr": "10.0.0.0/24", "private_cidr": "10.0.10.0/24"},
            {"name": "us-east-1b", "public_cidr": "10.0.1.0/24", "private_cidr": "10.0.11.0/24"},
        ],
    },
    "web": {
        "instance_type": "t3.micro",
        "port": 80,
        "listener_ports": [80],
        "min_size": 2,
        "max_size": 4,
        "desired_capacity": 2,
    },
    "app": {
        "instance_type": "t3.micro",
        "port": 8080,
        "min_size": 2,
        "max_size": 4,
        "desired_capacity": 2,
    },
    "database": {
        "engine": "postgres",
        "instance_class": "db.t3.micro",
        "multi_az": True,
    },
}


@pytest.fixture
def config_data():
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def config(config_data):
    return Config.from_dict(config_data, base_dir=REPO_ROOT)


@pytest.fixture
def graph(config):
    return build_topology(config)
