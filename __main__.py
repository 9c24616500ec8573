# main.py
import pulumi

from awsclassic import AwsResourceBuilder
from config import load_config
from policy import enforce
from tiers import build_topology


def main():
    # Load YAML configuration; the stack may point at another variables file
    config_file = pulumi.Config().get("config_file") or "config.yaml"
    try:
        config = load_config(config_file)
    except Exception as e:
        pulumi.log.error(f"Failed to load configuration from '{config_file}': {e}")
        raise

    # Declare the tiers and check them before anything is registered
    try:
        graph = build_topology(config)
        enforce(graph, config)
    except Exception as e:
        pulumi.log.error(f"Topology rejected: {e}")
        raise

    builder = AwsResourceBuilder(config, graph)
    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    builder.export_outputs()


if __name__ == "__main__":
    main()
