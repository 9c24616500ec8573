import inspect
from typing import Any, Dict

import pulumi
import pulumi_aws as aws

from config import Config
from topology import TopologyGraph, UnresolvedReferenceError, is_ref, parse_ref

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "ca-central-1": "cac1",
    "ca-west-1": "caw1",
    "sa-east-1": "sae1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-central-1": "euc1",
    "eu-central-2": "euc2",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "eu-south-2": "eus2",
    "me-south-1": "mes1",
    "me-central-1": "mec1",
    "il-central-1": "ilc1",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-south-2": "aps2",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ap-southeast-3": "apse3",
    "ap-southeast-4": "apse4",
}


class AwsResourceBuilder:
    def __init__(self, config: Config, graph: TopologyGraph):
        self.config = config
        self.graph = graph
        self.resources: Dict[str, pulumi.CustomResource] = {}
        self.provider = None

    def get_abbreviation(self, region: str) -> str:
        # If the region is recognized, use abbreviation; else drop the dashes
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.replace("-", "").lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.config.team.lower()
        service = self.config.service.lower()
        env = self.config.environment.lower()
        region_abbr = self.get_abbreviation(self.config.region)
        return f"{team}-{service}-{env}-{region_abbr}-{base_name}".lower()

    def resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self.resolve_args(value)
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        if is_ref(value):
            # handle "ref:resourceName.attribute"
            ref_res, ref_attr = parse_ref(value)
            if ref_res not in self.resources:
                raise UnresolvedReferenceError([("builder", ref_res)])
            attr_val = getattr(self.resources[ref_res], ref_attr, None)
            if attr_val is None:
                raise ValueError(f"Attribute '{ref_attr}' not found on resource '{ref_res}'")
            return attr_val
        return value

    def resolve_args(self, args: dict) -> dict:
        return {key: self.resolve_value(value) for key, value in args.items()}

    def resolve_class(self, resource_type: str):
        module_name, class_name = resource_type.rsplit(".", 1)
        module = getattr(aws, module_name, None)
        if module is None:
            raise ValueError(f"AWS module '{module_name}' not found for type '{resource_type}'")
        resource_class = getattr(module, class_name, None)
        if resource_class is None:
            raise ValueError(f"Resource class '{class_name}' not found in module '{module_name}'")
        return module, resource_class

    @staticmethod
    def accepts_tags(module, resource_class) -> bool:
        # Resource constructors take **kwargs; the generated Args type lists the real parameters.
        args_class = getattr(module, f"{resource_class.__name__}Args", None)
        target = args_class.__init__ if args_class is not None else resource_class._internal_init
        return "tags" in inspect.signature(target).parameters

    def create_provider(self) -> aws.Provider:
        default_tags = dict(self.config.tags)
        default_tags.setdefault("Team", self.config.team)
        default_tags.setdefault("Service", self.config.service)
        default_tags.setdefault("Environment", self.config.environment)
        return aws.Provider(
            self.generate_resource_name("aws"),
            region=self.config.region,
            default_tags={"tags": default_tags},
        )

    def build(self):
        # Missing references, cycles and unknown types all fail before anything is registered.
        ordered = self.graph.topological_order()
        classes = {resource.name: self.resolve_class(resource.type) for resource in ordered}
        self.provider = self.create_provider()

        for resource in ordered:
            module, resource_class = classes[resource.name]
            resolved_args = self.resolve_args(resource.args)

            pulumi_name = self.generate_resource_name(resource.name)
            if "tags" not in resolved_args and self.accepts_tags(module, resource_class):
                resolved_args["tags"] = {"Name": pulumi_name, "Tier": resource.tier}

            opts = pulumi.ResourceOptions(
                provider=self.provider,
                depends_on=[self.resources[name] for name in resource.depends_on],
            )
            self.resources[resource.name] = resource_class(pulumi_name, opts=opts, **resolved_args)
            pulumi.log.info(f"Created resource: {pulumi_name} ({resource.type})")

        return self.resources

    def export_outputs(self):
        for name, value in self.graph.outputs.items():
            pulumi.export(name, self.resolve_value(value))
