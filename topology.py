"""
Typed resource graph for the three-tier topology.

Nodes are declared resources; edges are the ``ref:<node>.<attribute>``
bindings found anywhere inside a node's arguments. The graph is built and
checked in full before anything is handed to the provider, so a binding to a
node that does not exist fails before any resource is registered.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pulumi

REF_PREFIX = "ref:"

TIERS = ("network", "web", "app", "data")


class TopologyError(ValueError):
    pass


class DuplicateResourceError(TopologyError):
    pass


class UnresolvedReferenceError(TopologyError):
    def __init__(self, missing: List[Tuple[str, str]]):
        self.missing = missing
        details = ", ".join(f"'{source}' -> '{target}'" for source, target in missing)
        super().__init__(f"Unresolved resource reference(s): {details}")


class DependencyCycleError(TopologyError):
    def __init__(self, nodes: List[str]):
        self.nodes = nodes
        super().__init__(f"Dependency cycle between resources: {', '.join(nodes)}")


def ref(name: str, attr: str = "id") -> str:
    return f"{REF_PREFIX}{name}.{attr}"


def is_ref(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(REF_PREFIX)


def parse_ref(value: str) -> Tuple[str, str]:
    """Split "ref:resourceName.attribute" into its parts; attribute defaults to id."""
    if not is_ref(value):
        raise TopologyError(f"Not a resource reference: {value!r}")
    ref_text = value[len(REF_PREFIX):]
    if "." in ref_text:
        ref_res, ref_attr = ref_text.split(".", 1)
    else:
        ref_res, ref_attr = (ref_text, "id")
    if not ref_res or not ref_attr:
        raise TopologyError(f"Malformed resource reference: {value!r}")
    return ref_res, ref_attr


def iter_refs(value: Any) -> Iterator[str]:
    """Yield every reference string nested in dicts and lists."""
    if isinstance(value, dict):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)
    elif is_ref(value):
        yield value


@dataclass
class Resource:
    """A single declared resource.

    ``type`` names a pulumi_aws class as "<module>.<Class>", e.g. "ec2.Subnet".
    ``role`` distinguishes resources of the same type within a tier
    ("public"/"private" subnets, "ingress"/"egress" rules and so on).
    """

    name: str
    type: str
    args: Dict[str, Any]
    tier: str
    zone: Optional[str] = None
    role: Optional[str] = None
    # Ordering-only edges for resources that must exist first but whose
    # outputs are not consumed.
    depends_on: List[str] = field(default_factory=list)

    def references(self) -> List[str]:
        return list(iter_refs(self.args))

    def dependencies(self) -> List[str]:
        seen = []
        for value in self.references():
            target, _ = parse_ref(value)
            if target not in seen:
                seen.append(target)
        for target in self.depends_on:
            if target not in seen:
                seen.append(target)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "type": self.type, "tier": self.tier, "args": self.args}
        if self.zone:
            data["zone"] = self.zone
        if self.role:
            data["role"] = self.role
        if self.depends_on:
            data["depends_on"] = list(self.depends_on)
        return data


class TopologyGraph:
    def __init__(self):
        self.resources: Dict[str, Resource] = {}
        self.outputs: Dict[str, Any] = {}

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, name: str) -> bool:
        return name in self.resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources.values())

    def add(self, resource: Resource) -> str:
        """Add a node and return a reference to its id."""
        if resource.name in self.resources:
            raise DuplicateResourceError(f"Resource '{resource.name}' is declared twice")
        if resource.tier not in TIERS:
            raise TopologyError(f"Resource '{resource.name}' has unknown tier '{resource.tier}'")
        self.resources[resource.name] = resource
        return ref(resource.name)

    def get(self, name: str) -> Resource:
        try:
            return self.resources[name]
        except KeyError:
            raise TopologyError(f"Resource '{name}' not found.") from None

    def resolve(self, value: str) -> Resource:
        """Return the node a reference string points at."""
        name, _ = parse_ref(value)
        return self.get(name)

    def find(self, type: Optional[str] = None, tier: Optional[str] = None,
             role: Optional[str] = None, zone: Optional[str] = None) -> List[Resource]:
        return [
            r for r in self.resources.values()
            if (type is None or r.type == type)
            and (tier is None or r.tier == tier)
            and (role is None or r.role == role)
            and (zone is None or r.zone == zone)
        ]

    def find_one(self, **criteria) -> Resource:
        matches = self.find(**criteria)
        if len(matches) != 1:
            raise TopologyError(f"Expected exactly one resource matching {criteria}, found {len(matches)}")
        return matches[0]

    def dependencies(self, name: str) -> List[str]:
        return self.get(name).dependencies()

    def dependents(self, name: str) -> List[str]:
        return [r.name for r in self.resources.values() if name in r.dependencies()]

    def export(self, output_name: str, value: Any) -> None:
        """Declare a published output; value is a reference or a list/dict of them."""
        if output_name in self.outputs:
            raise TopologyError(f"Output '{output_name}' is declared twice")
        self.outputs[output_name] = value

    def check_references(self) -> None:
        missing = []
        for resource in self.resources.values():
            for target in resource.dependencies():
                if target not in self.resources:
                    missing.append((resource.name, target))
        for output_name, value in self.outputs.items():
            for item in iter_refs(value):
                target, _ = parse_ref(item)
                if target not in self.resources:
                    missing.append((f"output:{output_name}", target))
        if missing:
            raise UnresolvedReferenceError(missing)

    def topological_order(self) -> List[Resource]:
        """Order nodes so every node follows the nodes it reads.

        Ties keep declaration order, so the same graph always yields the
        same sequence of registrations.
        """
        self.check_references()

        pending = {name: set(r.dependencies()) for name, r in self.resources.items()}
        ordered: List[Resource] = []
        while pending:
            ready = [name for name, deps in pending.items() if not deps]
            if not ready:
                raise DependencyCycleError(sorted(pending))
            for name in ready:
                ordered.append(self.resources[name])
                del pending[name]
            for deps in pending.values():
                deps.difference_update(ready)
        pulumi.log.info(f"Resolved dependency order for {len(ordered)} resources")
        return ordered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resources": [r.to_dict() for r in self.resources.values()],
            "outputs": dict(self.outputs),
        }
