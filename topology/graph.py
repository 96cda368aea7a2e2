"""
Resource nodes and the dependency graph between them.

Every field that must be filled from another resource's resolved value is a
``Ref`` to ``(node, attribute)``. Dependencies are not declared separately:
they are computed by scanning a node's attributes for references, so the
order in which nodes are added has no influence on the order in which they
are realized.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

from topology.errors import ConfigError, CycleError


class ResourceKind(Enum):
    """
    Resource kinds of the site topology with the attributes each one produces.
    """

    STORAGE_ORIGIN = ("storage_origin", ("name", "self_link", "url"))
    ACCESS_GRANT = ("access_grant", ())
    CDN_EDGE = ("cdn_edge", ("self_link",))
    SERVICE_IDENTITY = ("service_identity", ("email",))
    IMAGE_PULL_GRANT = ("image_pull_grant", ())
    COMPUTE_INSTANCE = ("compute_instance", ("self_link", "network_ip"))
    INSTANCE_GROUP = ("instance_group", ("self_link",))
    FIREWALL_RULE = ("firewall_rule", ())
    HEALTH_CHECK = ("health_check", ("self_link",))
    BACKEND_SERVICE = ("backend_service", ("self_link",))
    RESERVED_ADDRESS = ("reserved_address", ("address",))
    CERTIFICATE = ("certificate", ("name", "self_link"))
    ROUTING_MAP = ("routing_map", ("self_link",))
    REDIRECT_MAP = ("redirect_map", ("self_link",))
    HTTPS_TERMINATION = ("https_termination", ("self_link",))
    HTTP_TERMINATION = ("http_termination", ("self_link",))
    FORWARDING_RULE = ("forwarding_rule", ())

    def __init__(self, label: str, produces: tuple[str, ...]):
        self.label = label
        self.produces = produces


# Kinds whose readiness is a long-running wait bounded by a timeout.
LONG_POLE_KINDS = frozenset({ResourceKind.CERTIFICATE})

# Kinds that report a runtime health status after creation.
HEALTH_REPORTING_KINDS = frozenset({ResourceKind.BACKEND_SERVICE})


@dataclass(frozen=True)
class Ref:
    """
    Deferred reference to an attribute another node produces.
    """

    node: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.node}.{self.attribute}"


@dataclass
class Node:
    name: str
    kind: ResourceKind
    attrs: dict[str, Any] = field(default_factory=dict)

    def ref(self, attribute: str) -> Ref:
        if attribute not in self.kind.produces:
            raise ConfigError(f"{self.kind.label} {self.name} does not produce {attribute!r}")
        return Ref(self.name, attribute)

    def refs(self) -> list[Ref]:
        return list(iter_refs(self.attrs))


@dataclass(frozen=True)
class Template:
    """
    String built from resolved references, e.g. "serviceAccount:{}" around an email.
    """

    fmt: str
    refs: tuple[Ref, ...]


@dataclass(frozen=True)
class ContentSync:
    """
    One-way sync contract from a local build directory into the storage origin.
    Carried by the topology; the mechanism belongs to the deployment engine.
    """

    local_path: str
    bucket: Ref


def iter_refs(value: Any) -> Iterator[Ref]:
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Template):
        yield from value.refs
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_refs(item)


def substitute_refs(
    value: Any,
    resolve: Callable[[Ref], Any],
    interpolate: Callable[..., Any] = str.format,
) -> Any:
    """
    Return a copy of value with every Ref replaced by resolve(ref) and every
    Template by interpolate(fmt, *resolved_refs).
    """
    if isinstance(value, Ref):
        return resolve(value)
    if isinstance(value, Template):
        return interpolate(value.fmt, *(resolve(ref) for ref in value.refs))
    if isinstance(value, dict):
        return {k: substitute_refs(v, resolve, interpolate) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute_refs(v, resolve, interpolate) for v in value]
    return value


class Topology:
    def __init__(self, nodes: Iterable[Node] = (), content_sync: Optional[ContentSync] = None):
        self.nodes: dict[str, Node] = {}
        self.content_sync = content_sync
        for node in nodes:
            self.add(node)

    def add(self, node: Node) -> Node:
        if node.name in self.nodes:
            raise ConfigError(f"Duplicate logical name: {node.name}")
        self.nodes[node.name] = node
        return node

    def __getitem__(self, name: str) -> Node:
        return self.nodes[name]

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def of_kind(self, kind: ResourceKind) -> list[Node]:
        return [node for node in self if node.kind is kind]

    def one_of_kind(self, kind: ResourceKind) -> Optional[Node]:
        found = self.of_kind(kind)
        return found[0] if len(found) == 1 else None

    def dependencies(self, name: str) -> set[str]:
        return {ref.node for ref in self.nodes[name].refs()}

    def dependents(self, name: str) -> set[str]:
        return {node.name for node in self if name in self.dependencies(node.name)}

    def transitive_dependents(self, name: str) -> set[str]:
        seen: set[str] = set()
        todo = [name]
        while todo:
            for dependent in self.dependents(todo.pop()):
                if dependent not in seen:
                    seen.add(dependent)
                    todo.append(dependent)
        return seen

    def validate_refs(self) -> None:
        for node in self:
            for ref in node.refs():
                producer = self.nodes.get(ref.node)
                if producer is None:
                    raise ConfigError(f"{node.name} references unknown node {ref.node}")
                if ref.attribute not in producer.kind.produces:
                    raise ConfigError(f"{node.name} references {ref}, which {producer.kind.label} does not produce")

    def plan_order(self) -> list[str]:
        """
        Order in which nodes can be realized: every node after all nodes it
        references. Ties keep insertion order. Raises CycleError.
        """
        self.validate_refs()
        remaining = {name: self.dependencies(name) for name in self.nodes}
        order: list[str] = []
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                raise CycleError(self._find_cycle(remaining))
            for name in ready:
                del remaining[name]
                order.append(name)
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def destroy_order(self) -> list[str]:
        return list(reversed(self.plan_order()))

    @staticmethod
    def _find_cycle(remaining: dict[str, set[str]]) -> list[str]:
        # every remaining node has a remaining dependency, so walking always hits a cycle
        path: list[str] = []
        current = next(iter(remaining))
        while current not in path:
            path.append(current)
            current = sorted(remaining[current])[0]
        return path[path.index(current) :] + [current]
