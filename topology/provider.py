"""
Provider boundary: the create/read/update/delete calls the converger makes
for each node, and an in-memory provider that simulates Google Cloud.

The converger relies on three things from a provider: calls are idempotent
for a stable logical name, produced attributes (names, self-links,
addresses) come back as results of those calls, and failures say whether a
retry can help (``ProviderError.transient``).
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from topology.errors import ProviderError
from topology.graph import Node, ResourceKind

HEALTHY = "HEALTHY"
UNHEALTHY = "UNHEALTHY"
UNKNOWN = "UNKNOWN"


@dataclass
class ResourceState:
    name: str
    kind: ResourceKind
    inputs: dict[str, Any]
    outputs: dict[str, Any]
    depends_on: list[str] = field(default_factory=list)


class Provider(ABC):
    @abstractmethod
    async def read(self, name: str) -> Optional[ResourceState]:
        pass

    @abstractmethod
    async def create(self, node: Node, inputs: dict[str, Any], depends_on: list[str]) -> dict[str, Any]:
        """
        Create the resource and return the attributes its kind produces.
        """

    @abstractmethod
    async def update(self, node: Node, inputs: dict[str, Any], depends_on: list[str]) -> dict[str, Any]:
        """
        Update the resource in place and return the attributes its kind produces.
        """

    @abstractmethod
    async def delete(self, name: str) -> None:
        pass

    @abstractmethod
    async def list_names(self) -> list[str]:
        """
        Logical names of all resources this provider manages.
        """

    async def wait_ready(self, node: Node, outputs: dict[str, Any]) -> None:
        """
        Wait until a long-running resource (e.g. a managed certificate) is
        usable. The caller bounds the wait.
        """

    async def health(self, node: Node, outputs: dict[str, Any]) -> str:
        return UNKNOWN


_COMPUTE_API = "https://www.googleapis.com/compute/v1"

# (collection, zonal) of the self-link of each compute kind
_COLLECTIONS: dict[ResourceKind, tuple[str, bool]] = {
    ResourceKind.CDN_EDGE: ("backendBuckets", False),
    ResourceKind.COMPUTE_INSTANCE: ("instances", True),
    ResourceKind.INSTANCE_GROUP: ("instanceGroups", True),
    ResourceKind.HEALTH_CHECK: ("healthChecks", False),
    ResourceKind.BACKEND_SERVICE: ("backendServices", False),
    ResourceKind.CERTIFICATE: ("sslCertificates", False),
    ResourceKind.ROUTING_MAP: ("urlMaps", False),
    ResourceKind.REDIRECT_MAP: ("urlMaps", False),
    ResourceKind.HTTPS_TERMINATION: ("targetHttpsProxies", False),
    ResourceKind.HTTP_TERMINATION: ("targetHttpProxies", False),
}


@dataclass
class _Failure:
    transient: bool
    remaining: Optional[int]
    operations: tuple[str, ...]


class InMemoryProvider(Provider):
    """
    Simulated Google Cloud project.

    Resources are kept in a dict by logical name and get deterministic
    self-links, bucket names, service account emails and addresses. Every
    mutating call is appended to ``calls`` as ``(operation, name)``.

    Test hooks:
        fail(name, ...): make calls for a node raise ProviderError.
        delay_ready(name, seconds): slow down wait_ready of a node.
        latency: seconds every call sleeps, to let sibling tasks interleave.
    """

    def __init__(self, project: str = "site-project", latency: float = 0.0):
        self.project = project
        self.latency = latency
        self.resources: dict[str, ResourceState] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, _Failure] = {}
        self._ready_delay: dict[str, float] = {}
        self._addresses = itertools.count(10)
        self._network_ips = itertools.count(2)

    def fail(
        self,
        name: str,
        transient: bool = False,
        times: Optional[int] = None,
        operations: tuple[str, ...] = ("create", "update", "delete"),
    ) -> None:
        """
        Make the next ``times`` calls (all calls when None) for ``name`` fail.
        """
        self._failures[name] = _Failure(transient, times, operations)

    def delay_ready(self, name: str, seconds: float) -> None:
        self._ready_delay[name] = seconds

    async def _enter(self, operation: str, name: str) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        failure = self._failures.get(name)
        if failure is not None and operation in failure.operations and failure.remaining != 0:
            if failure.remaining is not None:
                failure.remaining -= 1
            self.calls.append((f"{operation}-failed", name))
            raise ProviderError(f"simulated {operation} failure of {name}", transient=failure.transient)
        if operation != "read":
            self.calls.append((operation, name))

    async def read(self, name: str) -> Optional[ResourceState]:
        await self._enter("read", name)
        return self.resources.get(name)

    async def create(self, node: Node, inputs: dict[str, Any], depends_on: list[str]) -> dict[str, Any]:
        await self._enter("create", node.name)
        if node.name in self.resources:
            raise ProviderError(f"{node.name} already exists")
        outputs = self._produce(node, inputs)
        self.resources[node.name] = ResourceState(node.name, node.kind, inputs, outputs, depends_on)
        return outputs

    async def update(self, node: Node, inputs: dict[str, Any], depends_on: list[str]) -> dict[str, Any]:
        await self._enter("update", node.name)
        state = self.resources.get(node.name)
        if state is None:
            raise ProviderError(f"{node.name} does not exist")
        state.inputs = inputs
        state.depends_on = depends_on
        return state.outputs

    async def delete(self, name: str) -> None:
        await self._enter("delete", name)
        if self.resources.pop(name, None) is None:
            raise ProviderError(f"{name} does not exist")

    async def list_names(self) -> list[str]:
        return list(self.resources)

    async def wait_ready(self, node: Node, outputs: dict[str, Any]) -> None:
        delay = self._ready_delay.get(node.name)
        if delay:
            await asyncio.sleep(delay)

    async def health(self, node: Node, outputs: dict[str, Any]) -> str:
        """
        A backend is healthy when every member instance admits the health
        check port through an ingress firewall rule and its group maps the
        backend's port name.
        """
        state = self.resources.get(node.name)
        if state is None:
            return UNKNOWN
        by_link = {s.outputs.get("self_link"): s for s in self.resources.values()}
        health_check = by_link.get(state.inputs.get("health_checks"))
        if health_check is None:
            return UNKNOWN
        port = health_check.inputs["http_health_check"]["port"]
        firewalls = [
            s.inputs
            for s in self.resources.values()
            if s.kind is ResourceKind.FIREWALL_RULE and s.inputs.get("direction") == "INGRESS"
        ]

        def admitted(tags: list[str]) -> bool:
            return any(
                set(tags) & set(rule.get("target_tags", []))
                and any(str(port) in allow.get("ports", []) for allow in rule.get("allows", []))
                for rule in firewalls
            )

        for backend in state.inputs.get("backends", []):
            group = by_link.get(backend["group"])
            if group is None:
                return UNKNOWN
            named = {p["name"] for p in group.inputs.get("named_ports", [])}
            if state.inputs.get("port_name") not in named:
                return UNHEALTHY
            for link in group.inputs.get("instances", []):
                instance = by_link.get(link)
                if instance is None or not admitted(instance.inputs.get("tags", [])):
                    return UNHEALTHY
        return HEALTHY

    def _produce(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]:
        kind = node.kind
        if kind is ResourceKind.STORAGE_ORIGIN:
            return {
                "name": node.name,
                "self_link": f"https://www.googleapis.com/storage/v1/b/{node.name}",
                "url": f"gs://{node.name}",
            }
        if kind is ResourceKind.SERVICE_IDENTITY:
            return {"email": f"{inputs['account_id']}@{self.project}.iam.gserviceaccount.com"}
        if kind is ResourceKind.RESERVED_ADDRESS:
            n = next(self._addresses)
            return {"address": f"34.117.{n // 256}.{n % 256}"}
        outputs: dict[str, Any] = {}
        if kind in _COLLECTIONS:
            collection, zonal = _COLLECTIONS[kind]
            scope = f"zones/{inputs['zone']}" if zonal else "global"
            outputs["self_link"] = f"{_COMPUTE_API}/projects/{self.project}/{scope}/{collection}/{node.name}"
        if kind is ResourceKind.CERTIFICATE:
            outputs["name"] = node.name
        if kind is ResourceKind.COMPUTE_INSTANCE:
            outputs["network_ip"] = f"10.128.0.{next(self._network_ips)}"
        return outputs
