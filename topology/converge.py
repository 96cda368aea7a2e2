"""
Converge a topology against a provider.

Every node gets its own asyncio task. A task first awaits the deferred values
of all references in the node's attributes, so realization follows data
dependencies and siblings without an edge between them run concurrently. The
outcome of every node ends up in an ``ApplyReport``; one failing node never
turns into a single opaque failure of the whole plan:

- transient provider errors are retried with exponential backoff and are
  invisible to dependents,
- permanent errors fail the node and poison its outputs, so every node that
  reads them is skipped, while independent subgraphs carry on,
- certificate provisioning is bounded by a timeout (a distinct error kind),
- backend health is polled and reported, but never fails the plan.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from topology.deferred import Deferred, gather_values
from topology.errors import ApplyError, Poisoned, ProviderError, ResourceTimeoutError
from topology.graph import HEALTH_REPORTING_KINDS, LONG_POLE_KINDS, Node, Ref, ResourceKind, Topology, substitute_refs
from topology.outputs import OutputProjection, output_inputs
from topology.provider import HEALTHY, UNKNOWN, Provider

log = logging.getLogger(__name__)


class NodeStatus(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    DELETED = "deleted"


@dataclass
class ConvergeSettings:
    max_attempts: int = 5
    backoff_min: float = 0.5
    backoff_max: float = 10.0
    certificate_timeout: float = 900.0
    health_timeout: float = 300.0
    health_poll_interval: float = 10.0


@dataclass
class NodeResult:
    name: str
    kind: ResourceKind
    status: NodeStatus
    error: Optional[Exception] = None
    # node whose failure caused this one to be skipped
    upstream: Optional[str] = None
    health: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        text = f"{self.name}: {self.status.value}"
        if self.upstream:
            text += f" ({self.upstream})"
        if self.error:
            text += f" [{self.error}]"
        if self.health:
            text += f" health={self.health}"
        return text


@dataclass
class ApplyReport:
    results: dict[str, NodeResult] = field(default_factory=dict)
    outputs: dict[str, Optional[str]] = field(default_factory=dict)

    def add(self, result: NodeResult) -> None:
        self.results[result.name] = result

    def status(self, name: str) -> NodeStatus:
        return self.results[name].status

    def with_status(self, *status: NodeStatus) -> list[str]:
        return [r.name for r in self.results.values() if r.status in status]

    def failed(self) -> list[NodeResult]:
        return [r for r in self.results.values() if r.status is NodeStatus.FAILED]

    def skipped(self) -> list[NodeResult]:
        return [r for r in self.results.values() if r.status is NodeStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        return not self.failed() and not self.skipped()

    def raise_for_errors(self) -> None:
        if not self.ok:
            raise ApplyError(self)

    def summary(self) -> str:
        return "\n".join(str(r) for r in self.results.values())


def _is_transient(ex: BaseException) -> bool:
    return isinstance(ex, ProviderError) and ex.transient


class Converger:
    def __init__(self, provider: Provider, settings: Optional[ConvergeSettings] = None):
        self.provider = provider
        self.settings = settings or ConvergeSettings()
        self._in_flight: set[asyncio.Future[Any]] = set()
        self._stopping = False

    async def apply(self, topology: Topology, prune: bool = False) -> ApplyReport:
        """
        Create, update or keep every node so the provider matches the topology.

        With ``prune``, resources the provider manages that are no longer part
        of the topology are deleted afterwards, dependents first.

        Raises CycleError before any provider call. Cancelling the returned
        coroutine lets in-flight provider calls finish, starts nothing new and
        re-raises CancelledError.
        """
        order = topology.plan_order()
        self._stopping = False
        report = ApplyReport()
        values: dict[Ref, Deferred[Any]] = {
            Ref(node.name, attribute): Deferred(f"{node.name}.{attribute}")
            for node in topology
            for attribute in node.kind.produces
        }
        inputs = output_inputs(topology)
        projection = OutputProjection(values[inputs[0]], values[inputs[1]], inputs[2]) if inputs else None
        tasks = [
            asyncio.create_task(self._realize(topology, topology[name], values, report), name=name) for name in order
        ]
        log.info(f"Converging {len(tasks)} nodes")
        try:
            await asyncio.gather(*tasks)
            if projection is not None:
                report.outputs = await projection.wait()
            if prune:
                await self._prune(topology, report)
        except asyncio.CancelledError:
            await self._stop(tasks)
            if projection is not None:
                projection.cancel()
            raise
        log.info(f"Converged: {self._counts(report)}")
        log.debug(f"Apply report:\n{report.summary()}")
        return report

    async def destroy(self, topology: Topology) -> ApplyReport:
        """
        Delete every node of the topology, each one only after all nodes that
        reference it. Nodes the provider does not know are reported unchanged.
        """
        topology.plan_order()
        self._stopping = False
        report = ApplyReport()
        dependents = {node.name: topology.dependents(node.name) for node in topology}
        kinds = {node.name: node.kind for node in topology}
        await self._delete_all(dependents, kinds, report)
        log.info(f"Destroyed: {self._counts(report)}")
        log.debug(f"Destroy report:\n{report.summary()}")
        return report

    async def _realize(
        self, topology: Topology, node: Node, values: dict[Ref, Deferred[Any]], report: ApplyReport
    ) -> None:
        own = [values[Ref(node.name, attribute)] for attribute in node.kind.produces]
        try:
            resolved = await gather_values({ref: values[ref] for ref in node.refs()})
        except Poisoned as ex:
            log.info(f"Skipping {node.name}: upstream {ex.origin} did not resolve")
            report.add(NodeResult(node.name, node.kind, NodeStatus.SKIPPED, upstream=ex.origin))
            for value in own:
                value.poison(ex.origin)
            return

        inputs = substitute_refs(node.attrs, resolved.__getitem__)
        depends_on = sorted(topology.dependencies(node.name))
        try:
            status, outputs = await self._converge_node(node, inputs, depends_on)
            if node.kind in LONG_POLE_KINDS:
                await self._wait_ready(node, outputs)
        except (ProviderError, ResourceTimeoutError) as ex:
            log.error(f"Failed to converge {node.name}: {ex}")
            report.add(NodeResult(node.name, node.kind, NodeStatus.FAILED, error=ex))
            for value in own:
                value.poison(node.name)
            return

        result = NodeResult(node.name, node.kind, status)
        report.add(result)
        for attribute in node.kind.produces:
            values[Ref(node.name, attribute)].resolve(outputs[attribute])
        if node.kind in HEALTH_REPORTING_KINDS:
            result.health = await self._await_health(node, outputs, result)

    async def _converge_node(
        self, node: Node, inputs: dict[str, Any], depends_on: list[str]
    ) -> tuple[NodeStatus, dict[str, Any]]:
        existing = await self._call(self.provider.read, node.name)
        if existing is None:
            log.debug(f"Creating {node.name}")
            return NodeStatus.CREATED, await self._call(self.provider.create, node, inputs, depends_on)
        if existing.kind is node.kind and existing.inputs == inputs:
            return NodeStatus.UNCHANGED, existing.outputs
        log.debug(f"Updating {node.name} in place")
        return NodeStatus.UPDATED, await self._call(self.provider.update, node, inputs, depends_on)

    async def _call(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        result = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.settings.backoff_min, max=self.settings.backoff_max),
            reraise=True,
        ):
            with attempt:
                if self._stopping:
                    raise asyncio.CancelledError()
                result = await self._shielded(fn(*args))
        return result

    async def _shielded(self, call: Awaitable[Any]) -> Any:
        # a cancelled apply must not abandon a provider call half way
        future = asyncio.ensure_future(call)
        self._in_flight.add(future)
        future.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(future)

    async def _stop(self, tasks: list["asyncio.Task[None]"]) -> None:
        self._stopping = True
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._in_flight:
            log.info(f"Apply cancelled, waiting for {len(self._in_flight)} provider calls to finish")
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _wait_ready(self, node: Node, outputs: dict[str, Any]) -> None:
        timeout = self.settings.certificate_timeout
        try:
            await asyncio.wait_for(self.provider.wait_ready(node, outputs), timeout=timeout)
        except asyncio.TimeoutError as ex:
            raise ResourceTimeoutError(node.name, "provisioning", timeout) from ex

    async def _await_health(self, node: Node, outputs: dict[str, Any], result: NodeResult) -> str:
        observed = UNKNOWN

        async def poll() -> None:
            nonlocal observed
            while True:
                observed = await self.provider.health(node, outputs)
                if observed == HEALTHY:
                    return
                await asyncio.sleep(self.settings.health_poll_interval)

        try:
            await asyncio.wait_for(poll(), timeout=self.settings.health_timeout)
        except asyncio.TimeoutError:
            timeout = ResourceTimeoutError(node.name, "health check", self.settings.health_timeout)
            log.warning(f"{timeout}, last status {observed}")
            result.warnings.append(str(timeout))
        except ProviderError as ex:
            log.warning(f"Could not read health of {node.name}: {ex}")
            result.warnings.append(str(ex))
        return observed

    async def _prune(self, topology: Topology, report: ApplyReport) -> None:
        recorded = {name: await self._call(self.provider.read, name) for name in await self.provider.list_names()}
        states = {name: state for name, state in recorded.items() if state is not None}
        stale = {name: state for name, state in states.items() if name not in topology}
        if not stale:
            return
        log.info(f"Pruning {len(stale)} resources no longer in the topology")
        dependents = {name: {o for o, s in states.items() if name in s.depends_on} for name in stale}
        # a live resource that still references a stale one failed or was skipped this run
        held = {name: min(holders - set(stale)) for name, holders in dependents.items() if holders - set(stale)}
        await self._delete_all(
            {name: holders & set(stale) for name, holders in dependents.items()},
            {name: s.kind for name, s in stale.items()},
            report,
            held,
        )

    async def _delete_all(
        self,
        dependents: dict[str, set[str]],
        kinds: dict[str, ResourceKind],
        report: ApplyReport,
        held: Optional[dict[str, str]] = None,
    ) -> None:
        # resolved once a node is gone, poisoned when it is still there
        gone: dict[str, Deferred[bool]] = {name: Deferred(name) for name in dependents}
        held = held or {}

        async def delete(name: str) -> None:
            try:
                if name in held:
                    raise Poisoned(held[name])
                await gather_values({d: gone[d] for d in dependents[name]})
            except Poisoned as ex:
                report.add(NodeResult(name, kinds[name], NodeStatus.SKIPPED, upstream=ex.origin))
                gone[name].poison(ex.origin)
                return
            try:
                if await self._call(self.provider.read, name) is None:
                    report.add(NodeResult(name, kinds[name], NodeStatus.UNCHANGED))
                else:
                    await self._call(self.provider.delete, name)
                    report.add(NodeResult(name, kinds[name], NodeStatus.DELETED))
            except ProviderError as ex:
                log.error(f"Failed to delete {name}: {ex}")
                report.add(NodeResult(name, kinds[name], NodeStatus.FAILED, error=ex))
                gone[name].poison(name)
                return
            gone[name].resolve(True)

        tasks = [asyncio.create_task(delete(name), name=f"delete-{name}") for name in dependents]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            await self._stop(tasks)
            raise

    @staticmethod
    def _counts(report: ApplyReport) -> str:
        counts: dict[str, int] = {}
        for result in report.results.values():
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
