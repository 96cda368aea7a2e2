"""
Error taxonomy for building and converging a site topology.

Plan-time errors (``ConfigError``, ``CycleError``) abort before any provider
call. Apply-time errors are recorded per node and aggregated into an
``ApplyError`` so a multi-resource plan never fails with a single opaque
exception.
"""

from typing import Any


class TopologyError(Exception):
    pass


class ConfigError(TopologyError):
    """
    Bad or missing input. Raised before any provider call.
    """


class CycleError(TopologyError):
    def __init__(self, cycle: list[str]):
        super().__init__(f"Dependency cycle between nodes: {' -> '.join(cycle)}")
        self.cycle = cycle


class ProviderError(TopologyError):
    """
    A provider call failed. Transient errors are retried at the node level;
    permanent errors fail the node and poison its dependents.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class ResourceTimeoutError(TopologyError):
    def __init__(self, node: str, operation: str, timeout: float):
        super().__init__(f"{node}: {operation} did not finish within {timeout}s")
        self.node = node
        self.operation = operation
        self.timeout = timeout


class Poisoned(TopologyError):
    """
    Raised to readers of a deferred value whose producer failed or was skipped.
    Not a failure on its own: dependents report ``Skipped``.
    """

    def __init__(self, origin: str):
        super().__init__(f"Upstream node {origin} did not resolve")
        self.origin = origin


class ApplyError(TopologyError):
    def __init__(self, report: Any):
        failed = ", ".join(f"{r.name} ({r.error})" for r in report.failed())
        super().__init__(f"Apply finished with failed nodes: {failed}")
        self.report = report
