"""
Topology of a CDN-fronted static site with an optional API backend behind one
global HTTP(S) load balancer on Google Cloud.

- **build_topology**: validates a SiteConfig and builds the resource graph;
  every cross-resource value is a deferred ``Ref``.
- **Topology**: nodes plus the dependency order computed from their refs
  (plan order, destroy order, cycle detection).
- **Converger**: realizes a topology against a ``Provider`` with one asyncio
  task per node and reports the status of every node.
- **GcpSite** (``topology.gcp``): declares the same topology as pulumi_gcp
  resources for the Pulumi engine.
"""

from topology.builder import build_topology, check_invariants
from topology.converge import ApplyReport, ConvergeSettings, Converger, NodeResult, NodeStatus
from topology.deferred import Deferred
from topology.errors import (
    ApplyError,
    ConfigError,
    CycleError,
    Poisoned,
    ProviderError,
    ResourceTimeoutError,
    TopologyError,
)
from topology.graph import ContentSync, Node, Ref, ResourceKind, Template, Topology
from topology.outputs import OUTPUT_TEMPLATES, render_outputs
from topology.provider import InMemoryProvider, Provider, ResourceState

__all__ = [
    "ApplyError",
    "ApplyReport",
    "ConfigError",
    "ContentSync",
    "ConvergeSettings",
    "Converger",
    "CycleError",
    "Deferred",
    "InMemoryProvider",
    "Node",
    "NodeResult",
    "NodeStatus",
    "OUTPUT_TEMPLATES",
    "Poisoned",
    "Provider",
    "ProviderError",
    "Ref",
    "ResourceKind",
    "ResourceState",
    "ResourceTimeoutError",
    "Template",
    "Topology",
    "TopologyError",
    "build_topology",
    "check_invariants",
    "render_outputs",
]
