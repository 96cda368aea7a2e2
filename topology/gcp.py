"""
Google Cloud declaration of a site topology through Pulumi.

This component declares every node of a ``Topology`` as the matching
``pulumi_gcp`` resource, in plan order. A ``Ref`` becomes the ``Output`` of the
resource that produces it, so the Pulumi engine sees the same data
dependencies the converger orders by. The Pulumi engine is the resource
engine here: it creates, updates in place and deletes, dependents first.

The build directory is mirrored into the origin bucket with a synced folder
once the bucket name is known. Outputs (``originURL``, ``originHostname``,
``cdnURL``, ``cdnHostname``) are ``Output[str]`` built from the same templates
the converger renders.
"""

from typing import Any, Callable

import pulumi
import pulumi_gcp as gcp
import pulumi_synced_folder as synced_folder

from topology.graph import Node, Ref, ResourceKind, Topology, substitute_refs
from topology.outputs import output_inputs, render_outputs

ID = "sitetopology:gcp:GcpSite"

RESOURCE_TYPES: dict[ResourceKind, Callable[..., pulumi.CustomResource]] = {
    ResourceKind.STORAGE_ORIGIN: gcp.storage.Bucket,
    ResourceKind.ACCESS_GRANT: gcp.storage.BucketIAMBinding,
    ResourceKind.CDN_EDGE: gcp.compute.BackendBucket,
    ResourceKind.SERVICE_IDENTITY: gcp.serviceaccount.Account,
    ResourceKind.IMAGE_PULL_GRANT: gcp.artifactregistry.RepositoryIamMember,
    ResourceKind.COMPUTE_INSTANCE: gcp.compute.Instance,
    ResourceKind.INSTANCE_GROUP: gcp.compute.InstanceGroup,
    ResourceKind.FIREWALL_RULE: gcp.compute.Firewall,
    ResourceKind.HEALTH_CHECK: gcp.compute.HealthCheck,
    ResourceKind.BACKEND_SERVICE: gcp.compute.BackendService,
    ResourceKind.RESERVED_ADDRESS: gcp.compute.GlobalAddress,
    ResourceKind.CERTIFICATE: gcp.compute.ManagedSslCertificate,
    ResourceKind.ROUTING_MAP: gcp.compute.URLMap,
    ResourceKind.REDIRECT_MAP: gcp.compute.URLMap,
    ResourceKind.HTTPS_TERMINATION: gcp.compute.TargetHttpsProxy,
    ResourceKind.HTTP_TERMINATION: gcp.compute.TargetHttpProxy,
    ResourceKind.FORWARDING_RULE: gcp.compute.GlobalForwardingRule,
}


def _first_network_ip(instance: Any) -> pulumi.Output[str]:
    return instance.network_interfaces.apply(lambda nics: nics[0].network_ip)


# Produced attributes that are not a property of the same name on the resource.
_OUTPUT_GETTERS: dict[tuple[ResourceKind, str], Callable[[Any], pulumi.Output[Any]]] = {
    (ResourceKind.COMPUTE_INSTANCE, "network_ip"): _first_network_ip,
}


class GcpSite(pulumi.ComponentResource):
    """
    All resources of a site topology, parented to one component.

    Resources are named by their logical node names; Pulumi appends a random
    suffix to the physical names where GCP needs global uniqueness (e.g. the
    bucket), which is why dependents read names through references.
    """

    def __init__(
        self,
        name: str,
        topology: Topology,
    ):
        """
        Declare the topology.

        Args:
            name: Pulumi resource name of the component.
            topology: Graph built by ``build_topology``. Its plan order is
                computed first, so a cycle fails before anything is declared.

        Outputs (set on self, registered for the component):
            outputs: Mapping of output key to Output[str].
        """
        super().__init__(ID, name)

        # Child resources get parent=self so Pulumi groups them in the UI and
        # deletes them with the component.
        self._child_opts = pulumi.ResourceOptions(parent=self)
        self.resources: dict[str, pulumi.CustomResource] = {}
        self._kinds = {node.name: node.kind for node in topology}

        for node_name in topology.plan_order():
            node = topology[node_name]
            self.resources[node_name] = self._declare(node)

        # Content sync runs once the bucket exists; nothing reads from it.
        if topology.content_sync is not None:
            pulumi.log.info(f"Syncing {topology.content_sync.local_path} into the origin bucket")
            synced_folder.GoogleCloudFolder(
                f"{name}-synced-folder",
                path=topology.content_sync.local_path,
                bucket_name=self._resolve(topology.content_sync.bucket),
                opts=self._child_opts,
            )

        self.outputs: dict[str, pulumi.Output[str]] = {}
        inputs = output_inputs(topology)
        if inputs is not None:
            bucket, address, https = inputs
            self.outputs = render_outputs(
                self._resolve(bucket),
                self._resolve(address),
                https,
                render=pulumi.Output.format,
            )
        self.register_outputs(dict(self.outputs))

    def _declare(self, node: Node) -> pulumi.CustomResource:
        resource_type = RESOURCE_TYPES[node.kind]
        args = resource_args(node, self._resolve)
        return resource_type(node.name, **args, opts=self._child_opts)

    def _resolve(self, ref: Ref) -> pulumi.Output[Any]:
        resource = self.resources[ref.node]
        getter = _OUTPUT_GETTERS.get((self._kinds[ref.node], ref.attribute))
        if getter is not None:
            return getter(resource)
        return getattr(resource, ref.attribute)


def resource_args(node: Node, resolve: Callable[[Ref], Any]) -> dict[str, Any]:
    """
    Keyword arguments of the pulumi_gcp resource for node. References are
    replaced by ``resolve(ref)``, templates are filled with
    ``pulumi.Output.format``.
    """
    return substitute_refs(node.attrs, resolve, pulumi.Output.format)
