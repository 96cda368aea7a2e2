"""
Operator-facing values derived from the converged topology.

The templates are shared by the converger (plain strings) and the Pulumi
program (``pulumi.Output.format``). Keys are stable across runs.
"""

import asyncio
from typing import Any, Callable, Optional

from topology.deferred import Deferred, gather_values
from topology.errors import Poisoned
from topology.graph import Ref, ResourceKind, Topology

OUTPUT_TEMPLATES: dict[str, str] = {
    "originURL": "https://storage.googleapis.com/{bucket}/index.html",
    "originHostname": "storage.googleapis.com/{bucket}",
    "cdnURL": "{scheme}://{address}",
    "cdnHostname": "{address}",
}


def render_outputs(
    bucket: Any,
    address: Any,
    https: bool,
    render: Callable[..., Any] = str.format,
) -> dict[str, Any]:
    """
    Fill every output template. ``render`` is called as
    ``render(template, bucket=..., address=..., scheme=...)``.
    """
    scheme = "https" if https else "http"
    return {
        key: render(template, bucket=bucket, address=address, scheme=scheme)
        for key, template in OUTPUT_TEMPLATES.items()
    }


def output_inputs(topology: Topology) -> Optional[tuple[Ref, Ref, bool]]:
    """
    References the outputs are computed from: bucket name, reserved address,
    and whether TLS is terminated. None when the topology lacks either node.
    """
    bucket = topology.one_of_kind(ResourceKind.STORAGE_ORIGIN)
    address = topology.one_of_kind(ResourceKind.RESERVED_ADDRESS)
    if bucket is None or address is None:
        return None
    https = bool(topology.of_kind(ResourceKind.HTTPS_TERMINATION))
    return bucket.ref("name"), address.ref("address"), https


class OutputProjection:
    """
    Deferred output values. Each one resolves once the bucket name and the
    reserved address resolve, and is poisoned when either is.
    """

    def __init__(self, bucket: "Deferred[str]", address: "Deferred[str]", https: bool):
        self.values: dict[str, Deferred[str]] = {key: Deferred(key) for key in OUTPUT_TEMPLATES}
        self._task = asyncio.create_task(self._fill(bucket, address, https))

    async def _fill(self, bucket: "Deferred[str]", address: "Deferred[str]", https: bool) -> None:
        try:
            resolved = await gather_values({"bucket": bucket, "address": address})
        except Poisoned as ex:
            for value in self.values.values():
                value.poison(ex.origin)
            return
        for key, rendered in render_outputs(resolved["bucket"], resolved["address"], https).items():
            self.values[key].resolve(rendered)

    def cancel(self) -> None:
        self._task.cancel()

    async def wait(self) -> dict[str, Optional[str]]:
        await self._task
        return {key: value.value() for key, value in self.values.items()}
