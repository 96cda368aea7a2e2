"""
Pure helpers for DNS names, resource naming and instance metadata. Testable
without the Pulumi runtime.

Used by the topology builder (validate_domain, subdomain_host, resource_name,
container_declaration) and by the config loader (parse_ports). All functions
accept and return plain Python types.
"""

import re

import yaml

from topology.errors import ConfigError

_DNS_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")

# GCP resource names: lowercase letter first, then letters, digits, hyphens.
# Leaves room for the longest suffix the builder appends ("https-forwarding-rule").
_RESOURCE_PREFIX = re.compile(r"^[a-z]([a-z0-9-]{0,37}[a-z0-9])?$")


def is_dns_label(label: str) -> bool:
    return bool(_DNS_LABEL.match(label))


def validate_domain(
    domain: str,
) -> str:
    """
    Return the domain lowercased, without a trailing dot.

    Each dot separated label must be a DNS label (1-63 chars, letters, digits
    and inner hyphens) and there must be at least two labels. Raises
    ConfigError otherwise.
    """
    if not domain or not domain.strip():
        raise ConfigError("apex_domain must not be empty")
    normalized = domain.strip().lower().rstrip(".")
    labels = normalized.split(".")
    if len(labels) < 2 or len(normalized) > 253:
        raise ConfigError(f"apex_domain {domain!r} is not a fully qualified domain name")
    for label in labels:
        if not is_dns_label(label):
            raise ConfigError(f"apex_domain {domain!r} has an invalid label {label!r}")
    return normalized


def subdomain_host(
    domain: str,
    subdomain: str,
) -> str:
    """
    Build a host like 'api.example.com' from domain and subdomain.

    Args:
        domain: Base domain (e.g. "example.com"); a trailing dot is dropped.
        subdomain: Leading label (e.g. "api").

    Returns:
        Host without trailing dot. The subdomain is always prepended, so the
        result never equals the domain.
    """
    return f"{subdomain}.{domain.rstrip('.')}"


def resource_name(
    site_name: str,
    suffix: str,
) -> str:
    """
    Stable logical name of a resource, e.g. 'gamesite-fe-backend-bucket'.
    """
    if not _RESOURCE_PREFIX.match(site_name):
        raise ConfigError(
            f"site_name {site_name!r} must start with a lowercase letter and contain "
            "only lowercase letters, digits and hyphens (max 39 chars)"
        )
    return f"{site_name}-{suffix}"


def parse_ports(raw: str) -> tuple[int, ...]:
    """
    Parse a comma separated port list like "80, 8080". Raises ConfigError.
    """
    ports = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if not item.isdigit() or not 0 < int(item) < 65536:
            raise ConfigError(f"Invalid port {item!r}")
        ports.append(int(item))
    return tuple(ports)


def container_declaration(
    name: str,
    image: str,
    port: int,
) -> str:
    """
    Render the 'gce-container-declaration' metadata value that tells a
    Container-Optimized OS instance which image to run.

    The container listens on ``port``; it is passed as PORT so the image can
    bind to the port the health check and named port expect.
    """
    spec = {
        "spec": {
            "containers": [
                {
                    "name": name,
                    "image": image,
                    "env": [{"name": "PORT", "value": str(port)}],
                    "stdin": False,
                    "tty": False,
                }
            ],
            "restartPolicy": "Always",
        }
    }
    return yaml.safe_dump(spec, default_flow_style=False, sort_keys=False)
