"""
Topology builder: the resource graph of a CDN-fronted static site with an
optional API backend behind one global load balancer.

One parameterized builder covers the three shapes the site went through:

- HTTP only (``enable_https=False``): URL map → HTTP proxy → port 80.
- HTTPS with redirect: URL map + managed certificate → HTTPS proxy → port
  443, plus a redirect-only URL map → HTTP proxy → port 80.
- Dual origin (``api_subdomain_prefix`` set): the URL map routes the API host
  to a backend service of a container VM, the apex host to the CDN bucket.

Construction is pure. Every value another resource produces is wired as a
``Ref`` so the converger and the Pulumi program can order creation from data
dependencies alone.
"""

import logging
import os
from typing import TYPE_CHECKING, Callable, Optional

from topology._helpers import container_declaration, is_dns_label, resource_name, subdomain_host, validate_domain
from topology.errors import ConfigError
from topology.graph import ContentSync, Node, Ref, ResourceKind, Template, Topology, iter_refs

if TYPE_CHECKING:
    from config import SiteConfig

log = logging.getLogger(__name__)

# Source ranges of Google load balancer health checks.
HEALTH_CHECK_RANGES = ["35.191.0.0/16", "130.211.0.0/22"]

STORAGE_CLASSES = ("STANDARD", "NEARLINE", "COLDLINE", "ARCHIVE")

# "preserve" leaves the requested host in place
REDIRECT_HOSTS = ("domain", "address", "preserve")

DEFAULT_API_PREFIX = "api"

NETWORK = "default"
NAMED_PORT = "http"
BOOT_IMAGE = "cos-cloud/cos-stable"
STATIC_MATCHER = "static"
API_MATCHER = "api"


def build_topology(config: "SiteConfig") -> Topology:
    """
    Validate the configuration and assemble the linked resource graph.

    Raises:
        ConfigError: invalid domain or prefix, missing build directory,
            invalid port or storage class, or a violated topology invariant.
    """
    apex = validate_domain(config.apex_domain)
    prefix = config.api_subdomain_prefix
    if prefix is not None and not is_dns_label(prefix):
        raise ConfigError(f"api_subdomain_prefix {prefix!r} is not a valid DNS label")
    if not os.path.isdir(config.build_dir):
        raise ConfigError(f"build_dir {config.build_dir!r} does not exist; run the site build first")
    if not 0 < config.health_check_port < 65536:
        raise ConfigError(f"health_check_port {config.health_check_port} is out of range")
    if config.storage_class not in STORAGE_CLASSES:
        raise ConfigError(f"storage_class must be one of {', '.join(STORAGE_CLASSES)}, got {config.storage_class!r}")
    if config.redirect_host not in REDIRECT_HOSTS:
        raise ConfigError(f"redirect_host must be one of {', '.join(REDIRECT_HOSTS)}, got {config.redirect_host!r}")

    def name(suffix: str) -> str:
        return resource_name(config.site_name, suffix)

    topology = Topology()

    # Storage origin and CDN edge
    bucket = topology.add(
        Node(
            name("bucket"),
            ResourceKind.STORAGE_ORIGIN,
            {
                "location": config.bucket_location,
                "storage_class": config.storage_class,
                "force_destroy": True,
                "uniform_bucket_level_access": True,
                "website": {"main_page_suffix": "index.html", "not_found_page": "index.html"},
            },
        )
    )
    topology.add(
        Node(
            name("bucket-iam-binding"),
            ResourceKind.ACCESS_GRANT,
            {"bucket": bucket.ref("name"), "role": "roles/storage.objectViewer", "members": ["allUsers"]},
        )
    )
    cdn = topology.add(
        Node(
            name("backend-bucket"),
            ResourceKind.CDN_EDGE,
            {"bucket_name": bucket.ref("name"), "enable_cdn": True},
        )
    )
    topology.content_sync = ContentSync(local_path=config.build_dir, bucket=bucket.ref("name"))

    backend: Optional[Node] = None
    api_host: Optional[str] = None
    if prefix is not None:
        api_host = subdomain_host(apex, prefix)
        backend = _add_compute_origin(topology, config, name)

    address = topology.add(Node(name("ip"), ResourceKind.RESERVED_ADDRESS, {}))

    # Routing layer: apex host to the CDN edge, API host to the backend service
    host_rules = [{"hosts": [apex], "path_matcher": STATIC_MATCHER}]
    path_matchers = [{"name": STATIC_MATCHER, "default_service": cdn.ref("self_link")}]
    if backend is not None and api_host is not None:
        host_rules.append({"hosts": [api_host], "path_matcher": API_MATCHER})
        path_matchers.append({"name": API_MATCHER, "default_service": backend.ref("self_link")})
    url_map = topology.add(
        Node(
            name("url-map"),
            ResourceKind.ROUTING_MAP,
            {"default_service": cdn.ref("self_link"), "host_rules": host_rules, "path_matchers": path_matchers},
        )
    )

    if config.enable_https:
        domains = [apex] + ([api_host] if api_host else [])
        certificate = topology.add(
            Node(name("cert"), ResourceKind.CERTIFICATE, {"managed": {"domains": domains}})
        )
        https_proxy = topology.add(
            Node(
                name("https-proxy"),
                ResourceKind.HTTPS_TERMINATION,
                {"url_map": url_map.ref("self_link"), "ssl_certificates": [certificate.ref("self_link")]},
            )
        )
        _add_forwarding_rule(topology, name("https-forwarding-rule"), address, https_proxy, "443")

        # Redirect chain: independent of content, only the redirect target may need the address
        redirect: dict[str, object] = {
            "https_redirect": True,
            "strip_query": False,
            "redirect_response_code": "MOVED_PERMANENTLY_DEFAULT",
        }
        if config.redirect_host == "domain":
            redirect["host_redirect"] = apex
        elif config.redirect_host == "address":
            redirect["host_redirect"] = address.ref("address")
        redirect_map = topology.add(
            Node(name("redirect-map"), ResourceKind.REDIRECT_MAP, {"default_url_redirect": redirect})
        )
        http_target = redirect_map
    else:
        http_target = url_map

    http_proxy = topology.add(
        Node(name("http-proxy"), ResourceKind.HTTP_TERMINATION, {"url_map": http_target.ref("self_link")})
    )
    _add_forwarding_rule(topology, name("http-forwarding-rule"), address, http_proxy, "80")

    check_invariants(topology)
    return topology


def _add_compute_origin(topology: Topology, config: "SiteConfig", name: Callable[[str], str]) -> Node:
    tag = name("api")
    port = config.health_check_port
    # service account ids are 6 to 30 characters
    account_id = tag[:30].rstrip("-")
    if len(account_id) < 6:
        raise ConfigError(
            f"site_name {config.site_name!r} is too short for the API service account id {account_id!r} (min 6 chars)"
        )

    identity = topology.add(
        Node(
            name("api-sa"),
            ResourceKind.SERVICE_IDENTITY,
            {"account_id": account_id, "display_name": f"{config.site_name} API"},
        )
    )
    if config.image_repository:
        location, _, repository = config.image_repository.partition("/")
        if not repository:
            raise ConfigError(f"image_repository must look like 'location/name', got {config.image_repository!r}")
        topology.add(
            Node(
                name("api-image-pull"),
                ResourceKind.IMAGE_PULL_GRANT,
                {
                    "location": location,
                    "repository": repository,
                    "role": "roles/artifactregistry.reader",
                    "member": Template("serviceAccount:{}", (identity.ref("email"),)),
                },
            )
        )
    instance = topology.add(
        Node(
            name("api-vm"),
            ResourceKind.COMPUTE_INSTANCE,
            {
                "machine_type": config.machine_type,
                "zone": config.zone,
                "boot_disk": {"initialize_params": {"image": BOOT_IMAGE}},
                "network_interfaces": [{"network": NETWORK, "access_configs": [{}]}],
                "service_account": {"email": identity.ref("email"), "scopes": ["cloud-platform"]},
                "metadata": {"gce-container-declaration": container_declaration(tag, config.container_image, port)},
                "tags": [tag],
                "allow_stopping_for_update": True,
            },
        )
    )
    group = topology.add(
        Node(
            name("api-ig"),
            ResourceKind.INSTANCE_GROUP,
            {
                "zone": config.zone,
                "network": NETWORK,
                "instances": [instance.ref("self_link")],
                "named_ports": [{"name": NAMED_PORT, "port": port}],
            },
        )
    )
    topology.add(
        Node(
            name("api-hc-firewall"),
            ResourceKind.FIREWALL_RULE,
            {
                "network": NETWORK,
                "direction": "INGRESS",
                "source_ranges": list(HEALTH_CHECK_RANGES),
                "target_tags": [tag],
                "allows": [{"protocol": "tcp", "ports": [str(p) for p in config.admitted_ports]}],
            },
        )
    )
    health_check = topology.add(
        Node(
            name("api-hc"),
            ResourceKind.HEALTH_CHECK,
            {
                "check_interval_sec": config.health_check_interval_sec,
                "timeout_sec": config.health_check_timeout_sec,
                "http_health_check": {"port": port, "request_path": "/"},
            },
        )
    )
    return topology.add(
        Node(
            name("api-backend"),
            ResourceKind.BACKEND_SERVICE,
            {
                "protocol": "HTTP",
                "port_name": NAMED_PORT,
                "load_balancing_scheme": "EXTERNAL",
                "health_checks": health_check.ref("self_link"),
                "backends": [{"group": group.ref("self_link")}],
            },
        )
    )


def _add_forwarding_rule(topology: Topology, rule_name: str, address: Node, proxy: Node, port: str) -> Node:
    return topology.add(
        Node(
            rule_name,
            ResourceKind.FORWARDING_RULE,
            {
                "ip_address": address.ref("address"),
                "ip_protocol": "TCP",
                "port_range": port,
                "target": proxy.ref("self_link"),
                "load_balancing_scheme": "EXTERNAL",
            },
        )
    )


def routed_hosts(topology: Topology) -> set[str]:
    hosts: set[str] = set()
    for url_map in topology.of_kind(ResourceKind.ROUTING_MAP):
        for rule in url_map.attrs.get("host_rules", []):
            hosts.update(rule["hosts"])
    return hosts


def check_invariants(topology: Topology) -> None:
    """
    Check the structural rules every site topology must satisfy.

    Raises ConfigError on a broken rule. A disagreement between firewall
    ports, health-check port and named port is only logged: backend health
    is a runtime property, not a provisioning error.
    """
    topology.validate_refs()

    addresses = topology.of_kind(ResourceKind.RESERVED_ADDRESS)
    if len(addresses) != 1:
        raise ConfigError(f"Expected exactly one reserved address, found {len(addresses)}")
    address_ref = Ref(addresses[0].name, "address")
    for rule in topology.of_kind(ResourceKind.FORWARDING_RULE):
        if rule.attrs.get("ip_address") != address_ref:
            raise ConfigError(f"Forwarding rule {rule.name} does not use the reserved address {addresses[0].name}")

    for url_map in topology.of_kind(ResourceKind.ROUTING_MAP):
        seen: set[str] = set()
        for rule in url_map.attrs.get("host_rules", []):
            duplicates = seen.intersection(rule["hosts"])
            if duplicates:
                raise ConfigError(f"{url_map.name}: host {', '.join(sorted(duplicates))} is routed by more than one rule")
            seen.update(rule["hosts"])

    if topology.of_kind(ResourceKind.HTTPS_TERMINATION):
        domains: set[str] = set()
        for certificate in topology.of_kind(ResourceKind.CERTIFICATE):
            domains.update(certificate.attrs["managed"]["domains"])
        missing = routed_hosts(topology) - domains
        if missing:
            raise ConfigError(f"Hosts routed over TLS but not covered by the certificate: {', '.join(sorted(missing))}")

    for url_map in topology.of_kind(ResourceKind.ROUTING_MAP):
        matchers = {matcher["name"]: matcher for matcher in url_map.attrs.get("path_matchers", [])}
        for rule in url_map.attrs.get("host_rules", []):
            matcher = matchers.get(rule["path_matcher"])
            if matcher is None:
                raise ConfigError(f"{url_map.name}: host rule uses unknown path matcher {rule['path_matcher']!r}")
            if not isinstance(matcher["default_service"], Ref):
                raise ConfigError(f"{url_map.name}: path matcher {matcher['name']!r} must reference an origin resource")

    origin_kinds = {ResourceKind.CDN_EDGE, ResourceKind.BACKEND_SERVICE}
    for redirect in topology.of_kind(ResourceKind.REDIRECT_MAP):
        for ref in iter_refs(redirect.attrs):
            if topology[ref.node].kind in origin_kinds:
                raise ConfigError(f"Redirect map {redirect.name} must not depend on origin {ref.node}")

    _warn_on_port_mismatch(topology)


def _warn_on_port_mismatch(topology: Topology) -> None:
    health_checks = topology.of_kind(ResourceKind.HEALTH_CHECK)
    if not health_checks:
        return
    hc_ports = {hc.attrs["http_health_check"]["port"] for hc in health_checks}
    named_ports = {
        port["port"] for group in topology.of_kind(ResourceKind.INSTANCE_GROUP) for port in group.attrs["named_ports"]
    }
    admitted = {
        int(port)
        for rule in topology.of_kind(ResourceKind.FIREWALL_RULE)
        for allow in rule.attrs["allows"]
        for port in allow.get("ports", [])
    }
    for port in hc_ports:
        if port not in admitted or port not in named_ports:
            log.warning(
                f"Health check port {port} is not admitted by the firewall ({sorted(admitted)}) "
                f"or not the named port ({sorted(named_ports)}): the backend will report unhealthy"
            )
