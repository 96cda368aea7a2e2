"""
Site configuration loaded from pulumi.Config().

Provides a typed, immutable view of stack settings. Settings are read from
Pulumi config (e.g. Pulumi.<stack>.yaml or pulumi config set). site_name,
apex_domain and build_dir are required; everything else has a default. Used by
__main__.main() to build the topology and by the converger for retry and
timeout bounds.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

import pulumi

from topology._helpers import parse_ports
from topology.builder import DEFAULT_API_PREFIX, REDIRECT_HOSTS, STORAGE_CLASSES
from topology.converge import ConvergeSettings
from topology.errors import ConfigError


def _raw(config: pulumi.Config, key: str) -> Optional[str]:
    raw = config.get(key)
    return None if raw is None else str(raw).strip()


def _require_str(config: pulumi.Config, key: str) -> str:
    raw = _raw(config, key)
    if not raw:
        raise ConfigError(f"Missing required configuration value {key!r}")
    return raw


def _str_or_default(default: str) -> Callable[[pulumi.Config, str], str]:
    def parse(config: pulumi.Config, key: str) -> str:
        return _raw(config, key) or default

    return parse


def _nullable_str(default: Optional[str]) -> Callable[[pulumi.Config, str], Optional[str]]:
    # An explicitly empty value disables the setting.
    def parse(config: pulumi.Config, key: str) -> Optional[str]:
        raw = _raw(config, key)
        if raw is None:
            return default
        return raw or None

    return parse


def _optional_int(default: int) -> Callable[[pulumi.Config, str], int]:
    def parse(config: pulumi.Config, key: str) -> int:
        raw = _raw(config, key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError as ex:
            raise ConfigError(f"{key} must be an integer, got {raw!r}") from ex

    return parse


def _optional_float(default: float) -> Callable[[pulumi.Config, str], float]:
    def parse(config: pulumi.Config, key: str) -> float:
        raw = _raw(config, key)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError as ex:
            raise ConfigError(f"{key} must be a number, got {raw!r}") from ex

    return parse


def _optional_bool(default: bool) -> Callable[[pulumi.Config, str], bool]:
    def parse(config: pulumi.Config, key: str) -> bool:
        raw = _raw(config, key)
        if raw is None:
            return default
        return raw.lower() in ("1", "true", "yes")

    return parse


def _choice(default: str, choices: tuple[str, ...], upper: bool = False) -> Callable[[pulumi.Config, str], str]:
    def parse(config: pulumi.Config, key: str) -> str:
        raw = _raw(config, key)
        if raw is None:
            return default
        value = raw.upper() if upper else raw.lower()
        if value not in choices:
            raise ConfigError(f"{key} must be one of {', '.join(choices)}, got {raw!r}")
        return value

    return parse


def _optional_ports(config: pulumi.Config, key: str) -> Optional[tuple[int, ...]]:
    raw = _raw(config, key)
    return None if raw is None else parse_ports(raw)


# (key, parser); parser receives (config, key) and returns value.
_CONFIG_SPEC: list[tuple[str, Callable[[pulumi.Config, str], Any]]] = [
    ("site_name", _require_str),
    ("apex_domain", _require_str),
    ("build_dir", _require_str),
    ("enable_api", _optional_bool(False)),
    ("api_subdomain_prefix", _nullable_str(None)),
    ("machine_type", _str_or_default("e2-micro")),
    ("zone", _str_or_default("us-central1-a")),
    ("health_check_port", _optional_int(80)),
    ("storage_class", _choice("STANDARD", STORAGE_CLASSES, upper=True)),
    ("bucket_location", _str_or_default("US")),
    ("enable_https", _optional_bool(True)),
    ("redirect_host", _choice("domain", REDIRECT_HOSTS)),
    ("container_image", _str_or_default("us-docker.pkg.dev/cloudrun/container/hello")),
    ("image_repository", _nullable_str(None)),
    ("firewall_ports", _optional_ports),
    ("health_check_interval_sec", _optional_int(5)),
    ("health_check_timeout_sec", _optional_int(5)),
    ("certificate_timeout", _optional_float(900.0)),
    ("health_timeout", _optional_float(300.0)),
    ("max_attempts", _optional_int(5)),
]


@dataclass(frozen=True)
class SiteConfig:
    """
    Site configuration from Pulumi config.

    Attributes:
        site_name: Prefix of every logical resource name (required).
        apex_domain: Domain served from the storage origin (required).
        build_dir: Local static-site build output synced into the bucket
            (required; must exist at plan time).
        api_subdomain_prefix: Label of the API host (<prefix>.<apex_domain>).
            None (the default) builds the single-origin topology without a
            compute origin. Setting the prefix, or enable_api in stack config,
            turns the API on; enable_api alone uses "api".
        machine_type: Machine type of the API instance.
        zone: Zone of the API instance and its instance group.
        health_check_port: Port the health check probes; also the named port
            of the instance group and the default firewall port.
        storage_class: Storage class of the origin bucket.
        bucket_location: Location of the origin bucket.
        enable_https: Terminate TLS with a managed certificate and redirect
            port 80 to HTTPS. False builds a plain HTTP load balancer.
        redirect_host: Host the HTTP redirect points to: "domain" (the apex
            domain), "address" (the reserved IP literal) or "preserve" (the
            requested host, so api.<apex_domain> stays on the API).
        container_image: Image the API instance runs.
        image_repository: Artifact Registry repository ("location/name") the
            instance identity is granted read access on. None skips the grant.
        firewall_ports: Ports the health-check firewall rule admits. None
            means the health-check port.
        health_check_interval_sec: Health check interval.
        health_check_timeout_sec: Health check timeout.
        certificate_timeout: Bound in seconds on certificate provisioning.
        health_timeout: Bound in seconds on waiting for a healthy backend.
        max_attempts: Attempts per provider call on transient errors.
    """

    site_name: str
    apex_domain: str
    build_dir: str
    api_subdomain_prefix: Optional[str] = None
    machine_type: str = "e2-micro"
    zone: str = "us-central1-a"
    health_check_port: int = 80
    storage_class: str = "STANDARD"
    bucket_location: str = "US"
    enable_https: bool = True
    redirect_host: str = "domain"
    container_image: str = "us-docker.pkg.dev/cloudrun/container/hello"
    image_repository: Optional[str] = None
    firewall_ports: Optional[tuple[int, ...]] = None
    health_check_interval_sec: int = 5
    health_check_timeout_sec: int = 5
    certificate_timeout: float = 900.0
    health_timeout: float = 300.0
    max_attempts: int = 5

    @property
    def admitted_ports(self) -> tuple[int, ...]:
        return self.firewall_ports if self.firewall_ports is not None else (self.health_check_port,)

    def converge_settings(self) -> ConvergeSettings:
        return ConvergeSettings(
            max_attempts=self.max_attempts,
            certificate_timeout=self.certificate_timeout,
            health_timeout=self.health_timeout,
        )

    @classmethod
    def from_pulumi_config(cls, config: pulumi.Config) -> "SiteConfig":
        """
        Build SiteConfig from pulumi.Config(). Raises ConfigError on missing
        required keys or malformed values.
        """
        kwargs = {key: parser(config, key) for key, parser in _CONFIG_SPEC}
        # enable_api is not a field: it only supplies the default prefix
        if kwargs.pop("enable_api") and kwargs["api_subdomain_prefix"] is None:
            kwargs["api_subdomain_prefix"] = DEFAULT_API_PREFIX
        return cls(**kwargs)
