"""Tests for the topology builder and its invariants"""

import logging

import pytest

from config import SiteConfig
from topology import ConfigError, Node, Ref, ResourceKind, Template, build_topology, check_invariants
from topology.builder import HEALTH_CHECK_RANGES, routed_hosts


def url_map(topology):
    return topology.of_kind(ResourceKind.ROUTING_MAP)[0]


def certificate_domains(topology):
    return topology.of_kind(ResourceKind.CERTIFICATE)[0].attrs["managed"]["domains"]


class TestSingleOrigin:
    def test_required_keys_only(self, build_dir):
        topology = build_topology(SiteConfig(site_name="site", apex_domain="example.com", build_dir=build_dir))
        assert topology.of_kind(ResourceKind.BACKEND_SERVICE) == []
        assert topology.of_kind(ResourceKind.SERVICE_IDENTITY) == []
        assert routed_hosts(topology) == {"example.com"}
        assert certificate_domains(topology) == ["example.com"]

    def test_no_compute_origin(self, make_config):
        topology = build_topology(make_config(api_subdomain_prefix=None))
        assert topology.of_kind(ResourceKind.BACKEND_SERVICE) == []
        assert topology.of_kind(ResourceKind.COMPUTE_INSTANCE) == []

    def test_one_host_rule(self, make_config):
        topology = build_topology(make_config(api_subdomain_prefix=None))
        assert url_map(topology).attrs["host_rules"] == [{"hosts": ["example.com"], "path_matcher": "static"}]

    def test_certificate_covers_apex_only(self, make_config):
        topology = build_topology(make_config(api_subdomain_prefix=None))
        assert set(certificate_domains(topology)) == {"example.com"}

    def test_node_names_derive_from_site_name(self, make_config):
        topology = build_topology(make_config(api_subdomain_prefix=None))
        assert sorted(node.name for node in topology) == [
            "site-backend-bucket",
            "site-bucket",
            "site-bucket-iam-binding",
            "site-cert",
            "site-http-forwarding-rule",
            "site-http-proxy",
            "site-https-forwarding-rule",
            "site-https-proxy",
            "site-ip",
            "site-redirect-map",
            "site-url-map",
        ]


class TestDualOrigin:
    def test_api_host_routed_to_backend_service(self, make_config):
        topology = build_topology(make_config(api_subdomain_prefix="api"))
        attrs = url_map(topology).attrs
        assert attrs["host_rules"][1] == {"hosts": ["api.example.com"], "path_matcher": "api"}
        assert attrs["path_matchers"][1] == {"name": "api", "default_service": Ref("site-api-backend", "self_link")}
        assert attrs["path_matchers"][0]["default_service"] == Ref("site-backend-bucket", "self_link")

    def test_certificate_covers_both_hosts(self, make_config):
        topology = build_topology(make_config(api_subdomain_prefix="api"))
        assert set(certificate_domains(topology)) == {"example.com", "api.example.com"}

    def test_compute_origin_wiring(self, make_config):
        topology = build_topology(make_config(health_check_port=8080))
        instance = topology["site-api-vm"]
        assert instance.attrs["service_account"]["email"] == Ref("site-api-sa", "email")
        assert instance.attrs["tags"] == ["site-api"]
        group = topology["site-api-ig"]
        assert group.attrs["instances"] == [Ref("site-api-vm", "self_link")]
        assert group.attrs["named_ports"] == [{"name": "http", "port": 8080}]
        firewall = topology["site-api-hc-firewall"]
        assert firewall.attrs["source_ranges"] == HEALTH_CHECK_RANGES
        assert firewall.attrs["allows"] == [{"protocol": "tcp", "ports": ["8080"]}]
        assert topology["site-api-hc"].attrs["http_health_check"]["port"] == 8080
        backend = topology["site-api-backend"]
        assert backend.attrs["health_checks"] == Ref("site-api-hc", "self_link")
        assert backend.attrs["backends"] == [{"group": Ref("site-api-ig", "self_link")}]

    def test_image_pull_grant(self, make_config):
        topology = build_topology(make_config(image_repository="us-central1/site-images"))
        grant = topology["site-api-image-pull"]
        assert grant.kind is ResourceKind.IMAGE_PULL_GRANT
        assert grant.attrs["location"] == "us-central1"
        assert grant.attrs["repository"] == "site-images"
        assert grant.attrs["member"] == Template("serviceAccount:{}", (Ref("site-api-sa", "email"),))
        assert topology.dependencies(grant.name) == {"site-api-sa"}

    def test_no_image_pull_grant_by_default(self, make_config):
        topology = build_topology(make_config())
        assert topology.of_kind(ResourceKind.IMAGE_PULL_GRANT) == []

    def test_rejects_malformed_repository(self, make_config):
        with pytest.raises(ConfigError, match="image_repository"):
            build_topology(make_config(image_repository="site-images"))


class TestFeatureToggles:
    def test_http_only(self, make_config):
        topology = build_topology(make_config(enable_https=False))
        assert topology.of_kind(ResourceKind.CERTIFICATE) == []
        assert topology.of_kind(ResourceKind.REDIRECT_MAP) == []
        assert topology.of_kind(ResourceKind.HTTPS_TERMINATION) == []
        proxy = topology.of_kind(ResourceKind.HTTP_TERMINATION)[0]
        assert proxy.attrs["url_map"] == Ref("site-url-map", "self_link")
        rules = topology.of_kind(ResourceKind.FORWARDING_RULE)
        assert [rule.attrs["port_range"] for rule in rules] == ["80"]

    def test_redirect_defaults_to_domain(self, make_config):
        topology = build_topology(make_config())
        redirect = topology["site-redirect-map"].attrs["default_url_redirect"]
        assert redirect["host_redirect"] == "example.com"
        assert redirect["https_redirect"] is True
        assert redirect["strip_query"] is False
        assert topology.dependencies("site-redirect-map") == set()

    def test_redirect_to_address(self, make_config):
        topology = build_topology(make_config(redirect_host="address"))
        redirect = topology["site-redirect-map"].attrs["default_url_redirect"]
        assert redirect["host_redirect"] == Ref("site-ip", "address")
        assert topology.dependencies("site-redirect-map") == {"site-ip"}

    def test_redirect_preserves_host(self, make_config):
        topology = build_topology(make_config(redirect_host="preserve"))
        redirect = topology["site-redirect-map"].attrs["default_url_redirect"]
        assert "host_redirect" not in redirect
        assert redirect["https_redirect"] is True
        assert topology.dependencies("site-redirect-map") == set()

    def test_redirect_chain_independent_of_origins(self, make_config):
        topology = build_topology(make_config())
        chain = {"site-redirect-map", "site-http-proxy", "site-http-forwarding-rule"}
        for name in ("site-bucket", "site-backend-bucket", "site-api-backend", "site-api-vm"):
            assert not chain & topology.transitive_dependents(name)

    def test_storage_settings(self, make_config):
        topology = build_topology(make_config(storage_class="COLDLINE", bucket_location="EU"))
        bucket = topology["site-bucket"].attrs
        assert bucket["storage_class"] == "COLDLINE"
        assert bucket["location"] == "EU"
        assert bucket["website"] == {"main_page_suffix": "index.html", "not_found_page": "index.html"}

    def test_content_sync_recorded(self, make_config, build_dir):
        topology = build_topology(make_config())
        assert topology.content_sync.local_path == build_dir
        assert topology.content_sync.bucket == Ref("site-bucket", "name")


class TestValidation:
    def test_missing_build_dir(self, make_config, tmp_path):
        with pytest.raises(ConfigError, match="build_dir"):
            build_topology(make_config(build_dir=str(tmp_path / "missing")))

    @pytest.mark.parametrize("domain", ["", "localhost", "exa mple.com", "-x.example.com"])
    def test_invalid_domain(self, make_config, domain):
        with pytest.raises(ConfigError):
            build_topology(make_config(apex_domain=domain))

    def test_invalid_prefix(self, make_config):
        with pytest.raises(ConfigError, match="api_subdomain_prefix"):
            build_topology(make_config(api_subdomain_prefix="a.b"))

    def test_invalid_site_name(self, make_config):
        with pytest.raises(ConfigError, match="site_name"):
            build_topology(make_config(site_name="My Site"))

    def test_invalid_port(self, make_config):
        with pytest.raises(ConfigError, match="health_check_port"):
            build_topology(make_config(health_check_port=0))

    def test_invalid_storage_class(self, make_config):
        with pytest.raises(ConfigError, match="storage_class"):
            build_topology(make_config(storage_class="HOT"))

    def test_invalid_redirect_host(self, make_config):
        with pytest.raises(ConfigError, match="redirect_host"):
            build_topology(make_config(redirect_host="elsewhere"))

    def test_site_name_too_short_for_service_account(self, make_config):
        with pytest.raises(ConfigError, match="service account"):
            build_topology(make_config(site_name="a"))

    def test_short_site_name_without_api(self, make_config):
        topology = build_topology(make_config(site_name="a", api_subdomain_prefix=None))
        assert "a-bucket" in topology

    def test_apex_starting_with_prefix(self, make_config):
        topology = build_topology(make_config(apex_domain="api.example.com"))
        hosts = [host for rule in url_map(topology).attrs["host_rules"] for host in rule["hosts"]]
        assert hosts == ["api.example.com", "api.api.example.com"]
        assert certificate_domains(topology) == ["api.example.com", "api.api.example.com"]


VARIANTS = [
    {},
    {"api_subdomain_prefix": None},
    {"enable_https": False},
    {"enable_https": False, "api_subdomain_prefix": None},
    {"redirect_host": "address"},
    {"redirect_host": "preserve"},
    {"api_subdomain_prefix": "backend", "apex_domain": "shop.example.org"},
]


class TestInvariants:
    @pytest.mark.parametrize("overrides", VARIANTS)
    def test_single_reserved_address_shared(self, make_config, overrides):
        topology = build_topology(make_config(**overrides))
        addresses = topology.of_kind(ResourceKind.RESERVED_ADDRESS)
        assert len(addresses) == 1
        for rule in topology.of_kind(ResourceKind.FORWARDING_RULE):
            assert rule.attrs["ip_address"] == Ref(addresses[0].name, "address")

    @pytest.mark.parametrize("overrides", VARIANTS)
    def test_certificate_covers_routed_hosts(self, make_config, overrides):
        topology = build_topology(make_config(**overrides))
        if topology.of_kind(ResourceKind.HTTPS_TERMINATION):
            assert routed_hosts(topology) <= set(certificate_domains(topology))

    @pytest.mark.parametrize("overrides", VARIANTS)
    def test_plan_order_is_total(self, make_config, overrides):
        topology = build_topology(make_config(**overrides))
        order = topology.plan_order()
        assert sorted(order) == sorted(node.name for node in topology)
        for name in order:
            for dependency in topology.dependencies(name):
                assert order.index(dependency) < order.index(name)

    def test_second_address_rejected(self, make_config):
        topology = build_topology(make_config())
        topology.add(Node("site-ip-2", ResourceKind.RESERVED_ADDRESS, {}))
        with pytest.raises(ConfigError, match="exactly one reserved address"):
            check_invariants(topology)

    def test_forwarding_rule_with_other_address_rejected(self, make_config):
        topology = build_topology(make_config())
        topology["site-http-forwarding-rule"].attrs["ip_address"] = "203.0.113.7"
        with pytest.raises(ConfigError, match="reserved address"):
            check_invariants(topology)

    def test_uncovered_host_rejected(self, make_config):
        topology = build_topology(make_config())
        certificate_domains(topology).remove("api.example.com")
        with pytest.raises(ConfigError, match="api.example.com"):
            check_invariants(topology)

    def test_host_routed_twice_rejected(self, make_config):
        topology = build_topology(make_config())
        url_map(topology).attrs["host_rules"][1]["hosts"].append("example.com")
        with pytest.raises(ConfigError, match="more than one rule"):
            check_invariants(topology)

    def test_unknown_path_matcher_rejected(self, make_config):
        topology = build_topology(make_config())
        url_map(topology).attrs["host_rules"].append({"hosts": ["www.example.com"], "path_matcher": "www"})
        certificate_domains(topology).append("www.example.com")
        with pytest.raises(ConfigError, match="unknown path matcher"):
            check_invariants(topology)

    def test_literal_matcher_service_rejected(self, make_config):
        topology = build_topology(make_config())
        url_map(topology).attrs["path_matchers"][0]["default_service"] = "projects/p/global/backendBuckets/x"
        with pytest.raises(ConfigError, match="must reference"):
            check_invariants(topology)

    def test_redirect_map_on_origin_rejected(self, make_config):
        topology = build_topology(make_config())
        topology["site-redirect-map"].attrs["default_service"] = Ref("site-backend-bucket", "self_link")
        with pytest.raises(ConfigError, match="must not depend on origin"):
            check_invariants(topology)

    def test_port_mismatch_only_warns(self, make_config, caplog):
        with caplog.at_level(logging.WARNING, logger="topology.builder"):
            topology = build_topology(make_config(health_check_port=8080, firewall_ports=(80,)))
        assert "site-api-backend" in topology
        assert "will report unhealthy" in caplog.text
