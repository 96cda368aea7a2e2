"""Tests for pure helpers"""

import pytest
import yaml

from topology import _helpers
from topology.errors import ConfigError


class TestValidateDomain:
    def test_accepts_and_normalizes(self):
        assert _helpers.validate_domain("Example.COM.") == "example.com"

    def test_rejects_empty(self):
        with pytest.raises(ConfigError):
            _helpers.validate_domain("  ")

    def test_rejects_single_label(self):
        with pytest.raises(ConfigError):
            _helpers.validate_domain("localhost")

    def test_rejects_bad_label(self):
        with pytest.raises(ConfigError):
            _helpers.validate_domain("-bad.example.com")
        with pytest.raises(ConfigError):
            _helpers.validate_domain("under_score.example.com")

    def test_rejects_long_label(self):
        with pytest.raises(ConfigError):
            _helpers.validate_domain("a" * 64 + ".com")


class TestSubdomainHost:
    def test_builds_api_host(self):
        assert _helpers.subdomain_host("example.com", "api") == "api.example.com"

    def test_domain_with_trailing_dot(self):
        assert _helpers.subdomain_host("example.com.", "api") == "api.example.com"

    def test_domain_starting_with_subdomain(self):
        assert _helpers.subdomain_host("api.example.com", "api") == "api.api.example.com"


class TestResourceName:
    def test_joins_site_and_suffix(self):
        assert _helpers.resource_name("gamesite-fe", "bucket") == "gamesite-fe-bucket"

    def test_rejects_uppercase(self):
        with pytest.raises(ConfigError):
            _helpers.resource_name("GameSite", "bucket")

    def test_rejects_leading_digit(self):
        with pytest.raises(ConfigError):
            _helpers.resource_name("1site", "bucket")


class TestParsePorts:
    def test_parses_list(self):
        assert _helpers.parse_ports("80, 8080") == (80, 8080)

    def test_empty_items_ignored(self):
        assert _helpers.parse_ports("80,,") == (80,)

    def test_rejects_out_of_range(self):
        with pytest.raises(ConfigError):
            _helpers.parse_ports("70000")

    def test_rejects_non_numeric(self):
        with pytest.raises(ConfigError):
            _helpers.parse_ports("http")


class TestContainerDeclaration:
    def test_declares_image_and_port(self):
        declaration = yaml.safe_load(_helpers.container_declaration("site-api", "gcr.io/p/api:1", 8080))
        container = declaration["spec"]["containers"][0]
        assert container["image"] == "gcr.io/p/api:1"
        assert container["name"] == "site-api"
        assert container["env"] == [{"name": "PORT", "value": "8080"}]
        assert declaration["spec"]["restartPolicy"] == "Always"
