from typing import Any, Callable

import pytest

from config import SiteConfig
from topology import ConvergeSettings


@pytest.fixture
def build_dir(tmp_path) -> str:
    path = tmp_path / "build"
    path.mkdir()
    (path / "index.html").write_text("<h1>site</h1>")
    return str(path)


@pytest.fixture
def make_config(build_dir: str) -> Callable[..., SiteConfig]:
    def make(**overrides: Any) -> SiteConfig:
        values: dict[str, Any] = {
            "site_name": "site",
            "apex_domain": "example.com",
            "build_dir": build_dir,
            "api_subdomain_prefix": "api",
        }
        values.update(overrides)
        return SiteConfig(**values)

    return make


@pytest.fixture
def fast_settings() -> ConvergeSettings:
    return ConvergeSettings(
        max_attempts=3,
        backoff_min=0.001,
        backoff_max=0.01,
        certificate_timeout=1.0,
        health_timeout=0.2,
        health_poll_interval=0.01,
    )
