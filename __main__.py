"""
Site topology - Pulumi entrypoint.

Serves a static site from a Cloud Storage bucket behind Cloud CDN and, when
an API prefix is configured, a container VM behind the same global load
balancer:

- **Storage origin**: bucket with website config, public read, synced from
  the local build directory, wrapped in a CDN-enabled backend bucket.
- **Compute origin**: service account, Container-Optimized OS VM, instance
  group with a named port, health-check firewall rule, health check and
  backend service.
- **Frontend**: one reserved global IP, a URL map routing the apex host to
  the CDN and api.<domain> to the backend service, a managed certificate, an
  HTTPS proxy on 443 and a redirect-to-HTTPS proxy on 80.

Stack exports: originURL, originHostname, cdnURL, cdnHostname.
"""

import pulumi

from config import SiteConfig
from topology import build_topology
from topology.gcp import GcpSite


def main():
    """
    Build the topology from config and declare it on Google Cloud.

    Configuration and topology errors (ConfigError, CycleError) are raised
    before any resource is declared.
    """
    config = SiteConfig.from_pulumi_config(pulumi.Config())
    topology = build_topology(config)
    pulumi.log.info(
        f"Declaring {len(topology)} resources for {config.apex_domain} "
        f"(https={config.enable_https}, api={config.api_subdomain_prefix or 'disabled'})"
    )

    site = GcpSite(name=config.site_name, topology=topology)

    for output_name, value in site.outputs.items():
        pulumi.export(output_name, value)


if __name__ == "__main__":
    main()
