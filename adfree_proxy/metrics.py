from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Info


class ProxyMetrics:
    """Prometheus collectors for one app instance, bound to its own registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.blocked_requests = Counter(
            "adfree_blocked_requests_total",
            "Requests answered with 403 by the ad filter",
            ["reason"],
            registry=self.registry,
        )
        self.upstream_errors = Counter(
            "adfree_upstream_errors_total",
            "Proxied requests that failed to reach the upstream",
            ["kind"],
            registry=self.registry,
        )
        self.rewritten_responses = Counter(
            "adfree_rewritten_responses_total",
            "Upstream responses passed through a body rewrite rule",
            ["rule"],
            registry=self.registry,
        )
        self.blocklist_domains = Gauge(
            "adfree_blocklist_domains",
            "Number of hostnames in the current blocklist snapshot",
            registry=self.registry,
        )
        self.blocklist_refresh_failures = Counter(
            "adfree_blocklist_refresh_failures_total",
            "Blocklist refreshes that kept the previous snapshot",
            registry=self.registry,
        )
        self.app_info = Info("fastapi_app_info", "Application Info", registry=self.registry)
