import os
from prometheus_client import CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest, Counter, Gauge, Histogram

try:
    from prometheus_client import multiprocess
except Exception:  # pragma: no cover
    multiprocess = None  # type: ignore


def build_registry() -> CollectorRegistry:
    """Build a Prometheus registry, supporting multiprocess if PROMETHEUS_MULTIPROC_DIR is set."""
    registry = CollectorRegistry()
    mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
    if mp_dir and multiprocess is not None:
        multiprocess.MultiProcessCollector(registry)
    return registry


REGISTRY: CollectorRegistry = build_registry()

# Webhook ingress metrics
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook requests received",
    labelnames=("event", "action", "code"),
    registry=REGISTRY,
)
webhook_invalid_signatures_total = Counter(
    "webhook_invalid_signatures_total",
    "Webhook requests rejected for a bad signature",
    registry=REGISTRY,
)
webhook_parse_failures_total = Counter(
    "webhook_parse_failures_total",
    "Webhook payloads that could not be parsed",
    labelnames=("event",),
    registry=REGISTRY,
)

# Dispatch metrics
events_dispatched_total = Counter(
    "events_dispatched_total",
    "Events run through the dispatcher by kind and terminal outcome",
    labelnames=("event", "outcome"),
    registry=REGISTRY,
)
dispatch_seconds = Histogram(
    "dispatch_seconds",
    "Duration of a dispatcher run",
    labelnames=("event",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

# Promotion behavior metrics
pull_requests_created_total = Counter(
    "pull_requests_created_total",
    "Promotion pull requests opened",
    labelnames=("base",),
    registry=REGISTRY,
)
labels_added_total = Counter(
    "labels_added_total",
    "Gate labels attached to created pull requests",
    registry=REGISTRY,
)
reconcile_anomalies_total = Counter(
    "reconcile_anomalies_total",
    "Head/base pairs with more than one open pull request",
    registry=REGISTRY,
)
merge_attempts_total = Counter(
    "merge_attempts_total",
    "Merge attempts by result",
    labelnames=("result",),
    registry=REGISTRY,
)

# GitHub API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    labelnames=("installation",),
    registry=REGISTRY,
)
github_rate_limit_reset = Gauge(
    "github_rate_limit_reset",
    "Epoch seconds when GitHub rate limit resets",
    labelnames=("installation",),
    registry=REGISTRY,
)
config_load_failures_total = Counter(
    "config_load_failures_total",
    "Failures to load repository configuration",
    registry=REGISTRY,
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def metrics_response():
    data = generate_latest(REGISTRY)
    return CONTENT_TYPE_LATEST, data
