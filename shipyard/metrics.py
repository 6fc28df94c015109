import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

logger = logging.getLogger(__name__)

registry = CollectorRegistry()

# ── Metric definitions ──

deployments_total = Counter(
    "shipyard_deployments_total",
    "Deployment attempts by outcome",
    ["target", "strategy", "outcome"],
    registry=registry,
)

deployment_duration_seconds = Histogram(
    "shipyard_deployment_duration_seconds",
    "Wall-clock duration of a deployment attempt",
    ["target", "strategy"],
    buckets=[5, 10, 20, 30, 60, 90, 120, 180, 300, 600],
    registry=registry,
)

health_check_seconds = Gauge(
    "shipyard_health_check_seconds",
    "Seconds the last candidate needed to pass its health check",
    ["target"],
    registry=registry,
)

proxy_backend_port = Gauge(
    "shipyard_proxy_backend_port",
    "Backend port the proxy was last pointed at",
    ["target"],
    registry=registry,
)


# ── Helper functions ──

def record_attempt(target: str, strategy: str, outcome: str, duration_seconds: float) -> None:
    """Record a finished deployment attempt."""
    deployments_total.labels(target=target, strategy=strategy, outcome=outcome).inc()
    deployment_duration_seconds.labels(target=target, strategy=strategy).observe(duration_seconds)


def record_health_check(target: str, elapsed_seconds: float) -> None:
    health_check_seconds.labels(target=target).set(elapsed_seconds)


def record_backend_port(target: str, port: int) -> None:
    proxy_backend_port.labels(target=target).set(port)


def write_metrics(path: str | None) -> None:
    """Dump the registry for a node-exporter textfile collector."""
    if not path:
        return
    try:
        write_to_textfile(path, registry)
    except OSError as e:
        logger.warning(f"Could not write metrics to {path}: {e}")
