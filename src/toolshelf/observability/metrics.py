"""Prometheus metrics for Toolshelf.

Cardinality rule: caller ids and tool ids are NOT labels (unbounded).
Outcome, status and quota scope are (bounded).
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Lazy-load prometheus_client so importing this module never touches the registry
_prom = None


def _get_prom():
    """Lazily import prometheus_client."""
    global _prom
    if _prom is None:
        try:
            import prometheus_client
            _prom = prometheus_client
        except ImportError:
            logger.warning("prometheus_client not installed; metrics disabled")
            _prom = False
    return _prom if _prom else None


# --- Metric singletons (created on first access) ---

_metrics = {}


def _metric(name, metric_type, description, labelnames=()):
    """Get or create a Prometheus metric."""
    if name in _metrics:
        return _metrics[name]
    prom = _get_prom()
    if prom is None:
        _metrics[name] = None
        return None
    cls = getattr(prom, metric_type)
    m = cls(name, description, labelnames=labelnames)
    _metrics[name] = m
    return m


def enrich_requests_total():
    return _metric(
        "toolshelf_enrich_requests_total",
        "Counter",
        "Enrichment requests by terminal outcome",
        labelnames=["outcome"],
    )


def provider_call_duration():
    return _metric(
        "toolshelf_provider_call_duration_seconds",
        "Histogram",
        "AI provider call duration in seconds",
        labelnames=["status"],
    )


def quota_denials_total():
    return _metric(
        "toolshelf_quota_denials_total",
        "Counter",
        "Quota admissions denied",
        labelnames=["scope"],
    )


# --- Helper functions for recording metrics ---

def record_enrich_outcome(outcome: str):
    m = enrich_requests_total()
    if m:
        m.labels(outcome=outcome).inc()


def record_provider_call(status: str, duration: float):
    m = provider_call_duration()
    if m:
        m.labels(status=status).observe(duration)


def record_quota_denial(scope: str):
    m = quota_denials_total()
    if m:
        m.labels(scope=scope).inc()


def generate_metrics_text() -> Optional[str]:
    """Generate Prometheus metrics text output."""
    prom = _get_prom()
    if prom is None:
        return None
    return prom.generate_latest().decode("utf-8")
