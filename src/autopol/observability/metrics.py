# src/autopol/observability/metrics.py
"""
Prometheus metrics exporter for autopol.
"""
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class AutopolMetrics:
    """Metrics collector for Prometheus"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        # Counters
        self.flows_ingested = Counter(
            'autopol_flows_ingested_total',
            'Total number of flows received from hubble',
            registry=self.registry
        )

        self.flows_drained = Counter(
            'autopol_flows_drained_total',
            'Total number of flows drained from the buffer',
            registry=self.registry
        )

        self.logs_normalized = Counter(
            'autopol_network_logs_total',
            'Total number of network logs produced by normalization',
            registry=self.registry
        )

        self.records_discarded = Counter(
            'autopol_records_discarded_total',
            'Total number of flows discarded during normalization',
            ['reason'],
            registry=self.registry
        )

        self.policies_discovered = Counter(
            'autopol_policies_discovered_total',
            'Total number of candidate policies handed to reconciliation',
            registry=self.registry
        )

        self.policies_added = Counter(
            'autopol_policies_added_total',
            'Total number of new policies added to the store',
            ['policy_type'],
            registry=self.registry
        )

        self.policies_outdated = Counter(
            'autopol_policies_outdated_total',
            'Total number of existing policies marked outdated',
            registry=self.registry
        )

        self.cycle_errors = Counter(
            'autopol_discovery_cycle_errors_total',
            'Total number of discovery cycles that failed',
            ['stage'],
            registry=self.registry
        )

        # Gauges
        self.buffer_size = Gauge(
            'autopol_buffer_size',
            'Flows currently waiting in the buffer',
            registry=self.registry
        )

        self.policies_total = Gauge(
            'autopol_policies',
            'Policies in the store',
            ['status'],
            registry=self.registry
        )

        # Histograms
        self.drain_batch_size = Histogram(
            'autopol_drain_batch_size',
            'Flows per buffer drain',
            buckets=[1, 10, 100, 1000, 10000, 100000],
            registry=self.registry
        )

        self.cycle_latency = Histogram(
            'autopol_discovery_cycle_seconds',
            'Discovery cycle latency distribution',
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
            registry=self.registry
        )

    def record_flow_ingested(self):
        self.flows_ingested.inc()

    def record_flows_drained(self, count: int):
        """Record one drained batch"""
        self.flows_drained.inc(count)
        self.drain_batch_size.observe(count)

    def record_logs_normalized(self, count: int):
        self.logs_normalized.inc(count)

    def record_discarded(self, reason: str, count: int = 1):
        self.records_discarded.labels(reason=reason).inc(count)

    def record_policies_discovered(self, count: int):
        self.policies_discovered.inc(count)

    def record_policy_added(self, policy_type: str):
        self.policies_added.labels(policy_type=policy_type).inc()

    def record_policies_outdated(self, count: int):
        self.policies_outdated.inc(count)

    def record_cycle_error(self, stage: str):
        self.cycle_errors.labels(stage=stage).inc()

    def record_cycle_latency(self, latency_seconds: float):
        self.cycle_latency.observe(latency_seconds)

    def update_buffer_size(self, size: int):
        self.buffer_size.set(size)

    def update_policy_counts(self, counts: Dict[str, int]):
        """Update store size per lifecycle status"""
        for status, count in counts.items():
            self.policies_total.labels(status=status).set(count)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get current metrics summary"""
        def value(name, **labels):
            return self.registry.get_sample_value(name, labels) or 0

        return {
            'flows_ingested': value('autopol_flows_ingested_total'),
            'flows_drained': value('autopol_flows_drained_total'),
            'logs_normalized': value('autopol_network_logs_total'),
            'policies_discovered': value('autopol_policies_discovered_total'),
            'policies_outdated': value('autopol_policies_outdated_total'),
            'buffer_size': value('autopol_buffer_size'),
        }


# Global metrics instance
metrics = None


def init_metrics(port: int = 9090) -> AutopolMetrics:
    """Initialize metrics exporter"""
    global metrics
    if metrics is None:
        metrics = AutopolMetrics()
        start_http_server(port)
        logger.info(f"Metrics server started on port {port}")
    return metrics
