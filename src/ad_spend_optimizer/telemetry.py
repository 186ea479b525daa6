"""
Lightweight telemetry/observability helper.
Exports Prometheus series, or structured log lines when the exporter is 'log'.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Dict, Optional, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

# Collectors are registry-global in prometheus_client, so share them across clients
_COLLECTORS: "weakref.WeakKeyDictionary[CollectorRegistry, Dict[Tuple[str, str, Tuple[str, ...]], Any]]" = \
    weakref.WeakKeyDictionary()
_COLLECTORS_LOCK = threading.Lock()


class TelemetryClient:
    """Simple telemetry helper supporting increment/gauge/observe."""

    def __init__(self, config: Dict[str, Any], registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.enabled = config.get('enable_telemetry', True)
        self.exporter = config.get('telemetry_exporter', 'prometheus')
        self.registry = registry or REGISTRY

    def _should_use_prometheus(self) -> bool:
        return self.enabled and self.exporter == 'prometheus'

    def increment(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = labels or {}
        if self._should_use_prometheus():
            self._child(Counter, name, labels).inc(value)
        else:
            self.logger.info("metric_increment", extra={'metric': name, 'value': value, 'labels': labels})

    def gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = labels or {}
        if self._should_use_prometheus():
            self._child(Gauge, name, labels).set(value)
        else:
            self.logger.info("metric_gauge", extra={'metric': name, 'value': value, 'labels': labels})

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = labels or {}
        if self._should_use_prometheus():
            self._child(Histogram, name, labels).observe(value)
        else:
            self.logger.info("metric_observe", extra={'metric': name, 'value': value, 'labels': labels})

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _child(self, kind, name: str, labels: Dict[str, str]):
        collector = self._collector(kind, name, labels)
        return collector.labels(**labels) if labels else collector

    def _collector(self, kind, name: str, labels: Dict[str, str]):
        labelnames = tuple(sorted(labels.keys()))
        key = (kind.__name__, name, labelnames)
        with _COLLECTORS_LOCK:
            collectors = _COLLECTORS.setdefault(self.registry, {})
            collector = collectors.get(key)
            if collector is None:
                collector = kind(
                    name, f"{name} {kind.__name__.lower()}",
                    labelnames=list(labelnames), registry=self.registry
                )
                collectors[key] = collector
            return collector

    # ------------------------------------------------------------------ #
    # Domain metrics
    # ------------------------------------------------------------------ #

    def record_plan(self, scope_id: str, allocations: int, constrained: int,
                    unallocated_budget: float) -> None:
        self.increment('optimizer_plans_generated_total')
        self.increment('optimizer_allocations_total', allocations)
        if constrained:
            self.increment('optimizer_allocations_budget_constrained_total', constrained)
        self.gauge('optimizer_plan_unallocated_budget', unallocated_budget, labels={'scope': scope_id})

    def record_batch(self, source: str, status: str, succeeded: int, failed: int) -> None:
        self.increment('optimizer_batches_total', labels={'source': source, 'status': status})
        self.increment('optimizer_items_total', succeeded, labels={'outcome': 'applied'})
        self.increment('optimizer_items_total', failed, labels={'outcome': 'failed'})

    def record_mutation_latency(self, kind: str, seconds: float) -> None:
        self.observe('optimizer_mutation_seconds', seconds, labels={'segment_kind': kind})

    def record_tracking(self, recommendation: str, rating: str) -> None:
        self.increment(
            'optimizer_tracking_reports_total',
            labels={'recommendation': recommendation, 'rating': rating}
        )
