"""
Prometheus metrics for the sync pipeline.

Each PipelineMetrics owns its own CollectorRegistry, so a process (or a test)
can build as many independent pipelines as it likes without colliding on the
global prometheus_client registry.
"""
from __future__ import annotations
from typing import Dict, Optional
import threading
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0)

METRIC_DEFINITIONS: Dict[str, Dict] = {
    "cloudsync_upserts_total": {
        "type": "counter",
        "description": "Rows upserted into the destination table",
        "labels": [],
    },
    "cloudsync_deletes_total": {
        "type": "counter",
        "description": "Delete statements executed against the destination table",
        "labels": [],
    },
    "cloudsync_decode_errors_total": {
        "type": "counter",
        "description": "Envelopes abandoned because they could not be decoded",
        "labels": ["reason"],
    },
    "cloudsync_unknown_operations_total": {
        "type": "counter",
        "description": "Envelopes skipped for an unrecognized op code",
        "labels": ["op"],
    },
    "cloudsync_apply_errors_total": {
        "type": "counter",
        "description": "Writes dropped after the destination rejected them",
        "labels": ["operation"],
    },
    "cloudsync_apply_retries_total": {
        "type": "counter",
        "description": "Apply attempts retried after a transient failure",
        "labels": [],
    },
    "cloudsync_dead_letters_total": {
        "type": "counter",
        "description": "Envelopes published to the dead-letter topic",
        "labels": ["reason"],
    },
    "cloudsync_latency_errors_total": {
        "type": "counter",
        "description": "Propagation latency observations skipped",
        "labels": [],
    },
    "cloudsync_messages_total": {
        "type": "counter",
        "description": "Envelopes processed, by final state",
        "labels": ["outcome"],
    },
    "cloudsync_apply_latency_seconds": {
        "type": "histogram",
        "description": "Time spent applying one change to the destination",
        "labels": [],
    },
    "cloudsync_propagation_latency_seconds": {
        "type": "histogram",
        "description": "Source commit to destination apply delay",
        "labels": [],
    },
}

class PipelineMetrics:
    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, object] = {}
        self._lock = threading.Lock()

        for name, definition in METRIC_DEFINITIONS.items():
            # prometheus_client appends _total itself
            if definition["type"] == "counter":
                self._metrics[name] = Counter(name[:-len("_total")], definition["description"],
                                              definition["labels"], registry=self.registry)
            else:
                self._metrics[name] = Histogram(name, definition["description"], definition["labels"],
                                                buckets=LATENCY_BUCKETS, registry=self.registry)

    def _child(self, name: str, labels: Dict[str, str]):
        metric = self._metrics.get(name)
        if metric is None:
            raise KeyError(f"unknown metric: {name}")
        if labels:
            return metric.labels(**{k: str(v) for k, v in labels.items()})
        return metric

    def inc(self, name: str, amount: float = 1, **labels: str) -> None:
        with self._lock:
            self._child(name, labels).inc(amount)

    def observe(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            self._child(name, labels).observe(value)

    def value(self, name: str, **labels: str) -> float:
        """Current value of a counter, or the sample count of a histogram."""
        definition = METRIC_DEFINITIONS[name]
        sample = name if definition["type"] == "counter" else name + "_count"
        v = self.registry.get_sample_value(sample, labels or None)
        return v or 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)

