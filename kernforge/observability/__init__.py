"""
Observability & Audit Layer

RESPONSIBILITY: Audit records, metrics, durable build log persistence
ALLOWED INPUTS: Audit entries and metric points from other layers
OUTPUTS: Unified audit log, metrics, audit report, session summary

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data
- Block the build on a slow consumer

BOUNDARY ENFORCEMENT:
=====================
- Receives immutable entries (frozen dataclasses)
- NEVER modifies events or system state
- Provides read-only access to logs and metrics

This layer is the only logging channel of the package. Warnings are
audit entries of type WARNING; there is no stdlib logging handler.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum

from ..contracts.base import Timestamp
from ..contracts.events import AuditLogEntry, AuditEventType, MetricPoint


LAYERS = (
    'resolution',
    'modules',
    'enforcement',
    'orchestrator',
    'runner',
    'validation',
)


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class LogCollector:
    """
    Append-only collector for one layer's audit entries.
    """

    def __init__(self, layer_name: str):
        self._layer = layer_name
        self._entries: List[AuditLogEntry] = []

    def collect(self, entry: AuditLogEntry):
        self._entries.append(entry)

    def get_entries(self, event_type: Optional[AuditEventType] = None) -> List[AuditLogEntry]:
        """Get entries, optionally of one event type."""
        if event_type is None:
            return list(self._entries)
        return [e for e in self._entries if e.event_type == event_type]


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


class MetricsCollector:
    """
    Append-only time series of metric points.
    """

    def __init__(self):
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._register_default_metrics()

    def _register_default_metrics(self):
        defaults = [
            MetricDefinition(
                name="resolution_conflicts_total",
                metric_type=MetricType.COUNTER,
                description="Overrides ignored because hardware facts disagreed"
            ),
            MetricDefinition(
                name="modules_frozen",
                metric_type=MetricType.GAUGE,
                description="Modules in the frozen module set"
            ),
            MetricDefinition(
                name="checkpoints_inserted_total",
                metric_type=MetricType.COUNTER,
                description="Enforcement payload blocks placed in the build script",
                labels=("checkpoint",)
            ),
            MetricDefinition(
                name="phase_duration_ms",
                metric_type=MetricType.TIMING,
                description="Wall time spent in each build phase",
                labels=("phase",)
            ),
            MetricDefinition(
                name="build_log_lines_total",
                metric_type=MetricType.COUNTER,
                description="Lines of external process output persisted"
            ),
            MetricDefinition(
                name="verification_mismatches_total",
                metric_type=MetricType.COUNTER,
                description="Families that lost their selection in the final config",
                labels=("severity",)
            ),
        ]

        for definition in defaults:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        self._definitions[definition.name] = definition
        if definition.name not in self._metrics:
            self._metrics[definition.name] = []

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Record a metric data point."""
        if metric_name not in self._metrics:
            self._metrics[metric_name] = []

        label_tuple = tuple(sorted(labels.items())) if labels else ()

        self._metrics[metric_name].append(MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=label_tuple
        ))

    def get_metric(self, metric_name: str) -> List[MetricPoint]:
        return list(self._metrics.get(metric_name, []))

    def compute_aggregates(self, metric_name: str) -> Dict[str, float]:
        """Compute aggregate statistics for a metric."""
        points = self.get_metric(metric_name)

        if not points:
            return {}

        values = [p.value for p in points]

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }

    def summary(self) -> Dict[str, Dict]:
        """
        Aggregates of every metric with at least one point.

        Labelled metrics are also broken down per label set, keyed
        "name=value[,name=value]".
        """
        report = {}
        for name in sorted(self._metrics):
            points = self._metrics[name]
            if not points:
                continue
            entry = {'type': self._type_of(name), **self.compute_aggregates(name)}
            by_label: Dict[str, float] = {}
            for point in points:
                if point.labels:
                    key = ",".join(f"{k}={v}" for k, v in point.labels)
                    by_label[key] = by_label.get(key, 0) + point.value
            if by_label:
                entry['by_label'] = by_label
            report[name] = entry
        return report

    def _type_of(self, metric_name: str) -> Optional[str]:
        definition = self._definitions.get(metric_name)
        return definition.metric_type.value if definition else None


# =============================================================================
# OBSERVABILITY ENGINE
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    persist_audit: bool = True  # mirror audit entries into the session directory


class ObservabilityEngine:
    """
    Central Observability Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Provides read-only access to collected data
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()
        self._collectors: Dict[str, LogCollector] = {
            name: LogCollector(name) for name in LAYERS
        }
        self._metrics = MetricsCollector() if self._config.enable_metrics else None
        self._sinks: List = []

    def add_sink(self, sink):
        """Register a callable receiving every collected entry (e.g. a persister)."""
        self._sinks.append(sink)

    def collect_audit(self, entry: AuditLogEntry):
        """Collect an audit log entry from any layer."""
        collector = self._collectors.get(entry.layer)
        if collector is None:
            collector = LogCollector(entry.layer)
            self._collectors[entry.layer] = collector
        collector.collect(entry)
        for sink in self._sinks:
            sink(entry)

    def collect_all(self, entries: List[AuditLogEntry]):
        for entry in entries:
            self.collect_audit(entry)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        outcome: str = "success",
        details: str = "",
        layer: str = "orchestrator",
        event_type: AuditEventType = AuditEventType.SYSTEM
    ):
        """Helper to log audit entry directly."""
        self.collect_audit(AuditLogEntry.create(
            layer=layer,
            action=action,
            entity_id=entity_id,
            metadata={"outcome": outcome, "details": details},
            event_type=event_type,
        ))

    def warn(self, layer: str, action: str, details: str, entity_id: Optional[str] = None):
        self.log_audit(
            action=action,
            entity_id=entity_id,
            outcome="warning",
            details=details,
            layer=layer,
            event_type=AuditEventType.WARNING,
        )

    def collect_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def get_unified_log(self, event_type: Optional[AuditEventType] = None) -> List[AuditLogEntry]:
        """Entries of every layer, oldest first."""
        all_entries = []
        for collector in self._collectors.values():
            all_entries.extend(collector.get_entries(event_type))

        all_entries.sort(key=lambda e: e.timestamp.value)
        return all_entries

    def get_warnings(self) -> List[AuditLogEntry]:
        return self.get_unified_log(AuditEventType.WARNING)

    def metrics_summary(self) -> Dict[str, Dict]:
        """Per-metric aggregates; empty when metrics are disabled."""
        return self._metrics.summary() if self._metrics else {}

    def generate_audit_report(self) -> Dict:
        """Counts of the session's audit entries by layer and event type."""
        entries = self.get_unified_log()

        by_layer = {}
        by_type = {}

        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_layer': by_layer,
            'by_event_type': by_type,
            'time_range': {
                'start': entries[0].timestamp.to_iso() if entries else None,
                'end': entries[-1].timestamp.to_iso() if entries else None,
            },
        }
