"""
Event Contracts

Audit records, metrics and the build event stream.

Two audiences:
- AuditLogEntry / MetricPoint are the internal record every layer writes
  through the observability layer. There is no other logging channel.
- PhaseChanged / LogLine / ProgressUpdate are the external event stream
  a build delivers to its listener (CLI printer, status API).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union
from enum import Enum
import hashlib

from .base import Error, SessionId, Timestamp


# =============================================================================
# AUDIT
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    RESOLUTION = "resolution"
    RECONCILIATION = "reconciliation"
    ENFORCEMENT = "enforcement"
    STATE_CHANGE = "state_change"
    PROCESS = "process"
    VALIDATION = "validation"
    WARNING = "warning"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str  # Which layer generated this
    action: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    parent_entry_id: Optional[str] = None

    @staticmethod
    def create(
        layer: str,
        action: str,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
        event_type: AuditEventType = AuditEventType.SYSTEM,
        entity_type: Optional[str] = None,
    ) -> AuditLogEntry:
        """Build an entry stamped now, with a hash-derived id."""
        now = Timestamp.now()
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{entity_id}|{now.value.timestamp()}".encode()
        ).hexdigest()[:16]
        return AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=now,
            layer=layer,
            action=action,
            entity_id=entity_id,
            entity_type=entity_type,
            metadata=tuple((k, str(v)) for k, v in (metadata or {}).items()),
        )

    def metadata_value(self, key: str) -> Optional[str]:
        for k, v in self.metadata:
            if k == key:
                return v
        return None


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


# =============================================================================
# BUILD PHASES
# =============================================================================

class BuildPhase(Enum):
    IDLE = "idle"
    PREPARATION = "preparation"
    CONFIGURATION = "configuration"
    PATCHING = "patching"
    BUILDING = "building"
    VALIDATION = "validation"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildPhase.COMPLETED, BuildPhase.FAILED, BuildPhase.CANCELLED)


class LogStream(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


# =============================================================================
# BUILD EVENT STREAM
# =============================================================================

@dataclass(frozen=True)
class PhaseChanged:
    session_id: SessionId
    previous: BuildPhase
    current: BuildPhase
    timestamp: Timestamp


@dataclass(frozen=True)
class LogLine:
    """One line of external process output. sequence is gap-free per session."""
    session_id: SessionId
    sequence: int
    stream: LogStream
    text: str
    timestamp: Timestamp


@dataclass(frozen=True)
class ProgressUpdate:
    session_id: SessionId
    phase: BuildPhase
    percent: int
    timestamp: Timestamp

    def __post_init__(self):
        if not 0 <= self.percent <= 100:
            raise ValueError(f"Progress must be within 0-100, got {self.percent}")


BuildEvent = Union[PhaseChanged, LogLine, ProgressUpdate]


@dataclass(frozen=True)
class BuildOutcome:
    """
    Terminal summary of one build session.

    error is set only for FAILED. warnings collects every non-fatal
    finding (resolution conflicts, secondary family mismatches, missing
    module facts).
    """
    session_id: SessionId
    final_phase: BuildPhase
    started_at: Timestamp
    finished_at: Timestamp
    error: Optional[Error] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    artifacts: Tuple[str, ...] = field(default_factory=tuple)
    exit_code: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.final_phase == BuildPhase.COMPLETED

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at.value - self.started_at.value).total_seconds()
