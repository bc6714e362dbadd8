"""
Durable Session Persistence

Append-only JSONL files for one build session, written under the
workspace state directory:

    .kernforge/state/build.log.jsonl   external process output, one LogLine per line
    .kernforge/state/audit.jsonl       audit entries, one per line
    .kernforge/state/session.json      summary, rewritten atomically on every phase change

The log sink never drops a line: every LogLine is written and flushed
before the next one is accepted.
"""

import json
import os
from datetime import datetime, date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..contracts.base import Timestamp
from ..contracts.events import AuditLogEntry, LogLine


STATE_DIR = os.path.join(".kernforge", "state")
LOG_FILE = "build.log.jsonl"
AUDIT_FILE = "audit.jsonl"
SUMMARY_FILE = "session.json"


class StrictEventEncoder(json.JSONEncoder):
    """
    JSON encoder for contract types.

    RULES:
    1. Timestamps and datetimes are ISO 8601 strings (UTC)
    2. Enums use their .value
    3. Sets become sorted lists
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Timestamp):
            return obj.to_iso()
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "__dataclass_fields__"):
            return {k: getattr(obj, k) for k in obj.__dataclass_fields__}
        return super().default(obj)


def state_dir(workspace: str) -> str:
    return os.path.join(workspace, STATE_DIR)


def log_line_record(line: LogLine) -> Dict[str, Any]:
    return {
        "session_id": line.session_id.value,
        "sequence": line.sequence,
        "stream": line.stream.value,
        "text": line.text,
        "timestamp": line.timestamp.to_iso(),
    }


def audit_record(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "event_type": entry.event_type.value,
        "timestamp": entry.timestamp.to_iso(),
        "layer": entry.layer,
        "action": entry.action,
        "entity_id": entry.entity_id,
        "metadata": dict(entry.metadata),
    }


class BuildLogPersister:
    """
    Append-only writer for one session's log and audit files.

    Files stay open for the session and are flushed per record.
    """

    def __init__(self, workspace: str):
        self._dir = state_dir(workspace)
        os.makedirs(self._dir, exist_ok=True)
        self._log_path = os.path.join(self._dir, LOG_FILE)
        self._audit_path = os.path.join(self._dir, AUDIT_FILE)
        self._summary_path = os.path.join(self._dir, SUMMARY_FILE)
        self._log = open(self._log_path, "a", encoding="utf-8")
        self._audit = open(self._audit_path, "a", encoding="utf-8")
        self._lines_written = 0

    @property
    def log_path(self) -> str:
        return self._log_path

    @property
    def lines_written(self) -> int:
        return self._lines_written

    def append_line(self, line: LogLine):
        self._log.write(json.dumps(log_line_record(line)) + "\n")
        self._log.flush()
        self._lines_written += 1

    def append_audit(self, entry: AuditLogEntry):
        self._audit.write(json.dumps(audit_record(entry)) + "\n")
        self._audit.flush()

    def write_summary(self, summary: Dict[str, Any]):
        """Replace session.json atomically (temp file + rename)."""
        tmp_path = self._summary_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, cls=StrictEventEncoder)
            f.write("\n")
        os.replace(tmp_path, self._summary_path)

    def close(self):
        for handle in (self._log, self._audit):
            if not handle.closed:
                os.fsync(handle.fileno())
                handle.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# =============================================================================
# READERS (status API, CLI)
# =============================================================================

def read_summary(workspace: str) -> Optional[Dict[str, Any]]:
    path = Path(state_dir(workspace)) / SUMMARY_FILE
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def read_jsonl(path: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    """Read records from a JSONL file. A torn trailing line is skipped."""
    if not os.path.exists(path):
        return []
    records: List[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for index, line in enumerate(f):
            if index < offset or not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # Only a concurrent writer produces partial lines
                continue
            if limit is not None and len(records) >= limit:
                break
    return records


def read_log(workspace: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    return read_jsonl(os.path.join(state_dir(workspace), LOG_FILE), limit, offset)


def read_audit(workspace: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    return read_jsonl(os.path.join(state_dir(workspace), AUDIT_FILE), limit, offset)
