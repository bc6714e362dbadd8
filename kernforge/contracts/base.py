"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All types here are IMMUTABLE and represent pure data.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- Layers may import types but MUST NOT modify this module
- All types are frozen dataclasses for immutability guarantee
- Exceptions carry an Error record so fatal failures stay queryable data
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple
from enum import Enum, auto
import hashlib


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    No silent fallbacks - every error state is enumerated.
    """
    # Resolution errors
    INVALID_SETTING_VALUE = auto()
    UNKNOWN_PROFILE = auto()
    HARDWARE_SANITY_FAILED = auto()

    # Module errors
    ESSENTIAL_DRIVER_EXCLUDED = auto()

    # Enforcement errors
    FUNCTION_NOT_FOUND = auto()
    ANCHOR_NOT_FOUND = auto()
    ANCHOR_AMBIGUOUS = auto()
    FILE_WRITE_FAILED = auto()
    WRITE_CAPABILITY_DENIED = auto()

    # Orchestration errors
    INVALID_STATE_TRANSITION = auto()
    PREREQUISITE_MISSING = auto()
    SOURCE_UNREACHABLE = auto()
    PROCESS_SPAWN_FAILED = auto()
    EXTERNAL_PROCESS_FAILED = auto()
    UNEXPECTED_FAILURE = auto()

    # Validation errors
    CONFIG_FILE_MISSING = auto()
    PRIMARY_FAMILY_MISMATCH = auto()
    ARTIFACTS_MISSING = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data, not exceptions - they can be stored and queried.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @staticmethod
    def create(code: ErrorCode, message: str, **context: str) -> Error:
        """Build an error stamped with the current UTC time."""
        return Error(
            code=code,
            message=message,
            timestamp=Timestamp.now().value,
            context=tuple((k, str(v)) for k, v in sorted(context.items()))
        )

    def context_value(self, key: str) -> Optional[str]:
        for k, v in self.context:
            if k == key:
                return v
        return None


# =============================================================================
# FATAL FAILURES (Raised, each wraps an Error record)
# =============================================================================

class KernforgeError(Exception):
    """Base for every fatal failure. Carries the Error record."""

    def __init__(self, error: Error):
        super().__init__(error.message)
        self.error = error

    @property
    def code(self) -> ErrorCode:
        return self.error.code


class ConfigError(KernforgeError):
    """Invalid resolver or reconciler input."""
    pass


class AnchorError(KernforgeError):
    """A mandatory checkpoint found no anchor in the build script."""
    pass


class FileWriteFailure(KernforgeError):
    """A guarded write failed. The backup was restored before raising."""
    pass


class CapabilityError(KernforgeError):
    """A write was attempted without a live Patching capability."""
    pass


class InvalidTransition(KernforgeError):
    """A phase transition outside the enumerated table was requested."""
    pass


class PreparationError(KernforgeError):
    """Prerequisites missing or pristine sources unavailable."""
    pass


class ExternalProcessFailure(KernforgeError):
    """The external build process exited non-zero or could not start."""
    pass


class VerificationMismatch(KernforgeError):
    """The final configuration lost the primary family selection."""
    pass


class BuildCancelled(Exception):
    """Cancellation observed. Not a failure; ends the build as Cancelled."""
    pass


# =============================================================================
# IDENTITY TYPES (Immutable, hash-verified)
# =============================================================================

@dataclass(frozen=True)
class SessionId:
    """Immutable build session identifier."""
    value: str

    @staticmethod
    def generate(workspace: str, started_at: Timestamp) -> SessionId:
        """Generate deterministic session ID from workspace and start time."""
        seed = f"{workspace}|{started_at.to_iso()}"
        session_hash = hashlib.sha256(seed.encode('utf-8')).hexdigest()[:16]
        return SessionId(value=f"build_{session_hash}")


@dataclass(frozen=True)
class ContentSignature:
    """
    Immutable content signature for integrity verification.
    Used to prove a backup or pristine copy is byte-identical.
    """
    payload_hash: str
    payload_length: int

    @staticmethod
    def compute(payload: str) -> ContentSignature:
        """Compute signature from payload content."""
        return ContentSignature(
            payload_hash=hashlib.sha256(payload.encode('utf-8')).hexdigest(),
            payload_length=len(payload)
        )


# =============================================================================
# TEMPORAL TYPES (Immutable, explicit semantics)
# =============================================================================

@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        # Ensure UTC timezone
        if self.value.tzinfo is None:
            object.__setattr__(self, 'value', self.value.replace(tzinfo=timezone.utc))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=datetime.now(timezone.utc))

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return Timestamp(value=dt)

    def to_iso(self) -> str:
        return self.value.isoformat()

