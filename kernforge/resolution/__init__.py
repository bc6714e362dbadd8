"""
Resolution Layer

RESPONSIBILITY: Merge hardware facts, user overrides and a profile preset
into one dense, immutable ConfigSpec
ALLOWED INPUTS: HardwareFacts, UserOverrides, Profile / ProfilePreset
OUTPUTS: ConfigSpec

WHAT THIS LAYER MUST NOT DO:
============================
- Read or write files
- Detect hardware (facts are consumed read-only)
- Drop an ignored override silently
- Depend on call order or hidden state

BOUNDARY ENFORCEMENT:
=====================
- resolve() is a pure function
- The engine wrapper only adds audit records around it
- Every resolution conflict becomes a WARNING audit entry
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Mapping, Optional, Union

from ..contracts.configuration import (
    ConfigSpec, HardwareFacts, Profile, Setting, UserOverrides, describe_value,
)
from ..contracts.events import AuditEventType, AuditLogEntry
from .profiles import LIBRARY_DEFAULTS, PROFILE_PRESETS, coerce_setting_value, get_preset
from .resolver import resolve
from .families import FAMILIES


@dataclass
class ResolutionConfig:
    """Configuration for the resolution layer."""
    default_profile: Profile = Profile.GENERIC


class ResolutionEngine:
    """
    Audited front door to the pure resolver.
    """

    def __init__(self, config: Optional[ResolutionConfig] = None):
        self._config = config or ResolutionConfig()
        self._audit_log: List[AuditLogEntry] = []

    def resolve(
        self,
        hardware_facts: Optional[HardwareFacts] = None,
        overrides: Optional[Mapping[Setting, object]] = None,
        profile: Union[Profile, str, None] = None,
    ) -> ConfigSpec:
        preset = get_preset(profile if profile is not None else self._config.default_profile)
        spec = resolve(
            hardware_facts or HardwareFacts(),
            UserOverrides.of(overrides),
            preset,
        )

        for conflict in spec.conflicts:
            self._log_audit(
                action="override_ignored",
                entity_id=conflict.setting.value,
                metadata={
                    "kept": describe_value(conflict.kept_value),
                    "ignored": describe_value(conflict.ignored_value),
                    "reason": conflict.reason.value,
                },
                event_type=AuditEventType.WARNING,
            )

        self._log_audit(
            action="config_resolved",
            entity_id=spec.spec_hash,
            metadata={
                "profile": spec.profile.value,
                "conflicts": len(spec.conflicts),
                "managed_families": len(spec.managed_families()),
                **{
                    s.setting.value: f"{describe_value(s.value)} ({s.provenance.value})"
                    for s in spec.settings
                },
            },
        )
        return spec

    def _log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        event_type: AuditEventType = AuditEventType.RESOLUTION,
    ):
        """Add entry to internal audit log."""
        self._audit_log.append(AuditLogEntry.create(
            layer="resolution",
            action=action,
            entity_id=entity_id,
            metadata=metadata,
            event_type=event_type,
        ))

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of audit log entries."""
        return list(self._audit_log)


__all__ = [
    'FAMILIES',
    'LIBRARY_DEFAULTS',
    'PROFILE_PRESETS',
    'ResolutionConfig',
    'ResolutionEngine',
    'coerce_setting_value',
    'get_preset',
    'resolve',
]
