"""
Enforcement Layer (the Engine)

RESPONSIBILITY: Turn ConfigSpec + ModuleSet into idempotent enforcement
payloads anchored inside the external build script, and write the
instrumented script and the enforced source config
ALLOWED INPUTS: pristine script/config text, ConfigSpec, ModuleSet,
ScriptWriteHandle
OUTPUTS: InstrumentedScript, enforced files on disk

WHAT THIS LAYER MUST NOT DO:
============================
- Execute the build script
- Write without a ScriptWriteHandle
- Re-read discovery data or re-resolve settings (inputs are frozen)
- Leave a half-written file behind

BOUNDARY ENFORCEMENT:
=====================
- instrument() and the kconfig line operations are pure
- apply() is the only code path that writes, and it writes through the
  handle, which restores backups on failure
- AnchorError is raised before any byte is written
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..contracts.configuration import ConfigSpec
from ..contracts.enforcement import (
    EnforcementCheckpoint, InstrumentedScript, MandatoryMatchPolicy,
)
from ..contracts.events import AuditEventType, AuditLogEntry
from ..contracts.modules import ModuleSet
from .checkpoints import CHECKPOINTS, get_checkpoint
from .injector import instrument
from .kconfig import enforce_config, enforce_families, hard_lock
from .payloads import mglru_tuning_script, render_block
from .writer import PhaseLease, ScriptWriteHandle


@dataclass
class EnforcementConfig:
    """Configuration for the enforcement layer."""
    mandatory_policy: MandatoryMatchPolicy = MandatoryMatchPolicy.FIRST
    enforce_source_config: bool = True  # also rewrite the config the script copies
    write_mglru_tuning: bool = True  # runtime tuning script beside the build script


@dataclass(frozen=True)
class PatchResult:
    script: InstrumentedScript
    script_path: str
    config_path: Optional[str]
    tuning_path: Optional[str] = None


class EnforcementEngine:
    """
    The single writer of the build script and the config file.
    """

    def __init__(
        self,
        config: Optional[EnforcementConfig] = None,
        checkpoints: Tuple[EnforcementCheckpoint, ...] = CHECKPOINTS,
    ):
        self._config = config or EnforcementConfig()
        self._checkpoints = checkpoints
        self._audit_log: List[AuditLogEntry] = []

    @property
    def checkpoints(self) -> Tuple[EnforcementCheckpoint, ...]:
        return self._checkpoints

    def instrument(
        self,
        pristine_script: str,
        spec: ConfigSpec,
        module_set: ModuleSet,
    ) -> InstrumentedScript:
        """Pure instrumentation; raises AnchorError on a missing mandatory anchor."""
        result = instrument(
            pristine_script,
            spec,
            module_set,
            checkpoints=self._checkpoints,
            policy=self._config.mandatory_policy,
        )
        for insertion in result.insertions:
            self._log_audit(
                action="checkpoint_planned",
                entity_id=insertion.checkpoint_id,
                metadata={
                    "stage": insertion.stage,
                    "line": insertion.anchor_line,
                    "anchor": insertion.anchor_text,
                    "replaced_existing": insertion.replaced_existing,
                },
            )
        for checkpoint_id in result.skipped_checkpoints:
            self._log_audit(
                action="checkpoint_skipped",
                entity_id=checkpoint_id,
                metadata={"reason": "no anchor match"},
            )
        return result

    def plan(self, spec: ConfigSpec, module_set: ModuleSet) -> Dict[str, List[str]]:
        """Rendered payload block per checkpoint, without any script."""
        return {
            c.checkpoint_id: render_block(c, spec, module_set) for c in self._checkpoints
        }

    def apply(
        self,
        lease: PhaseLease,
        script_path: str,
        pristine_script: str,
        spec: ConfigSpec,
        module_set: ModuleSet,
        config_path: Optional[str] = None,
        pristine_config: Optional[str] = None,
        tuning_path: Optional[str] = None,
    ) -> PatchResult:
        """
        Instrument and write. Called exactly once per build, in Patching.

        The script is instrumented first so an AnchorError leaves both
        files untouched. The handle restores both files if either write
        fails.
        """
        result = self.instrument(pristine_script, spec, module_set)
        handle = ScriptWriteHandle.acquire(lease)

        receipt = handle.write_text(script_path, result.text)
        self._log_audit(
            action="script_written",
            entity_id=receipt.path,
            metadata={
                "sha256": receipt.signature.payload_hash,
                "checkpoints": len(result.insertions),
                "spec_hash": result.spec_hash,
            },
        )

        written_config = None
        if config_path and pristine_config is not None and self._config.enforce_source_config:
            receipt = handle.write_text(config_path, enforce_config(pristine_config, spec, module_set))
            written_config = receipt.path
            self._log_audit(
                action="config_written",
                entity_id=receipt.path,
                metadata={"sha256": receipt.signature.payload_hash},
            )

        written_tuning = None
        if tuning_path and self._config.write_mglru_tuning:
            receipt = handle.write_text(tuning_path, mglru_tuning_script(spec))
            written_tuning = receipt.path
            self._log_audit(
                action="mglru_tuning_written",
                entity_id=receipt.path,
                metadata={
                    "enabled_mask": f"0x{spec.mglru_tuning.enabled_mask:04x}",
                    "min_ttl_ms": spec.mglru_tuning.min_ttl_ms,
                },
            )

        return PatchResult(
            script=result,
            script_path=script_path,
            config_path=written_config,
            tuning_path=written_tuning,
        )

    def _log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        event_type: AuditEventType = AuditEventType.ENFORCEMENT,
    ):
        """Add entry to internal audit log."""
        self._audit_log.append(AuditLogEntry.create(
            layer="enforcement",
            action=action,
            entity_id=entity_id,
            metadata=metadata,
            event_type=event_type,
        ))

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of audit log entries."""
        return list(self._audit_log)


__all__ = [
    'CHECKPOINTS',
    'EnforcementConfig',
    'EnforcementEngine',
    'PatchResult',
    'PhaseLease',
    'ScriptWriteHandle',
    'enforce_config',
    'enforce_families',
    'get_checkpoint',
    'hard_lock',
    'instrument',
]
