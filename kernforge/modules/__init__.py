"""
Module Reconciliation Layer

RESPONSIBILITY: Compute the frozen set of kernel modules that must
survive filtering
ALLOWED INPUTS: ConfigSpec, module facts (read-only), static catalogs
OUTPUTS: ModuleSet (or the NO_FILTERING sentinel)

WHAT THIS LAYER MUST NOT DO:
============================
- Write any file
- Guess modules when discovery data is missing (fail open instead)
- Exclude an essential driver
- Recompute the set after Configuration

BOUNDARY ENFORCEMENT:
=====================
- reconcile() is pure; file reads live in discovery.py
- Missing module facts become a WARNING audit entry, never an exception
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..contracts.configuration import ConfigSpec, GpuVendor, Setting
from ..contracts.events import AuditEventType, AuditLogEntry
from ..contracts.modules import ModuleSet
from .catalog import (
    ESSENTIAL_DRIVERS, GPU_EXCLUSIONS, KNOWN_SYMBOLS, WHITELIST_CATALOG, SymbolTable,
)
from .discovery import DiscoveryResult, load_module_facts, load_symbol_table
from .kbuild import scan_kbuild_symbols
from .reconciler import reconcile


@dataclass
class ReconcilerConfig:
    """Configuration for the module reconciliation layer."""
    module_facts_path: Optional[str] = None  # None: modprobed-db default location
    symbol_table_path: Optional[str] = None
    whitelist_catalog: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(WHITELIST_CATALOG)
    )
    gpu_exclusions: Dict[GpuVendor, FrozenSet[str]] = field(
        default_factory=lambda: dict(GPU_EXCLUSIONS)
    )


class ModuleReconciler:
    """
    Audited wrapper around reconcile().

    Reads the settings it needs from the ConfigSpec: MODULE_STRIPPING
    enables auto discovery, WHITELIST and GPU_VENDOR feed the algebra.
    """

    def __init__(self, config: Optional[ReconcilerConfig] = None):
        self._config = config or ReconcilerConfig()
        self._audit_log: List[AuditLogEntry] = []
        self._warnings: List[str] = []

    def reconcile(
        self,
        spec: ConfigSpec,
        discovered: Optional[FrozenSet[str]] = None,
    ) -> ModuleSet:
        """
        discovered overrides the module facts file when given.
        """
        auto_discovery = bool(spec.value(Setting.MODULE_STRIPPING))

        if auto_discovery and discovered is None:
            result = load_module_facts(self._config.module_facts_path)
            discovered = result.modules
            if result.warning:
                self._warn("module_facts_unavailable", result.source, result.warning)
            else:
                self._log_audit(
                    action="module_facts_loaded",
                    entity_id=result.source,
                    metadata={"count": len(result.modules or ())},
                )

        symbols = SymbolTable(load_symbol_table(self._config.symbol_table_path))

        module_set = reconcile(
            auto_discovery_enabled=auto_discovery,
            auto_discovered_modules=discovered,
            whitelist_enabled=bool(spec.value(Setting.WHITELIST)),
            whitelist_catalog=self._config.whitelist_catalog,
            gpu_vendor=spec.value(Setting.GPU_VENDOR),
            gpu_exclusion_table=self._config.gpu_exclusions,
            symbols=symbols,
        )

        if spec.value(Setting.WHITELIST) and not auto_discovery:
            self._log_audit(
                action="whitelist_ignored",
                metadata={"reason": "whitelist only widens an auto-discovered set"},
            )

        self._log_audit(
            action="module_set_frozen",
            entity_id="no_filtering" if module_set.is_no_filtering else f"modules_{len(module_set)}",
            metadata={
                "filtering": module_set.filtering,
                "kept": len(module_set),
                "unresolved": ",".join(module_set.unresolved),
                "excluded": ",".join(e.identifier for e in module_set.excluded_entries),
            },
        )
        return module_set

    @property
    def warnings(self) -> Tuple[str, ...]:
        return tuple(self._warnings)

    def _warn(self, action: str, entity_id: str, message: str):
        self._warnings.append(message)
        self._log_audit(
            action=action,
            entity_id=entity_id,
            metadata={"details": message},
            event_type=AuditEventType.WARNING,
        )

    def _log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        event_type: AuditEventType = AuditEventType.RECONCILIATION,
    ):
        """Add entry to internal audit log."""
        self._audit_log.append(AuditLogEntry.create(
            layer="modules",
            action=action,
            entity_id=entity_id,
            metadata=metadata,
            event_type=event_type,
        ))

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of audit log entries."""
        return list(self._audit_log)


__all__ = [
    'DiscoveryResult',
    'ESSENTIAL_DRIVERS',
    'GPU_EXCLUSIONS',
    'KNOWN_SYMBOLS',
    'ModuleReconciler',
    'ReconcilerConfig',
    'SymbolTable',
    'WHITELIST_CATALOG',
    'load_module_facts',
    'reconcile',
    'scan_kbuild_symbols',
]
