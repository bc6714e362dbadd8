"""
Module set reconciliation.

    Result = (Discovered | (Whitelist if whitelist and discovery else {})) - Excluded[vendor]

Without discovery data the result is NO_FILTERING. The whitelist only
ever widens a discovered set; on its own it is a no-op.
"""

from __future__ import annotations
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple

from ..contracts.configuration import GpuVendor
from ..contracts.modules import (
    InclusionMode, ModuleEntry, ModuleSet, NO_FILTERING, canonical_module_id,
)
from .catalog import GPU_EXCLUSIONS, SymbolTable, check_exclusion_table, whitelist_modules


def reconcile(
    auto_discovery_enabled: bool,
    auto_discovered_modules: Optional[Iterable[str]],
    whitelist_enabled: bool,
    whitelist_catalog: Mapping[str, Tuple[str, ...]],
    gpu_vendor: GpuVendor,
    gpu_exclusion_table: Mapping[GpuVendor, FrozenSet[str]] = GPU_EXCLUSIONS,
    symbols: Optional[SymbolTable] = None,
) -> ModuleSet:
    """Compute the frozen module set. Pure apart from raising ConfigError."""
    whitelist = whitelist_modules(whitelist_catalog)
    check_exclusion_table(gpu_exclusion_table, whitelist)

    if not auto_discovery_enabled or auto_discovered_modules is None:
        return NO_FILTERING

    symbols = symbols or SymbolTable()
    base = {canonical_module_id(m) for m in auto_discovered_modules}
    if whitelist_enabled:
        base |= whitelist

    excluded = {canonical_module_id(m) for m in gpu_exclusion_table.get(gpu_vendor, frozenset())}

    entries = []
    for identifier in sorted(base):
        mode = InclusionMode.EXCLUDED if identifier in excluded else InclusionMode.MODULE
        entries.append(ModuleEntry(identifier, mode, symbols.lookup(identifier)))
    return ModuleSet(entries=tuple(entries))
