"""
Pure line operations on configuration file text.

These functions are the reference semantics of every enforcement
payload: the shell fragments in payloads.py perform exactly these edits
at build time, and the engine applies them directly to the workspace
config file during Patching.

All functions take and return whole file text. Output text is always
newline-terminated (or empty).
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import re

from ..contracts.configuration import (
    ConfigFamily, ConfigSpec, ConfigValue, FamilySelection,
)
from ..contracts.enforcement import PayloadStep
from ..contracts.modules import ModuleSet


# Shared with the awk hard lock; keep both in sync
MODULE_LINE = re.compile(r'^[^#= ][^= ]*=m$')
BUILTIN_LINE = re.compile(r'^([^#= ][^= ]*)=y$')
DISABLED_LINE = re.compile(r'^# ([^ ]+) is not set$')
VALUE_LINE = re.compile(r'^([A-Za-z0-9_]+)=(.*)$')


def split_lines(text: str) -> List[str]:
    """Split on newline only, the way awk and the shell see the file."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def join_lines(lines: Iterable[str]) -> str:
    lines = list(lines)
    return "".join(f"{line}\n" for line in lines)


def ensure_trailing_newline(text: str) -> str:
    if text and not text.endswith("\n"):
        return text + "\n"
    return text


# =============================================================================
# FAMILIES
# =============================================================================

def purge_family(text: str, family: ConfigFamily) -> str:
    """Delete every line the family owns, active or disabled form."""
    pattern = re.compile(family.purge_pattern())
    return join_lines(line for line in split_lines(text) if not pattern.match(line))


def append_family(text: str, selection: FamilySelection) -> str:
    """Append the selection's lines in canonical order."""
    return ensure_trailing_newline(text) + join_lines(selection.render_lines())


def enforce_family(text: str, selection: FamilySelection) -> str:
    if not selection.managed:
        return text
    return append_family(purge_family(text, selection.family), selection)


def enforce_families(text: str, spec: ConfigSpec) -> str:
    for selection in spec.managed_families():
        text = enforce_family(text, selection)
    return text


# =============================================================================
# MODULE HARD LOCK
# =============================================================================

def frozen_lines(module_set: ModuleSet, tree_symbols: Optional[Mapping[str, str]] = None) -> Tuple[str, ...]:
    """
    The lines the hard lock pins: the set's own rendering, then the
    members resolved from the kernel tree in byte order. Each key once.
    """
    lines = list(module_set.render_lines())
    if tree_symbols:
        lines.extend(sorted({
            f"{tree_symbols[i]}=m" for i in module_set.unresolved if i in tree_symbols
        }))
    unique: List[str] = []
    keys = set()
    for line in lines:
        key = line.split("=", 1)[0]
        if key not in keys:
            keys.add(key)
            unique.append(line)
    return tuple(unique)


def hard_lock(
    text: str,
    module_set: ModuleSet,
    tree_symbols: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Pin the loadable module list to the frozen set.

    - every KEY=m line is dropped, then the frozen lines are re-appended
    - '# KEY is not set' lines for frozen members are dropped
    - KEY=y lines are never touched, and a frozen member that is already
      builtin is not appended (builtin is never demoted)

    tree_symbols resolves members whose symbol was unknown at freeze time
    (see modules/kbuild.py). A member that stays unresolved cannot be
    written and its line is dropped with the rest.

    NO_FILTERING leaves the text unchanged.
    """
    if module_set.is_no_filtering:
        return text

    frozen = frozen_lines(module_set, tree_symbols)
    members = {line.split("=", 1)[0] for line in frozen}

    kept: List[str] = []
    builtin = set()
    for line in split_lines(text):
        if MODULE_LINE.match(line):
            continue
        disabled = DISABLED_LINE.match(line)
        if disabled and disabled.group(1) in members:
            continue
        enabled = BUILTIN_LINE.match(line)
        if enabled:
            builtin.add(enabled.group(1))
        kept.append(line)

    kept.extend(line for line in frozen if line.split("=", 1)[0] not in builtin)
    return join_lines(kept)


# =============================================================================
# CHECKPOINT SIMULATION
# =============================================================================

def apply_steps(
    text: str,
    steps: Tuple[PayloadStep, ...],
    spec: ConfigSpec,
    module_set: ModuleSet,
    tree_symbols: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Apply a checkpoint's payload steps in order.

    AUTODETECT and RENORMALIZE are external tool runs; here they are the
    identity, which is exactly what the enforcement steps around them must
    tolerate.
    """
    for step in steps:
        if step == PayloadStep.FAMILIES:
            text = enforce_families(text, spec)
        elif step == PayloadStep.HARD_LOCK:
            text = hard_lock(text, module_set, tree_symbols)
    return text


def enforce_config(text: str, spec: ConfigSpec, module_set: ModuleSet) -> str:
    """Families then hard lock: the edit applied to the source config file."""
    return hard_lock(enforce_families(text, spec), module_set)


# =============================================================================
# READ-ONLY INSPECTION (validation)
# =============================================================================

def parse_config(text: str) -> Dict[str, ConfigValue]:
    """Map key -> value. A later line for the same key wins, as in Kconfig."""
    values: Dict[str, ConfigValue] = {}
    for line in split_lines(text):
        disabled = DISABLED_LINE.match(line)
        if disabled:
            values[disabled.group(1)] = ConfigValue.disabled()
            continue
        match = VALUE_LINE.match(line)
        if not match:
            continue
        key, raw = match.groups()
        if raw == "y":
            values[key] = ConfigValue.enabled()
        elif raw == "m":
            values[key] = ConfigValue.module()
        else:
            values[key] = ConfigValue.raw(raw)
    return values


def family_lines(text: str, family: ConfigFamily) -> Tuple[str, ...]:
    """Every line of text the family owns, in file order."""
    pattern = re.compile(family.purge_pattern())
    return tuple(line for line in split_lines(text) if pattern.match(line))


def line_key(line: str) -> Optional[str]:
    disabled = DISABLED_LINE.match(line)
    if disabled:
        return disabled.group(1)
    match = VALUE_LINE.match(line)
    return match.group(1) if match else None
