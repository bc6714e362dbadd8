"""
Loaders for module facts produced outside this system.

Both loaders fail open: a missing or unreadable source yields None plus
a warning message, and the caller decides how to record it. Module
filtering is then skipped rather than guessed.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional
import json
import os

from ..contracts.modules import canonical_module_id


DEFAULT_MODPROBED_DB = os.path.expanduser("~/.config/modprobed.db")


@dataclass(frozen=True)
class DiscoveryResult:
    """modules is None when no usable data was found."""
    modules: Optional[FrozenSet[str]]
    source: str
    warning: Optional[str] = None


def parse_module_list(text: str) -> FrozenSet[str]:
    """
    Parse modprobed-db text or a JSON document {"modules": [...]}.

    Text format: one identifier per line, blank lines and '#' comments
    ignored. Only the first whitespace-separated token of a line counts.
    """
    stripped = text.lstrip()
    if stripped.startswith("{"):
        document = json.loads(stripped)
        modules = document.get("modules")
        if not isinstance(modules, list) or not all(isinstance(m, str) for m in modules):
            raise ValueError("'modules' must be a list of strings")
        return frozenset(canonical_module_id(m) for m in modules if m.strip())

    found = set()
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            found.add(canonical_module_id(line.split()[0]))
    return frozenset(found)


def load_module_facts(path: Optional[str] = None) -> DiscoveryResult:
    path = path or DEFAULT_MODPROBED_DB
    if not os.path.exists(path):
        return DiscoveryResult(None, path, f"Module database {path} not found; module filtering disabled")
    try:
        with open(path, "r", encoding="utf-8") as f:
            modules = parse_module_list(f.read())
    except (OSError, UnicodeDecodeError, ValueError) as e:
        return DiscoveryResult(None, path, f"Module database {path} unreadable ({e}); module filtering disabled")
    return DiscoveryResult(modules, path)


def load_symbol_table(path: Optional[str]) -> Dict[str, str]:
    """
    Read 'module<TAB>SYMBOL' lines. Returns {} when path is None.

    Unlike module facts, a named symbol table that cannot be read is an
    error: the caller asked for it explicitly.
    """
    if not path:
        return {}
    symbols: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            parts = line.split("\t") if "\t" in line else line.split()
            if len(parts) != 2:
                raise ValueError(f"{path}:{number}: expected 'module<TAB>SYMBOL'")
            symbols[canonical_module_id(parts[0])] = parts[1].strip()
    return symbols
