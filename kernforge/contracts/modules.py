"""
Module Set Contracts

The frozen result of module reconciliation, consumed by the enforcement
layer's hard lock.

A ModuleSet is one of two things:
- a filtering set: the exact list of modules that must survive at
  Module or Builtin, everything else tristate is dropped
- NO_FILTERING: a sentinel meaning "no module facts, do not filter".
  It is distinct from an empty filtering set, which would drop every
  loadable module.

A member whose config symbol is not known when the set is frozen stays
unresolved. It is never rendered under a made-up key; the hard lock
looks its symbol up in the kernel tree's Kbuild files instead.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple
from enum import Enum


SYMBOL_PREFIX = "CONFIG_"


def canonical_module_id(name: str) -> str:
    """Module names compare case-insensitively with '-' and '_' equivalent."""
    return name.strip().lower().replace('-', '_')


def is_config_symbol(symbol: str) -> bool:
    return symbol.startswith(SYMBOL_PREFIX) and len(symbol) > len(SYMBOL_PREFIX)


class InclusionMode(Enum):
    MODULE = "m"
    BUILTIN = "y"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class ModuleEntry:
    """
    One module decision.

    symbol is the config key the hard lock writes for this module, or
    None while it is unresolved.
    """
    identifier: str
    mode: InclusionMode
    symbol: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'identifier', canonical_module_id(self.identifier))
        if self.symbol is not None and not is_config_symbol(self.symbol):
            raise ValueError(f"{self.symbol!r} is not a config symbol")

    @property
    def kept(self) -> bool:
        return self.mode != InclusionMode.EXCLUDED

    @property
    def resolved(self) -> bool:
        return self.symbol is not None

    def render(self) -> str:
        if self.symbol is None:
            raise ValueError(f"module {self.identifier} has no config symbol")
        return f"{self.symbol}={self.mode.value}"


@dataclass(frozen=True)
class ModuleSet:
    """
    Frozen module list. Rendered text is computed once at construction.

    Entries are ordered by identifier. Excluded entries are kept for
    auditing but never rendered; unresolved entries are not rendered
    either.
    """
    entries: Tuple[ModuleEntry, ...] = field(default_factory=tuple)
    filtering: bool = True
    literal_text: str = ""

    def __post_init__(self):
        if not self.filtering and self.entries:
            raise ValueError("NO_FILTERING carries no entries")
        ordered = tuple(sorted(self.entries, key=lambda e: e.identifier))
        ids = [e.identifier for e in ordered]
        if len(ids) != len(set(ids)):
            raise ValueError("ModuleSet lists a module twice")
        object.__setattr__(self, 'entries', ordered)
        object.__setattr__(self, 'literal_text', "".join(f"{line}\n" for line in self._lines()))

    @staticmethod
    def of(
        identifiers: Iterable[str],
        symbols: Optional[Mapping[str, str]] = None,
        mode: InclusionMode = InclusionMode.MODULE,
    ) -> ModuleSet:
        """Build a filtering set; identifiers missing from symbols stay unresolved."""
        symbols = {canonical_module_id(k): v for k, v in (symbols or {}).items()}
        unique = sorted({canonical_module_id(i) for i in identifiers})
        return ModuleSet(entries=tuple(ModuleEntry(i, mode, symbols.get(i)) for i in unique))

    @property
    def is_no_filtering(self) -> bool:
        return not self.filtering

    @property
    def kept_entries(self) -> Tuple[ModuleEntry, ...]:
        return tuple(e for e in self.entries if e.kept)

    @property
    def excluded_entries(self) -> Tuple[ModuleEntry, ...]:
        return tuple(e for e in self.entries if not e.kept)

    @property
    def identifiers(self) -> FrozenSet[str]:
        return frozenset(e.identifier for e in self.kept_entries)

    @property
    def symbols(self) -> FrozenSet[str]:
        return frozenset(e.symbol for e in self.kept_entries if e.resolved)

    @property
    def unresolved(self) -> Tuple[str, ...]:
        """Kept identifiers still waiting for a config symbol, sorted."""
        return tuple(e.identifier for e in self.kept_entries if not e.resolved)

    def render_lines(self) -> Tuple[str, ...]:
        return tuple(self.literal_text.splitlines())

    def _lines(self) -> Tuple[str, ...]:
        lines = []
        seen = set()
        for entry in self.kept_entries:
            if not entry.resolved:
                continue
            # Two identifiers may map to one symbol (nls tables); write it once
            if entry.symbol in seen:
                continue
            seen.add(entry.symbol)
            lines.append(entry.render())
        return tuple(lines)

    def __len__(self) -> int:
        return len(self.kept_entries)


NO_FILTERING = ModuleSet(filtering=False)
