"""
Configuration Contracts

Immutable types shared by the resolution layer (producer) and the
enforcement and validation layers (consumers).

CONFIGURATION FILE MODEL:
=========================
A kernel configuration file is a flat list of newline-terminated lines:

    KEY=y                 -> ValueKind.ENABLED
    KEY=m                 -> ValueKind.MODULE
    KEY="text" / KEY=300  -> ValueKind.LITERAL
    # KEY is not set      -> ValueKind.DISABLED

Keys are grouped into ConfigFamily definitions. A family owns a set of
keys (exact names and/or prefixes). Among its selector keys exactly one
may be present once the family has been enforced; dependent keys follow
the selector in the family's canonical order.

GUARANTEES:
===========
- Every type here is frozen
- Rendering is deterministic: the same ConfigSpec always renders the
  same lines in the same order
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
from enum import Enum
import hashlib
import re


KEY_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')


# =============================================================================
# CLOSED DOMAIN VARIANTS
# =============================================================================

class OptimizationVariant(Enum):
    """Link-time optimization member of the primary family."""
    NONE = "none"
    THIN = "thin"
    FULL = "full"


class PreemptionModel(Enum):
    NONE = "none"            # server, no forced preemption
    VOLUNTARY = "voluntary"
    FULL = "full"
    REALTIME = "realtime"


class HardeningLevel(Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    HARDENED = "hardened"


class GpuVendor(Enum):
    NVIDIA = "nvidia"
    AMD = "amd"
    INTEL = "intel"
    UNKNOWN = "unknown"


class Profile(Enum):
    GENERIC = "generic"
    GAMING = "gaming"
    WORKSTATION = "workstation"
    SERVER = "server"
    LAPTOP = "laptop"


class Setting(Enum):
    """
    Every knob the resolver decides.

    Closed set: the resolver must produce exactly one value per member.
    """
    OPTIMIZATION = "optimization"
    PREEMPTION = "preemption"
    TIMER_HZ = "timer_hz"
    MGLRU = "mglru"
    SCHED_EXT = "sched_ext"
    HARDENING = "hardening"
    MODULE_STRIPPING = "module_stripping"
    WHITELIST = "whitelist"
    POLLY = "polly"
    NATIVE_OPTIMIZATIONS = "native_optimizations"
    GPU_VENDOR = "gpu_vendor"


class Provenance(Enum):
    """Where a resolved value came from. Members are in precedence order."""
    FROM_HARDWARE = "from_hardware"
    FROM_OVERRIDE = "from_override"
    FROM_PRESET = "from_preset"
    LIBRARY_DEFAULT = "library_default"


class ConflictReason(Enum):
    OVERRIDDEN_BY_HARDWARE = "overridden_by_hardware"


# =============================================================================
# KEY / VALUE
# =============================================================================

class ValueKind(Enum):
    ENABLED = "y"
    MODULE = "m"
    DISABLED = "disabled"
    LITERAL = "literal"


@dataclass(frozen=True)
class ConfigValue:
    """One of Enabled, Module, Disabled, Literal(text)."""
    kind: ValueKind
    literal: Optional[str] = None

    def __post_init__(self):
        if self.kind == ValueKind.LITERAL and self.literal is None:
            raise ValueError("Literal config values need literal text")
        if self.kind != ValueKind.LITERAL and self.literal is not None:
            raise ValueError(f"{self.kind.name} config values carry no literal text")

    @staticmethod
    def enabled() -> ConfigValue:
        return ConfigValue(kind=ValueKind.ENABLED)

    @staticmethod
    def module() -> ConfigValue:
        return ConfigValue(kind=ValueKind.MODULE)

    @staticmethod
    def disabled() -> ConfigValue:
        return ConfigValue(kind=ValueKind.DISABLED)

    @staticmethod
    def raw(text: str) -> ConfigValue:
        """Literal written verbatim after '=' (numbers, pre-quoted strings)."""
        return ConfigValue(kind=ValueKind.LITERAL, literal=text)

    @staticmethod
    def string(text: str) -> ConfigValue:
        """Literal string, quoted the way Kconfig writes it."""
        escaped = text.replace('\\', '\\\\').replace('"', '\\"')
        return ConfigValue(kind=ValueKind.LITERAL, literal=f'"{escaped}"')

    def render(self, key: str) -> str:
        if self.kind == ValueKind.DISABLED:
            return f"# {key} is not set"
        if self.kind == ValueKind.LITERAL:
            return f"{key}={self.literal}"
        return f"{key}={self.kind.value}"


@dataclass(frozen=True)
class ConfigEntry:
    """A single key bound to a single value."""
    key: str
    value: ConfigValue

    def __post_init__(self):
        if not KEY_PATTERN.match(self.key):
            raise ValueError(f"Invalid config key: {self.key!r}")

    def render(self) -> str:
        return self.value.render(self.key)


# =============================================================================
# FAMILIES
# =============================================================================

@dataclass(frozen=True)
class ConfigFamily:
    """
    A set of mutually exclusive keys plus dependent capability flags.

    keys:      exact member keys, in canonical append order
    selectors: the mutually exclusive subset of keys
    prefixes:  additional key prefixes the family owns for purging
    primary:   a mismatch in this family fails validation
    """
    name: str
    keys: Tuple[str, ...]
    selectors: FrozenSet[str]
    prefixes: Tuple[str, ...] = field(default_factory=tuple)
    primary: bool = False

    def __post_init__(self):
        for key in self.keys + self.prefixes:
            if not KEY_PATTERN.match(key):
                raise ValueError(f"Family {self.name}: invalid key or prefix {key!r}")
        if not self.selectors:
            raise ValueError(f"Family {self.name} needs at least one selector key")
        if not self.selectors <= frozenset(self.keys):
            raise ValueError(f"Family {self.name}: selectors must be member keys")

    def owns(self, key: str) -> bool:
        return key in self.keys or any(key.startswith(p) for p in self.prefixes)

    def canonical_index(self, key: str) -> int:
        return self.keys.index(key) if key in self.keys else len(self.keys)

    def purge_pattern(self) -> str:
        """
        Regular expression matching every line the family owns.

        Covers both the active form (KEY=...) and the disabled comment form
        (# KEY is not set). The pattern uses only POSIX ERE constructs so
        the same text drives Python's re module and awk.
        """
        alternatives: List[str] = list(self.prefixes)
        if self.keys:
            alternatives.append(f"({'|'.join(self.keys)})( is not set|=)")
        return f"^(# )?({'|'.join(alternatives)})"


@dataclass(frozen=True)
class FamilySelection:
    """
    The resolved content of one family.

    managed=False means the family is left to the external tool: it is
    neither purged nor appended.
    """
    family: ConfigFamily
    entries: Tuple[ConfigEntry, ...]
    provenance: Provenance
    managed: bool = True

    def __post_init__(self):
        if not self.managed:
            if self.entries:
                raise ValueError(f"Unmanaged family {self.family.name} must not carry entries")
            return
        keys = [e.key for e in self.entries]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Family {self.family.name}: duplicate keys in selection")
        foreign = [k for k in keys if not self.family.owns(k)]
        if foreign:
            raise ValueError(f"Family {self.family.name} does not own {foreign}")
        selected = [k for k in keys if k in self.family.selectors]
        if len(selected) != 1:
            raise ValueError(
                f"Family {self.family.name} needs exactly one selector, got {selected}"
            )
        ordered = tuple(sorted(self.entries, key=lambda e: self.family.canonical_index(e.key)))
        object.__setattr__(self, 'entries', ordered)

    @property
    def selector(self) -> Optional[ConfigEntry]:
        for entry in self.entries:
            if entry.key in self.family.selectors:
                return entry
        return None

    def render_lines(self) -> Tuple[str, ...]:
        return tuple(e.render() for e in self.entries)


# =============================================================================
# RESOLVER INPUTS
# =============================================================================

@dataclass(frozen=True)
class HardwareFacts:
    """
    Read-only facts from hardware detection.

    gpu_vendor is the one setting detection normally supplies; constraints
    lets a detector pin any other setting (e.g. a platform that cannot run
    a given preemption model). None means "not detected".
    """
    gpu_vendor: Optional[GpuVendor] = None
    cpu_cores: Optional[int] = None
    ram_gb: Optional[int] = None
    disk_free_gb: Optional[int] = None
    constraints: Tuple[Tuple[Setting, object], ...] = field(default_factory=tuple)

    def settings(self) -> Dict[Setting, object]:
        values: Dict[Setting, object] = dict(self.constraints)
        if self.gpu_vendor is not None:
            values[Setting.GPU_VENDOR] = self.gpu_vendor
        return values


@dataclass(frozen=True)
class UserOverrides:
    """Explicit user choices. Absent settings are simply not present."""
    values: Tuple[Tuple[Setting, object], ...] = field(default_factory=tuple)

    @staticmethod
    def of(mapping: Optional[Mapping[Setting, object]] = None) -> UserOverrides:
        items = sorted((mapping or {}).items(), key=lambda kv: kv[0].value)
        return UserOverrides(values=tuple(items))

    def as_dict(self) -> Dict[Setting, object]:
        return dict(self.values)


@dataclass(frozen=True)
class MglruTuning:
    enabled_mask: int = 0x0007
    min_ttl_ms: int = 1000


@dataclass(frozen=True)
class ProfilePreset:
    """A named bundle of defaults: a partial ConfigSpec fragment."""
    profile: Profile
    description: str
    defaults: Tuple[Tuple[Setting, object], ...]
    mglru_tuning: MglruTuning = field(default_factory=MglruTuning)

    def as_dict(self) -> Dict[Setting, object]:
        return dict(self.defaults)


# =============================================================================
# RESOLVER OUTPUT
# =============================================================================

@dataclass(frozen=True)
class ResolvedSetting:
    setting: Setting
    value: object
    provenance: Provenance


@dataclass(frozen=True)
class ResolutionConflict:
    """
    A user override that lost to a hardware fact.

    Non-fatal. Recorded so the ignored choice is never silently dropped.
    """
    setting: Setting
    kept_value: object
    ignored_value: object
    reason: ConflictReason = ConflictReason.OVERRIDDEN_BY_HARDWARE

    def describe(self) -> str:
        return (
            f"{self.setting.value}: override {_display(self.ignored_value)} ignored, "
            f"hardware requires {_display(self.kept_value)} ({self.reason.value})"
        )


@dataclass(frozen=True)
class ConfigSpec:
    """
    The fully resolved, immutable desired configuration for one build.

    Dense: every Setting has exactly one ResolvedSetting, every known
    family has exactly one FamilySelection (managed or not).
    """
    profile: Profile
    settings: Tuple[ResolvedSetting, ...]
    families: Tuple[FamilySelection, ...]
    conflicts: Tuple[ResolutionConflict, ...] = field(default_factory=tuple)
    mglru_tuning: MglruTuning = field(default_factory=MglruTuning)
    lto_shield_modules: Tuple[str, ...] = field(default_factory=tuple)
    make_flags: Tuple[str, ...] = field(default_factory=tuple)
    kernel_cflags: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        seen = [s.setting for s in self.settings]
        missing = set(Setting) - set(seen)
        if missing or len(seen) != len(set(seen)):
            raise ValueError(
                f"ConfigSpec must resolve every setting exactly once (missing: "
                f"{sorted(s.value for s in missing)})"
            )
        names = [f.family.name for f in self.families]
        if len(names) != len(set(names)):
            raise ValueError("ConfigSpec lists a family twice")

    def resolved(self, setting: Setting) -> ResolvedSetting:
        for item in self.settings:
            if item.setting == setting:
                return item
        raise KeyError(setting)

    def value(self, setting: Setting) -> object:
        return self.resolved(setting).value

    def provenance(self, setting: Setting) -> Provenance:
        return self.resolved(setting).provenance

    def family(self, name: str) -> FamilySelection:
        for selection in self.families:
            if selection.family.name == name:
                return selection
        raise KeyError(name)

    def managed_families(self) -> Tuple[FamilySelection, ...]:
        return tuple(f for f in self.families if f.managed)

    def primary_family(self) -> Optional[FamilySelection]:
        for selection in self.families:
            if selection.family.primary:
                return selection
        return None

    def rendered_lines(self) -> Tuple[str, ...]:
        """All managed family lines, family order then canonical key order."""
        lines: List[str] = []
        for selection in self.managed_families():
            lines.extend(selection.render_lines())
        return tuple(lines)

    @property
    def spec_hash(self) -> str:
        content = "\n".join(
            self.rendered_lines() + self.make_flags + self.kernel_cflags + self.lto_shield_modules
        )
        return hashlib.sha256(content.encode('utf-8')).hexdigest()[:16]


def _display(value: object) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def describe_value(value: object) -> str:
    """Human-readable rendering of a resolved setting value."""
    return _display(value)


def enum_members(values: Iterable[Enum]) -> Tuple[str, ...]:
    return tuple(v.value for v in values)
