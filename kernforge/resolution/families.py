"""
Config family catalog and selection builders.

FAMILIES lists every family in canonical enforcement order. Each builder
turns resolved setting values into the exact lines the family must hold
after enforcement.
"""

from __future__ import annotations
from typing import Dict, List, Tuple

from ..contracts.configuration import (
    ConfigEntry, ConfigFamily, ConfigValue, FamilySelection, HardeningLevel,
    OptimizationVariant, PreemptionModel, Provenance, Setting,
)


OPTIMIZATION = ConfigFamily(
    name="optimization",
    keys=(
        "CONFIG_LTO_NONE",
        "CONFIG_LTO_CLANG",
        "CONFIG_LTO_CLANG_THIN",
        "CONFIG_LTO_CLANG_FULL",
        "CONFIG_HAS_LTO_CLANG",
    ),
    selectors=frozenset({"CONFIG_LTO_NONE", "CONFIG_LTO_CLANG_THIN", "CONFIG_LTO_CLANG_FULL"}),
    prefixes=("CONFIG_LTO_", "CONFIG_HAS_LTO_"),
    primary=True,
)

PREEMPTION = ConfigFamily(
    name="preemption",
    keys=("CONFIG_PREEMPT_NONE", "CONFIG_PREEMPT_VOLUNTARY", "CONFIG_PREEMPT", "CONFIG_PREEMPT_RT"),
    selectors=frozenset({
        "CONFIG_PREEMPT_NONE", "CONFIG_PREEMPT_VOLUNTARY", "CONFIG_PREEMPT", "CONFIG_PREEMPT_RT",
    }),
)

TIMER_FREQUENCY = ConfigFamily(
    name="timer_frequency",
    keys=("CONFIG_HZ_100", "CONFIG_HZ_250", "CONFIG_HZ_300", "CONFIG_HZ_1000", "CONFIG_HZ"),
    selectors=frozenset({"CONFIG_HZ_100", "CONFIG_HZ_250", "CONFIG_HZ_300", "CONFIG_HZ_1000"}),
)

MGLRU = ConfigFamily(
    name="mglru",
    keys=("CONFIG_LRU_GEN", "CONFIG_LRU_GEN_ENABLED", "CONFIG_LRU_GEN_STATS"),
    selectors=frozenset({"CONFIG_LRU_GEN"}),
)

SCHED_EXT = ConfigFamily(
    name="sched_ext",
    keys=("CONFIG_SCHED_CLASS_EXT",),
    selectors=frozenset({"CONFIG_SCHED_CLASS_EXT"}),
)

CMDLINE = ConfigFamily(
    name="cmdline",
    keys=("CONFIG_CMDLINE_BOOL", "CONFIG_CMDLINE", "CONFIG_CMDLINE_OVERRIDE"),
    selectors=frozenset({"CONFIG_CMDLINE_BOOL"}),
    prefixes=("CONFIG_CMDLINE",),
)

MODULE_FOOTPRINT = ConfigFamily(
    name="module_footprint",
    keys=(
        "CONFIG_MODULE_COMPRESS_ZSTD",
        "CONFIG_STRIP_ASM_SYMS",
        "CONFIG_DEBUG_INFO_NONE",
        "CONFIG_DEBUG_INFO",
    ),
    selectors=frozenset({"CONFIG_DEBUG_INFO_NONE"}),
)

FAMILIES: Tuple[ConfigFamily, ...] = (
    OPTIMIZATION,
    PREEMPTION,
    TIMER_FREQUENCY,
    MGLRU,
    SCHED_EXT,
    CMDLINE,
    MODULE_FOOTPRINT,
)

_PREEMPT_KEYS = {
    PreemptionModel.NONE: "CONFIG_PREEMPT_NONE",
    PreemptionModel.VOLUNTARY: "CONFIG_PREEMPT_VOLUNTARY",
    PreemptionModel.FULL: "CONFIG_PREEMPT",
    PreemptionModel.REALTIME: "CONFIG_PREEMPT_RT",
}

# Boot parameter matching each model; the RT model has no preempt= switch
_PREEMPT_PARAMS = {
    PreemptionModel.NONE: "preempt=none",
    PreemptionModel.VOLUNTARY: "preempt=voluntary",
    PreemptionModel.FULL: "preempt=full",
}


def _on(key: str) -> ConfigEntry:
    return ConfigEntry(key, ConfigValue.enabled())


def _off(key: str) -> ConfigEntry:
    return ConfigEntry(key, ConfigValue.disabled())


def optimization_entries(variant: OptimizationVariant) -> List[ConfigEntry]:
    if variant == OptimizationVariant.NONE:
        return [_on("CONFIG_LTO_NONE")]
    member = "CONFIG_LTO_CLANG_FULL" if variant == OptimizationVariant.FULL else "CONFIG_LTO_CLANG_THIN"
    return [_on("CONFIG_LTO_CLANG"), _on(member), _on("CONFIG_HAS_LTO_CLANG")]


def preemption_entries(model: PreemptionModel) -> List[ConfigEntry]:
    return [_on(_PREEMPT_KEYS[model])]


def timer_entries(hz: int) -> List[ConfigEntry]:
    return [_on(f"CONFIG_HZ_{hz}"), ConfigEntry("CONFIG_HZ", ConfigValue.raw(str(hz)))]


def mglru_entries(enabled: bool) -> List[ConfigEntry]:
    if not enabled:
        return [_off("CONFIG_LRU_GEN")]
    return [_on("CONFIG_LRU_GEN"), _on("CONFIG_LRU_GEN_ENABLED"), _on("CONFIG_LRU_GEN_STATS")]


def sched_ext_entries(enabled: bool) -> List[ConfigEntry]:
    return [_on("CONFIG_SCHED_CLASS_EXT") if enabled else _off("CONFIG_SCHED_CLASS_EXT")]


def cmdline_parameters(values: Dict[Setting, object]) -> Tuple[str, ...]:
    params = ["nowatchdog"]
    preempt = _PREEMPT_PARAMS.get(values[Setting.PREEMPTION])
    if preempt:
        params.append(preempt)
    if values[Setting.MGLRU]:
        params.append("lru_gen.enabled=7")
    if values[Setting.HARDENING] == HardeningLevel.MINIMAL:
        params.append("mitigations=off")
    return tuple(params)


CMDLINE_INPUTS = (Setting.PREEMPTION, Setting.MGLRU, Setting.HARDENING)


def strongest_provenance(provenance: Dict[Setting, Provenance], settings: Tuple[Setting, ...]) -> Provenance:
    """The highest-precedence source among the settings a derived family reads."""
    order = list(Provenance)
    return min((provenance[s] for s in settings), key=order.index)


def cmdline_entries(values: Dict[Setting, object]) -> List[ConfigEntry]:
    return [
        _on("CONFIG_CMDLINE_BOOL"),
        ConfigEntry("CONFIG_CMDLINE", ConfigValue.string(" ".join(cmdline_parameters(values)))),
        _off("CONFIG_CMDLINE_OVERRIDE"),
    ]


def module_footprint_entries() -> List[ConfigEntry]:
    return [
        _on("CONFIG_MODULE_COMPRESS_ZSTD"),
        _on("CONFIG_STRIP_ASM_SYMS"),
        _on("CONFIG_DEBUG_INFO_NONE"),
        _off("CONFIG_DEBUG_INFO"),
    ]


def build_selections(
    values: Dict[Setting, object],
    provenance: Dict[Setting, Provenance],
) -> Tuple[FamilySelection, ...]:
    """One FamilySelection per family in FAMILIES order."""
    selections = [
        FamilySelection(
            OPTIMIZATION,
            tuple(optimization_entries(values[Setting.OPTIMIZATION])),
            provenance[Setting.OPTIMIZATION],
        ),
        FamilySelection(
            PREEMPTION,
            tuple(preemption_entries(values[Setting.PREEMPTION])),
            provenance[Setting.PREEMPTION],
        ),
        FamilySelection(
            TIMER_FREQUENCY,
            tuple(timer_entries(values[Setting.TIMER_HZ])),
            provenance[Setting.TIMER_HZ],
        ),
        FamilySelection(
            MGLRU,
            tuple(mglru_entries(values[Setting.MGLRU])),
            provenance[Setting.MGLRU],
        ),
        FamilySelection(
            SCHED_EXT,
            tuple(sched_ext_entries(values[Setting.SCHED_EXT])),
            provenance[Setting.SCHED_EXT],
        ),
        FamilySelection(
            CMDLINE,
            tuple(cmdline_entries(values)),
            strongest_provenance(provenance, CMDLINE_INPUTS),
        ),
    ]

    if values[Setting.MODULE_STRIPPING]:
        selections.append(FamilySelection(
            MODULE_FOOTPRINT,
            tuple(module_footprint_entries()),
            provenance[Setting.MODULE_STRIPPING],
        ))
    else:
        selections.append(FamilySelection(
            MODULE_FOOTPRINT, (), provenance[Setting.MODULE_STRIPPING], managed=False,
        ))

    return tuple(selections)
