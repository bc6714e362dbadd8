"""
Hierarchical config resolver.

resolve() is pure: no I/O, no clock, no randomness. The same inputs
always produce an equal ConfigSpec.

PRECEDENCE (per setting):
=========================
1. hardware fact
2. user override
3. profile preset
4. library default

An override that disagrees with a hardware fact is ignored and recorded
as a ResolutionConflict.
"""

from __future__ import annotations
from typing import Dict, List, Tuple

from ..contracts.base import ConfigError, Error, ErrorCode
from ..contracts.configuration import (
    ConfigSpec, GpuVendor, HardwareFacts, OptimizationVariant,
    ProfilePreset, Provenance, ResolutionConflict, ResolvedSetting, Setting,
    UserOverrides,
)
from .families import build_selections
from .profiles import LIBRARY_DEFAULTS, coerce_setting_value


CLANG_MAKE_FLAGS = ("LLVM=1", "LLVM_IAS=1")
NATIVE_CFLAGS = ("-march=native",)
POLLY_CFLAGS = (
    "-mllvm", "-polly",
    "-mllvm", "-polly-vectorizer=stripmine",
    "-mllvm", "-polly-opt-fusion=max",
)


def check_hardware_sanity(facts: HardwareFacts):
    """Zero (or negative) cores or RAM means the detector is broken."""
    for name, value in (("cpu_cores", facts.cpu_cores), ("ram_gb", facts.ram_gb)):
        if value is not None and value <= 0:
            raise ConfigError(Error.create(
                ErrorCode.HARDWARE_SANITY_FAILED,
                f"Hardware fact {name}={value} is not plausible",
                fact=name,
            ))


def lto_shield_modules(variant: OptimizationVariant, vendor: GpuVendor) -> Tuple[str, ...]:
    """GPU modules that must stay out of link-time optimization."""
    if variant == OptimizationVariant.NONE:
        return ()
    if vendor == GpuVendor.NVIDIA:
        return ("nvidia",)
    if vendor == GpuVendor.AMD:
        return ("amdgpu", "amdkfd")
    if vendor == GpuVendor.INTEL and variant == OptimizationVariant.FULL:
        return ("i915",)
    return ()


def make_flags(values: Dict[Setting, object]) -> Tuple[str, ...]:
    if values[Setting.OPTIMIZATION] != OptimizationVariant.NONE or values[Setting.POLLY]:
        return CLANG_MAKE_FLAGS
    return ()


def kernel_cflags(values: Dict[Setting, object]) -> Tuple[str, ...]:
    """KCFLAGS for the kernel proper; host tools never see these."""
    flags: Tuple[str, ...] = ()
    if values[Setting.NATIVE_OPTIMIZATIONS]:
        flags += NATIVE_CFLAGS
    if values[Setting.POLLY]:
        flags += POLLY_CFLAGS
    return flags


def resolve(
    hardware_facts: HardwareFacts,
    user_overrides: UserOverrides,
    profile_preset: ProfilePreset,
) -> ConfigSpec:
    """Merge the three sources into one dense ConfigSpec."""
    check_hardware_sanity(hardware_facts)

    hardware = {
        s: coerce_setting_value(s, v) for s, v in hardware_facts.settings().items()
    }
    overrides = {
        s: coerce_setting_value(s, v) for s, v in user_overrides.as_dict().items()
    }
    preset = {
        s: coerce_setting_value(s, v) for s, v in profile_preset.as_dict().items()
    }

    values: Dict[Setting, object] = {}
    provenance: Dict[Setting, Provenance] = {}
    conflicts: List[ResolutionConflict] = []

    for setting in Setting:
        if setting in hardware:
            values[setting] = hardware[setting]
            provenance[setting] = Provenance.FROM_HARDWARE
            if setting in overrides and overrides[setting] != hardware[setting]:
                conflicts.append(ResolutionConflict(
                    setting=setting,
                    kept_value=hardware[setting],
                    ignored_value=overrides[setting],
                ))
        elif setting in overrides:
            values[setting] = overrides[setting]
            provenance[setting] = Provenance.FROM_OVERRIDE
        elif setting in preset:
            values[setting] = preset[setting]
            provenance[setting] = Provenance.FROM_PRESET
        else:
            values[setting] = LIBRARY_DEFAULTS[setting]
            provenance[setting] = Provenance.LIBRARY_DEFAULT

    return ConfigSpec(
        profile=profile_preset.profile,
        settings=tuple(
            ResolvedSetting(setting=s, value=values[s], provenance=provenance[s])
            for s in Setting
        ),
        families=build_selections(values, provenance),
        conflicts=tuple(conflicts),
        mglru_tuning=profile_preset.mglru_tuning,
        lto_shield_modules=lto_shield_modules(
            values[Setting.OPTIMIZATION], values[Setting.GPU_VENDOR]
        ),
        make_flags=make_flags(values),
        kernel_cflags=kernel_cflags(values),
    )
