"""
Profile presets, the library default table and setting value checks.

Presets are partial: a setting a preset does not name falls through to
LIBRARY_DEFAULTS during resolution.
"""

from __future__ import annotations
from typing import Dict, Union

from ..contracts.base import ConfigError, Error, ErrorCode
from ..contracts.configuration import (
    GpuVendor, HardeningLevel, MglruTuning, OptimizationVariant, PreemptionModel,
    Profile, ProfilePreset, Setting,
)


TIMER_FREQUENCIES = (100, 250, 300, 1000)

LIBRARY_DEFAULTS: Dict[Setting, object] = {
    Setting.OPTIMIZATION: OptimizationVariant.THIN,
    Setting.PREEMPTION: PreemptionModel.VOLUNTARY,
    Setting.TIMER_HZ: 300,
    Setting.MGLRU: False,
    Setting.SCHED_EXT: True,
    Setting.HARDENING: HardeningLevel.STANDARD,
    Setting.MODULE_STRIPPING: False,
    Setting.WHITELIST: True,
    Setting.POLLY: False,
    Setting.NATIVE_OPTIMIZATIONS: True,
    Setting.GPU_VENDOR: GpuVendor.UNKNOWN,
}

_ENUM_SETTINGS = {
    Setting.OPTIMIZATION: OptimizationVariant,
    Setting.PREEMPTION: PreemptionModel,
    Setting.HARDENING: HardeningLevel,
    Setting.GPU_VENDOR: GpuVendor,
}

_BOOL_WORDS = {
    "true": True, "yes": True, "on": True, "1": True, "y": True,
    "false": False, "no": False, "off": False, "0": False, "n": False,
}


def _preset(
    profile: Profile,
    description: str,
    optimization: OptimizationVariant,
    stripping: bool,
    hardening: HardeningLevel,
    preemption: PreemptionModel,
    hz: int,
    polly: bool,
    mglru: bool,
    tuning: MglruTuning,
) -> ProfilePreset:
    return ProfilePreset(
        profile=profile,
        description=description,
        defaults=(
            (Setting.OPTIMIZATION, optimization),
            (Setting.MODULE_STRIPPING, stripping),
            (Setting.WHITELIST, stripping),
            (Setting.HARDENING, hardening),
            (Setting.PREEMPTION, preemption),
            (Setting.TIMER_HZ, hz),
            (Setting.POLLY, polly),
            (Setting.MGLRU, mglru),
        ),
        mglru_tuning=tuning,
    )


PROFILE_PRESETS: Dict[Profile, ProfilePreset] = {
    Profile.GENERIC: _preset(
        Profile.GENERIC, "Balanced defaults for general desktop use",
        OptimizationVariant.THIN, False, HardeningLevel.STANDARD,
        PreemptionModel.VOLUNTARY, 300, False, False, MglruTuning(0x0007, 1000),
    ),
    Profile.GAMING: _preset(
        Profile.GAMING, "Low latency, full preemption, 1000 Hz tick",
        OptimizationVariant.THIN, True, HardeningLevel.STANDARD,
        PreemptionModel.FULL, 1000, True, True, MglruTuning(0x0007, 1000),
    ),
    Profile.WORKSTATION: _preset(
        Profile.WORKSTATION, "Responsive desktop with hardened defaults",
        OptimizationVariant.THIN, True, HardeningLevel.HARDENED,
        PreemptionModel.FULL, 1000, False, True, MglruTuning(0x0007, 1000),
    ),
    Profile.SERVER: _preset(
        Profile.SERVER, "Throughput first, full LTO, no forced preemption",
        OptimizationVariant.FULL, True, HardeningLevel.HARDENED,
        PreemptionModel.NONE, 100, False, True, MglruTuning(0x0000, 1000),
    ),
    Profile.LAPTOP: _preset(
        Profile.LAPTOP, "Power-aware defaults with shorter MGLRU ttl",
        OptimizationVariant.THIN, True, HardeningLevel.STANDARD,
        PreemptionModel.VOLUNTARY, 300, False, True, MglruTuning(0x0007, 500),
    ),
}


def get_preset(profile: Union[Profile, str]) -> ProfilePreset:
    """Look up a preset by enum or by name."""
    if isinstance(profile, str):
        try:
            profile = Profile(profile.strip().lower())
        except ValueError:
            raise ConfigError(Error.create(
                ErrorCode.UNKNOWN_PROFILE,
                f"Unknown profile {profile!r}",
                known=",".join(p.value for p in Profile),
            ))
    return PROFILE_PRESETS[profile]


def coerce_setting_value(setting: Setting, value: object) -> object:
    """
    Check a value against the setting's type and normalize it.

    Accepts enum members or their string values, booleans or boolean
    words, integers or integer strings. Anything else raises ConfigError.
    """
    try:
        if setting in _ENUM_SETTINGS:
            enum_type = _ENUM_SETTINGS[setting]
            if isinstance(value, enum_type):
                return value
            if isinstance(value, str):
                return enum_type(value.strip().lower())
            raise ValueError(value)

        if setting == Setting.TIMER_HZ:
            if isinstance(value, bool):
                raise ValueError(value)
            hz = int(value)
            if hz not in TIMER_FREQUENCIES:
                raise ValueError(value)
            return hz

        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _BOOL_WORDS:
            return _BOOL_WORDS[value.strip().lower()]
        raise ValueError(value)
    except (TypeError, ValueError):
        raise ConfigError(Error.create(
            ErrorCode.INVALID_SETTING_VALUE,
            f"Invalid value {value!r} for setting {setting.value}",
            setting=setting.value,
        ))
