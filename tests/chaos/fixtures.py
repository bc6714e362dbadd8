"""
Chaos Test Fixtures

Adversaries that stand in for the external config tools: each one takes
config text and returns clobbered text, the way olddefconfig,
localmodconfig or a stray `cp` would between two checkpoints.
"""

from kernforge.enforcement.kconfig import join_lines, split_lines


# Lines the adversaries draw from: family members in every form,
# modules in and out of the frozen set, and unrelated noise
LINE_POOL = (
    "CONFIG_LTO_NONE=y",
    "# CONFIG_LTO_NONE is not set",
    "CONFIG_LTO_CLANG_THIN=y",
    "CONFIG_LTO_CLANG_FULL=y",
    "# CONFIG_HAS_LTO_CLANG is not set",
    "CONFIG_PREEMPT_VOLUNTARY=y",
    "CONFIG_PREEMPT=y",
    "CONFIG_HZ_250=y",
    "CONFIG_HZ=250",
    "# CONFIG_LRU_GEN is not set",
    "CONFIG_SCHED_CLASS_EXT=m",
    'CONFIG_CMDLINE="quiet"',
    "CONFIG_BLK_DEV_NVME=m",
    "# CONFIG_BLK_DEV_NVME is not set",
    "CONFIG_INPUT_EVDEV=m",
    "CONFIG_EXT4_FS=y",
    "CONFIG_DRM_NOUVEAU=m",
    "CONFIG_SND_HDA_INTEL=m",
    "CONFIG_SYSFS=y",
    "# CONFIG_DEBUG_INFO_NONE is not set",
    "",
    "#",
    "# Automatically generated file; DO NOT EDIT.",
)


def regenerate(text, extra_lines):
    """olddefconfig: keeps most lines, flips some family members back."""
    return join_lines(split_lines(text) + list(extra_lines))


def autodetect(text, dropped):
    """localmodconfig: disables loadable modules the host is not using."""
    out = []
    for line in split_lines(text):
        key = line.split("=", 1)[0]
        if line.endswith("=m") and key in dropped:
            out.append(f"# {key} is not set")
        else:
            out.append(line)
    return join_lines(out)


def overwrite(_, replacement_lines):
    """cp ../config .config: the whole file replaced."""
    return join_lines(replacement_lines)


def flood(rng, count, pool=LINE_POOL):
    """
    count lines of unknown loadable modules (CONFIG_X_<n>=m), with pool
    lines and repeats of earlier lines mixed in.
    """
    out = []
    for n in range(count):
        roll = rng.random()
        if roll < 0.1:
            out.append(rng.choice(pool))
        elif roll < 0.15 and out:
            out.append(rng.choice(out))
        elif roll < 0.2:
            out.append(f"# CONFIG_X_{n} is not set")
        else:
            out.append(f"CONFIG_X_{n}=m")
    return out
