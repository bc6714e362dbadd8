"""
Checkpoint catalog: where in the build script enforcement runs.

Every step that can clobber .config gets a guard right after it, and the
compile step gets a final guard right before it.
"""

from __future__ import annotations
from typing import Tuple

from ..contracts.enforcement import (
    Cardinality, EnforcementCheckpoint, PayloadStep, Placement,
)


# cp <src> .config   (bulk overwrite from the packaged config)
OVERWRITE_ANCHOR = r'(^|[;&|]\s*)\s*cp\s+(-\S+\s+)*\S+\s+(\./)?\.config(\s*$|\s*[;&|])'

# make ... localmodconfig / localyesconfig
AUTODETECT_ANCHOR = r'\blocal(mod|yes)config\b'

# make ... olddefconfig / oldconfig / syncconfig
REGENERATION_ANCHOR = r'\bmake\b.*\b(olddefconfig|oldconfig|syncconfig)\b'

# First make invocation that compiles: not a config, release or docs target
COMPILE_ANCHOR = (
    r'^\s*(command\s+|time\s+)?make\b'
    r'(?!.*(\b(olddefconfig|oldconfig|syncconfig|localmodconfig|localyesconfig'
    r'|defconfig|menuconfig|nconfig|xconfig|kernelrelease|htmldocs)\b|-C\s+tools))'
)


OVERWRITE_RESTORER = EnforcementCheckpoint(
    checkpoint_id="overwrite-restorer",
    stage="prepare",
    anchor=OVERWRITE_ANCHOR,
    placement=Placement.AFTER,
    cardinality=Cardinality.ZERO_OR_MORE,
    steps=(PayloadStep.FAMILIES, PayloadStep.AUTODETECT, PayloadStep.HARD_LOCK),
    description="Re-assert families and the module set after .config is overwritten",
)

AUTODETECT_GUARD = EnforcementCheckpoint(
    checkpoint_id="autodetect-guard",
    stage="prepare",
    anchor=AUTODETECT_ANCHOR,
    placement=Placement.AFTER,
    cardinality=Cardinality.ZERO_OR_MORE,
    steps=(PayloadStep.HARD_LOCK, PayloadStep.FAMILIES),
    description="Undo module auto-detection drift",
)

REGENERATION_GUARD = EnforcementCheckpoint(
    checkpoint_id="regeneration-guard",
    stage="prepare",
    anchor=REGENERATION_ANCHOR,
    placement=Placement.AFTER,
    cardinality=Cardinality.ZERO_OR_MORE,
    steps=(PayloadStep.FAMILIES, PayloadStep.HARD_LOCK),
    description="Re-assert after dependency regeneration",
)

PREBUILD_FINAL = EnforcementCheckpoint(
    checkpoint_id="prebuild-final",
    stage="build",
    anchor=COMPILE_ANCHOR,
    placement=Placement.BEFORE,
    cardinality=Cardinality.MANDATORY_AT_LEAST_ONE,
    steps=(
        PayloadStep.FAMILIES,
        PayloadStep.RENORMALIZE,
        PayloadStep.HARD_LOCK,
        PayloadStep.FAMILIES,
        PayloadStep.TOOLCHAIN,
    ),
    description="Final gate before compilation",
)

CHECKPOINTS: Tuple[EnforcementCheckpoint, ...] = (
    OVERWRITE_RESTORER,
    AUTODETECT_GUARD,
    REGENERATION_GUARD,
    PREBUILD_FINAL,
)


def get_checkpoint(checkpoint_id: str) -> EnforcementCheckpoint:
    for checkpoint in CHECKPOINTS:
        if checkpoint.checkpoint_id == checkpoint_id:
            return checkpoint
    raise KeyError(checkpoint_id)
