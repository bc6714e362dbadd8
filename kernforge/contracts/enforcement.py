"""
Enforcement Contracts

Checkpoint definitions and the result of instrumenting a build script.

A checkpoint is a point in the external build script where enforcement
logic must run: after a step that clobbers the configuration, or before
the compile step. It pairs an anchor rule (which lines) with a payload
recipe (what the injected shell does there) and a cardinality (how many
anchor matches are acceptable).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Tuple
from enum import Enum

from .base import ContentSignature


class Cardinality(Enum):
    EXACTLY_ONE = "exactly_one"
    ZERO_OR_MORE = "zero_or_more"
    MANDATORY_AT_LEAST_ONE = "mandatory_at_least_one"

    @property
    def mandatory(self) -> bool:
        return self != Cardinality.ZERO_OR_MORE


class Placement(Enum):
    AFTER = "after"
    BEFORE = "before"


class MandatoryMatchPolicy(Enum):
    """How a mandatory checkpoint handles more than one anchor match."""
    FIRST = "first"  # instrument the first match only
    ALL = "all"      # instrument every match


class PayloadStep(Enum):
    """Building blocks a checkpoint payload is assembled from."""
    FAMILIES = "families"          # purge + append every managed family
    AUTODETECT = "autodetect"      # module auto-detection against the frozen set
    RENORMALIZE = "renormalize"    # non-interactive dependency regeneration
    HARD_LOCK = "hard_lock"        # module hard lock
    TOOLCHAIN = "toolchain"        # kernel-only compiler flags, GPU LTO shield


@dataclass(frozen=True)
class EnforcementCheckpoint:
    """
    {id, anchor-matching rule, payload recipe, cardinality}

    anchor is a regular expression searched within one line of the stage
    function body.
    """
    checkpoint_id: str
    stage: str
    anchor: str
    placement: Placement
    cardinality: Cardinality
    steps: Tuple[PayloadStep, ...]
    description: str = ""


@dataclass(frozen=True)
class CheckpointInsertion:
    """One payload block placed in the script."""
    checkpoint_id: str
    stage: str
    anchor_text: str
    anchor_line: int  # 1-based line in the instrumented output
    replaced_existing: bool = False


@dataclass(frozen=True)
class InstrumentedScript:
    """
    Output of a single instrumentation pass.

    module_count is None when module filtering is off.
    """
    text: str
    insertions: Tuple[CheckpointInsertion, ...]
    spec_hash: str
    signature: ContentSignature
    module_count: Optional[int] = None
    skipped_checkpoints: Tuple[str, ...] = field(default_factory=tuple)

    def count(self, checkpoint_id: str) -> int:
        return sum(1 for i in self.insertions if i.checkpoint_id == checkpoint_id)

    @property
    def checkpoint_ids(self) -> Tuple[str, ...]:
        seen = []
        for insertion in self.insertions:
            if insertion.checkpoint_id not in seen:
                seen.append(insertion.checkpoint_id)
        return tuple(seen)
