"""
Checkpoint injection: one forward pass over the script text.

ALGORITHM:
==========
1. Strip every existing checkpoint block (so re-instrumenting starts from
   the pristine text and never duplicates a block)
2. For each checkpoint, locate its stage function and the matching
   anchor lines in the stripped text
3. Check cardinality; a mandatory checkpoint without a match raises
   AnchorError before anything is written
4. Emit the stripped lines with rendered blocks spliced in

The same pristine text, ConfigSpec and ModuleSet always produce the same
output bytes, and instrumenting the output again reproduces it exactly.
"""

from __future__ import annotations
from typing import Dict, List, Sequence, Tuple

from ..contracts.base import AnchorError, ContentSignature, Error, ErrorCode
from ..contracts.configuration import ConfigSpec
from ..contracts.enforcement import (
    Cardinality, CheckpointInsertion, EnforcementCheckpoint, InstrumentedScript,
    MandatoryMatchPolicy, Placement,
)
from ..contracts.modules import ModuleSet
from .anchors import UnterminatedBlock, find_function, indentation, match_anchor, strip_blocks
from .checkpoints import CHECKPOINTS
from .kconfig import join_lines, split_lines
from .payloads import render_block


def _anchor_error(code: ErrorCode, message: str, checkpoint: EnforcementCheckpoint) -> AnchorError:
    return AnchorError(Error.create(
        code,
        message,
        checkpoint=checkpoint.checkpoint_id,
        stage=checkpoint.stage,
    ))


def select_matches(
    checkpoint: EnforcementCheckpoint,
    matches: List[int],
    policy: MandatoryMatchPolicy,
) -> List[int]:
    """Apply the checkpoint's cardinality to its anchor matches."""
    if checkpoint.cardinality == Cardinality.ZERO_OR_MORE:
        return matches
    if not matches:
        raise _anchor_error(
            ErrorCode.ANCHOR_NOT_FOUND,
            f"Mandatory checkpoint {checkpoint.checkpoint_id} found no anchor in {checkpoint.stage}()",
            checkpoint,
        )
    if checkpoint.cardinality == Cardinality.EXACTLY_ONE and len(matches) > 1:
        raise _anchor_error(
            ErrorCode.ANCHOR_AMBIGUOUS,
            f"Checkpoint {checkpoint.checkpoint_id} expects one anchor, found {len(matches)}",
            checkpoint,
        )
    if policy == MandatoryMatchPolicy.FIRST:
        return matches[:1]
    return matches


def instrument(
    pristine_script: str,
    config_spec: ConfigSpec,
    module_set: ModuleSet,
    checkpoints: Sequence[EnforcementCheckpoint] = CHECKPOINTS,
    policy: MandatoryMatchPolicy = MandatoryMatchPolicy.FIRST,
) -> InstrumentedScript:
    """Return the instrumented script text. Pure: performs no I/O."""
    try:
        lines, existing = strip_blocks(split_lines(pristine_script))
    except UnterminatedBlock as e:
        raise AnchorError(Error.create(ErrorCode.ANCHOR_AMBIGUOUS, str(e)))
    existing_ids = {block.checkpoint_id for block in existing}
    text = join_lines(lines)

    # position -> [(catalog order, anchor index, checkpoint, block lines)]
    pending: Dict[int, List[Tuple[int, int, EnforcementCheckpoint, List[str]]]] = {}
    skipped: List[str] = []

    for order, checkpoint in enumerate(checkpoints):
        span = find_function(text, checkpoint.stage)
        if span is None:
            if checkpoint.cardinality.mandatory:
                raise _anchor_error(
                    ErrorCode.FUNCTION_NOT_FOUND,
                    f"Build script has no {checkpoint.stage}() function",
                    checkpoint,
                )
            skipped.append(checkpoint.checkpoint_id)
            continue

        matches = select_matches(
            checkpoint, match_anchor(lines, span, checkpoint.anchor), policy
        )
        if not matches:
            skipped.append(checkpoint.checkpoint_id)
            continue

        for anchor in matches:
            block = render_block(checkpoint, config_spec, module_set, indentation(lines[anchor]))
            if not block:
                continue
            position = anchor + 1 if checkpoint.placement == Placement.AFTER else anchor
            pending.setdefault(position, []).append((order, anchor, checkpoint, block))

    output: List[str] = []
    anchor_rows: Dict[int, int] = {}
    placed: List[Tuple[int, EnforcementCheckpoint]] = []

    for position in range(len(lines) + 1):
        for _, anchor, checkpoint, block in sorted(pending.get(position, []), key=lambda p: p[0]):
            output.extend(block)
            placed.append((anchor, checkpoint))
        if position < len(lines):
            anchor_rows[position] = len(output) + 1
            output.append(lines[position])

    insertions = tuple(
        CheckpointInsertion(
            checkpoint_id=checkpoint.checkpoint_id,
            stage=checkpoint.stage,
            anchor_text=lines[anchor].strip(),
            anchor_line=anchor_rows[anchor],
            replaced_existing=checkpoint.checkpoint_id in existing_ids,
        )
        for anchor, checkpoint in placed
    )

    result_text = join_lines(output)
    if pristine_script and not pristine_script.endswith("\n"):
        # Keep a missing final newline missing
        result_text = result_text[:-1]

    return InstrumentedScript(
        text=result_text,
        insertions=insertions,
        spec_hash=config_spec.spec_hash,
        signature=ContentSignature.compute(result_text),
        module_count=None if module_set.is_no_filtering else len(module_set),
        skipped_checkpoints=tuple(skipped),
    )
