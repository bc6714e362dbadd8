"""
Workspace Preparation
=====================

Everything the Preparation phase does to a build directory before any
configuration is computed:

- keep a pristine copy of the build script and config under
  .kernforge/pristine/, replaced when the user swaps in a new file
- discard leftovers of an earlier build (src/, pkg/, package archives)
- check prerequisites (tools on PATH, hardware minimums)

The build script itself is never written here; each session reads the
pristine text into memory and hands it to the enforcement layer.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import glob
import json
import os
import re
import shutil

from ..contracts.base import AnchorError, ContentSignature, Error, ErrorCode, PreparationError
from ..contracts.configuration import HardwareFacts
from ..enforcement.anchors import UnterminatedBlock, strip_blocks
from ..enforcement.kconfig import join_lines, split_lines
from ..enforcement.payloads import MGLRU_TUNING_FILE
from ..observability.persistence import state_dir


SCRIPT_NAME = "PKGBUILD"
CONFIG_NAME = "config"
PRISTINE_DIR = os.path.join(".kernforge", "pristine")
ENFORCED_RECORD = "enforced.json"

LEFTOVER_DIRS = ("src", "pkg")
LEFTOVER_GLOBS = ("*.pkg.tar.*",)

PKGBASE_PATTERN = re.compile(r'''^\s*pkgbase=["']?([A-Za-z0-9@._+-]+)["']?\s*$''', re.MULTILINE)
DEFAULT_VARIANT = "linux"


@dataclass(frozen=True)
class PristineSources:
    """In-memory copies of the untouched inputs for one session."""
    script: str
    config: Optional[str]  # None: the workspace has no config file
    variant: str


@dataclass(frozen=True)
class StoredCopy:
    path: str
    refreshed: bool  # True: replaced an older copy


class Workspace:
    """Paths and read-only accessors for one build directory."""

    def __init__(self, root: str, script_name: str = SCRIPT_NAME, config_name: str = CONFIG_NAME):
        self._root = os.path.abspath(root)
        self._script_name = script_name
        self._config_name = config_name

    @property
    def root(self) -> str:
        return self._root

    @property
    def script_path(self) -> str:
        return os.path.join(self._root, self._script_name)

    @property
    def config_path(self) -> str:
        return os.path.join(self._root, self._config_name)

    @property
    def mglru_tuning_path(self) -> str:
        return os.path.join(self._root, MGLRU_TUNING_FILE)

    @property
    def pristine_dir(self) -> str:
        return os.path.join(self._root, PRISTINE_DIR)

    @property
    def pristine_script_path(self) -> str:
        return os.path.join(self.pristine_dir, self._script_name)

    @property
    def pristine_config_path(self) -> str:
        return os.path.join(self.pristine_dir, self._config_name)

    @property
    def state_dir(self) -> str:
        return state_dir(self._root)

    def has_script(self) -> bool:
        return os.path.isfile(self.script_path) or os.path.isfile(self.pristine_script_path)

    # =========================================================================
    # PRISTINE STORE
    # =========================================================================

    def store_pristine(self, fetched_script: Optional[str] = None) -> List[StoredCopy]:
        """
        Record pristine copies. Returns the copies written.

        A missing copy is taken from the workspace (or the fetched
        script). An existing copy is replaced when the workspace file was
        swapped out by hand: it differs from the copy, it is not what the
        last Patching phase wrote, and a script carries no checkpoint
        blocks. A script that already carries checkpoint blocks is stored
        with them stripped, so a workspace instrumented before the store
        existed still yields a clean baseline.
        """
        os.makedirs(self.pristine_dir, exist_ok=True)
        written = []
        enforced = self._read_enforced()

        if not os.path.isfile(self.pristine_script_path):
            if os.path.isfile(self.script_path):
                script = _read(self.script_path)
            elif fetched_script is not None:
                script = fetched_script
            else:
                raise PreparationError(Error.create(
                    ErrorCode.PREREQUISITE_MISSING,
                    f"No {self._script_name} in {self._root}",
                    workspace=self._root,
                ))
            _write(self.pristine_script_path, _strip_checkpoints(script))
            written.append(StoredCopy(self.pristine_script_path, refreshed=False))
        elif os.path.isfile(self.script_path):
            script = _read(self.script_path)
            if (
                script != _read(self.pristine_script_path)
                and _signature(script) != enforced.get(self._script_name)
                and _strip_checkpoints(script) == script
            ):
                _write(self.pristine_script_path, script)
                written.append(StoredCopy(self.pristine_script_path, refreshed=True))

        if os.path.isfile(self.config_path):
            if not os.path.isfile(self.pristine_config_path):
                shutil.copyfile(self.config_path, self.pristine_config_path)
                written.append(StoredCopy(self.pristine_config_path, refreshed=False))
            else:
                config = _read(self.config_path)
                if (
                    config != _read(self.pristine_config_path)
                    and _signature(config) != enforced.get(self._config_name)
                ):
                    shutil.copyfile(self.config_path, self.pristine_config_path)
                    written.append(StoredCopy(self.pristine_config_path, refreshed=True))

        return written

    def record_enforced(self):
        """Remember the signatures of the files Patching just wrote."""
        record = {}
        for name, path in ((self._script_name, self.script_path), (self._config_name, self.config_path)):
            if os.path.isfile(path):
                record[name] = _signature(_read(path))
        os.makedirs(self.pristine_dir, exist_ok=True)
        _write(os.path.join(self.pristine_dir, ENFORCED_RECORD), json.dumps(record, sort_keys=True) + "\n")

    def _read_enforced(self) -> Dict[str, str]:
        path = os.path.join(self.pristine_dir, ENFORCED_RECORD)
        if not os.path.isfile(path):
            return {}
        try:
            record = json.loads(_read(path))
        except ValueError as e:
            raise PreparationError(Error.create(
                ErrorCode.PREREQUISITE_MISSING,
                f"Unreadable enforcement record {path}: {e}",
                path=path,
            ))
        return record

    def load_pristine(self) -> PristineSources:
        script = _read(self.pristine_script_path)
        config = _read(self.pristine_config_path) if os.path.isfile(self.pristine_config_path) else None
        return PristineSources(script=script, config=config, variant=detect_variant(script))

    # =========================================================================
    # LEFTOVERS
    # =========================================================================

    def discard_leftovers(self) -> List[str]:
        """Remove build products of an earlier run. Returns what was removed."""
        removed = []
        for name in LEFTOVER_DIRS:
            path = os.path.join(self._root, name)
            if os.path.isdir(path):
                shutil.rmtree(path)
                removed.append(path)
        for pattern in LEFTOVER_GLOBS:
            for path in sorted(glob.glob(os.path.join(self._root, pattern))):
                os.remove(path)
                removed.append(path)
        return removed

    def discard_stale_state(self) -> List[str]:
        """Remove the previous session's log, audit trail and summary."""
        removed = []
        if not os.path.isdir(self.state_dir):
            return removed
        for name in sorted(os.listdir(self.state_dir)):
            path = os.path.join(self.state_dir, name)
            if os.path.isfile(path):
                os.remove(path)
                removed.append(path)
        return removed

    def artifacts(self) -> Tuple[str, ...]:
        found = []
        for pattern in LEFTOVER_GLOBS:
            found.extend(glob.glob(os.path.join(self._root, pattern)))
        return tuple(sorted(found))


def detect_variant(script: str) -> str:
    match = PKGBASE_PATTERN.search(script)
    return match.group(1) if match else DEFAULT_VARIANT


# =============================================================================
# PREREQUISITES
# =============================================================================

def missing_tools(tools: Sequence[str]) -> List[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def check_prerequisites(
    tools: Sequence[str],
    facts: HardwareFacts,
    min_ram_gb: int = 0,
    min_disk_gb: int = 0,
):
    """
    Raise PreparationError listing every unmet prerequisite.

    Facts that were not detected (None) are not held against the host.
    """
    problems = [f"tool not on PATH: {tool}" for tool in missing_tools(tools)]

    if facts.cpu_cores is not None and facts.cpu_cores <= 0:
        problems.append(f"implausible cpu core count: {facts.cpu_cores}")
    if facts.ram_gb is not None and facts.ram_gb < max(min_ram_gb, 1):
        problems.append(f"insufficient RAM: {facts.ram_gb} GB")
    if facts.disk_free_gb is not None and facts.disk_free_gb < min_disk_gb:
        problems.append(f"insufficient free disk: {facts.disk_free_gb} GB (need {min_disk_gb})")

    if problems:
        raise PreparationError(Error.create(
            ErrorCode.PREREQUISITE_MISSING,
            "; ".join(problems),
            count=len(problems),
        ))


def _read(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _write(path: str, content: str):
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def _signature(text: str) -> str:
    return ContentSignature.compute(text).payload_hash


def _strip_checkpoints(script: str) -> str:
    try:
        lines, _ = strip_blocks(split_lines(script))
    except UnterminatedBlock as e:
        raise AnchorError(Error.create(ErrorCode.ANCHOR_AMBIGUOUS, str(e)))
    stripped = join_lines(lines)
    if script and not script.endswith("\n"):
        stripped = stripped[:-1]
    return stripped
