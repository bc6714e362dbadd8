"""
Post-build Verification
=======================

Re-opens the configuration the build actually used, read-only, and checks
it against the frozen inputs.

SEVERITY:
=========
- Primary family mismatch (optimization): fatal, VerificationMismatch
- Any other family mismatch: warning
- Frozen module missing from the final config: warning
- Frozen module with no config symbol anywhere: warning
- No final config at all: fatal
- No package artifacts: fatal only when require_artifacts is set
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple
import glob
import os

from ..contracts.base import Error, ErrorCode, VerificationMismatch
from ..contracts.configuration import ConfigSpec, ConfigValue, FamilySelection, ValueKind
from ..contracts.modules import ModuleSet
from ..enforcement.kconfig import parse_config
from ..modules.kbuild import scan_kbuild_symbols


@dataclass
class ValidationConfig:
    """Configuration for post-build verification."""
    config_glob: str = os.path.join("src", "*", ".config")
    check_modules: bool = True
    require_artifacts: bool = False


@dataclass(frozen=True)
class FamilyCheck:
    family: str
    primary: bool
    expected: Tuple[str, ...]
    found: Tuple[str, ...]

    @property
    def matches(self) -> bool:
        return not self.found

    def describe(self) -> str:
        return (
            f"family {self.family}: expected {', '.join(self.expected)}; "
            f"found {', '.join(self.found)}"
        )


@dataclass(frozen=True)
class ValidationReport:
    config_path: str
    families: Tuple[FamilyCheck, ...]
    missing_modules: Tuple[str, ...] = field(default_factory=tuple)
    unresolved_modules: Tuple[str, ...] = field(default_factory=tuple)
    artifacts: Tuple[str, ...] = field(default_factory=tuple)
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return all(c.matches for c in self.families) and not self.missing_modules


def find_final_config(workspace: str, pattern: str) -> Optional[str]:
    """Newest matching config; several kernel trees may sit under src/."""
    candidates = glob.glob(os.path.join(workspace, pattern))
    if not candidates:
        return None
    return max(candidates, key=os.path.getmtime)


def _effective(values: Dict[str, ConfigValue], key: str) -> ConfigValue:
    return values.get(key, ConfigValue.disabled())


def check_family(values: Dict[str, ConfigValue], selection: FamilySelection) -> FamilyCheck:
    """
    Compare one family against its selection.

    Every selected entry must hold its value, and no other selector of the
    family may be active. Non-selector keys outside the selection are
    left alone: Kconfig derives some of them from the selector.
    """
    family = selection.family
    found: List[str] = []
    for entry in selection.entries:
        actual = _effective(values, entry.key)
        if actual != entry.value:
            found.append(actual.render(entry.key))
    selected = {e.key for e in selection.entries}
    for key in sorted(family.selectors - selected):
        actual = _effective(values, key)
        if actual.kind != ValueKind.DISABLED:
            found.append(actual.render(key))
    return FamilyCheck(
        family=family.name,
        primary=family.primary,
        expected=selection.render_lines(),
        found=tuple(found),
    )


def check_modules(
    values: Dict[str, ConfigValue],
    module_set: ModuleSet,
    tree_symbols: Optional[Mapping[str, str]] = None,
) -> Tuple[str, ...]:
    """
    Frozen modules the final config no longer builds, as module or builtin.

    Members with no symbol, known or found in the tree, cannot be checked
    and are not counted here.
    """
    if module_set.is_no_filtering:
        return ()
    tree_symbols = tree_symbols or {}
    missing = []
    for entry in module_set.kept_entries:
        symbol = entry.symbol or tree_symbols.get(entry.identifier)
        if symbol is None:
            continue
        actual = _effective(values, symbol)
        if actual.kind not in (ValueKind.MODULE, ValueKind.ENABLED):
            missing.append(entry.identifier)
    return tuple(sorted(set(missing)))


class BuildValidator:
    """Read-only verification of a finished build."""

    def __init__(self, config: Optional[ValidationConfig] = None):
        self._config = config or ValidationConfig()

    def verify(
        self,
        workspace: str,
        spec: ConfigSpec,
        module_set: ModuleSet,
        config_path: Optional[str] = None,
    ) -> ValidationReport:
        path = config_path or find_final_config(workspace, self._config.config_glob)
        if path is None or not os.path.isfile(path):
            raise VerificationMismatch(Error.create(
                ErrorCode.CONFIG_FILE_MISSING,
                f"No final config matching {self._config.config_glob} in {workspace}",
                workspace=workspace,
            ))

        with open(path, "r", encoding="utf-8", errors="replace") as f:
            values = parse_config(f.read())

        checks = tuple(check_family(values, s) for s in spec.managed_families())
        for check in checks:
            if check.primary and not check.matches:
                raise VerificationMismatch(Error.create(
                    ErrorCode.PRIMARY_FAMILY_MISMATCH,
                    f"Final config violates primary {check.describe()}",
                    family=check.family,
                    config=path,
                ))

        warnings = [c.describe() for c in checks if not c.matches]

        missing: Tuple[str, ...] = ()
        unresolved: Tuple[str, ...] = ()
        if self._config.check_modules and not module_set.is_no_filtering:
            tree_symbols = scan_kbuild_symbols(os.path.dirname(path), module_set.unresolved)
            missing = check_modules(values, module_set, tree_symbols)
            if missing:
                warnings.append(f"frozen modules not built: {', '.join(missing)}")
            unresolved = tuple(i for i in module_set.unresolved if i not in tree_symbols)
            if unresolved:
                warnings.append(f"frozen modules with no config symbol: {', '.join(unresolved)}")

        artifacts = tuple(sorted(glob.glob(os.path.join(workspace, "*.pkg.tar.*"))))
        if self._config.require_artifacts and not artifacts:
            raise VerificationMismatch(Error.create(
                ErrorCode.ARTIFACTS_MISSING,
                f"Build produced no package archives in {workspace}",
                workspace=workspace,
            ))

        return ValidationReport(
            config_path=path,
            families=checks,
            missing_modules=missing,
            unresolved_modules=unresolved,
            artifacts=artifacts,
            warnings=tuple(warnings),
        )
