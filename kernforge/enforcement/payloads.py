"""
Shell payload generation.

Each payload is a self-contained POSIX shell fragment: every value it
needs (family lines, purge patterns, the frozen module list) is baked in
as literal text when the script is instrumented. Nothing is read from
the environment except the .config in the current directory and, for
modules outside the symbol catalog, the Kbuild files of that tree. The
toolchain step is the one payload that writes outside .config: it appends
a single LTO opt-out line to the Makefiles of shielded GPU drivers.

Edits use awk into a temp file followed by mv, never `sed -i` or a bare
`grep -v`, so a no-match never trips errexit.
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Tuple
import shlex

from ..contracts.configuration import ConfigSpec, Setting
from ..contracts.enforcement import EnforcementCheckpoint, PayloadStep
from ..contracts.modules import ModuleSet
from .anchors import SENTINEL_BEGIN, SENTINEL_END


CONFIG_FILE = ".config"
TMP_FILE = ".config.kernforge.tmp"
FROZEN_FILE = ".kernforge.frozen"
LSMOD_FILE = ".kernforge.lsmod"
WANT_FILE = ".kernforge.want"
KBUILD_LIST_FILE = ".kernforge.kbuild"
MGLRU_TUNING_FILE = "kernforge-mglru.sh"
LRU_GEN_SYSFS = "/sys/kernel/mm/lru_gen"

# In-tree directories per shielded module; nvidia is built out of tree
LTO_SHIELD_DIRS: Dict[str, Tuple[str, ...]] = {
    "amdgpu": ("drivers/gpu/drm/amd/amdgpu", "drivers/gpu/drm/amd/display"),
    "amdkfd": ("drivers/gpu/drm/amd/amdkfd",),
    "i915": ("drivers/gpu/drm/i915",),
    "nvidia": (),
}
LTO_SHIELD_LINE = "ccflags-remove-y += $(CC_FLAGS_LTO)"

HARD_LOCK_AWK = r"""BEGIN {
  while ((getline line < frozen) > 0) {
    n++; order[n] = line
    key = line; sub(/=.*/, "", key); member[key] = 1
  }
  close(frozen)
}
/^[^#= ][^= ]*=m$/ { next }
/^# [^ ]+ is not set$/ { if ($2 in member) next }
/^[^#= ][^= ]*=y$/ { key = $0; sub(/=y$/, "", key); builtin[key] = 1 }
{ print }
END {
  for (i = 1; i <= n; i++) {
    key = order[i]; sub(/=.*/, "", key)
    if (!(key in builtin) && !(key in printed)) { printed[key] = 1; print order[i] }
  }
}"""

# Same scan as modules/kbuild.py: first symbol per identifier, files in
# byte order of their path
KBUILD_SCAN_AWK = r"""BEGIN {
  while ((getline id < want) > 0) { wanted[id] = 1; left++ }
  close(want)
  while (left > 0 && (getline path < list) > 0) {
    while ((getline line < path) > 0) {
      while (line ~ /\\$/ && (getline more < path) > 0) {
        sub(/\\$/, " ", line); line = line more
      }
      sub(/\\$/, " ", line)
      if (line !~ /^[ \t]*obj-\$\(CONFIG_[A-Za-z0-9_]+\)[ \t]*[+:]?=/) continue
      symbol = line; sub(/^[ \t]*obj-\$\(/, "", symbol); sub(/\).*$/, "", symbol)
      rest = line; sub(/^[^=]*=/, "", rest); sub(/#.*$/, "", rest)
      count = split(rest, objects, /[ \t]+/)
      for (i = 1; i <= count; i++) {
        name = objects[i]
        if (name !~ /\.o$/) continue
        sub(/\.o$/, "", name); gsub(/-/, "_", name); name = tolower(name)
        if ((name in wanted) && !(name in found)) {
          found[name] = 1; left--
          print symbol "=m"
        }
      }
    }
    close(path)
  }
  for (id in wanted) if (!(id in found)) missing = missing " " id
  if (missing != "") print "[kernforge] no config symbol for:" missing | "cat 1>&2"
}"""


def _quote_all(values: Iterable[str]) -> str:
    return " ".join(shlex.quote(v) for v in values)


def _printf_lines(values: Tuple[str, ...], redirect: str) -> List[str]:
    """printf with no arguments still prints once; guard the empty case."""
    if not values:
        return [f": > {redirect}"]
    return [f"printf '%s\\n' {_quote_all(values)} > {redirect}"]


def families_fragment(spec: ConfigSpec) -> List[str]:
    managed = spec.managed_families()
    if not managed:
        return []
    pattern = "|".join(f"({s.family.purge_pattern()})" for s in managed)
    lines = [
        f"# families: {', '.join(s.family.name for s in managed)}",
        f"awk '!/{pattern}/' {CONFIG_FILE} > {TMP_FILE} && mv {TMP_FILE} {CONFIG_FILE}",
        f"[ -z \"$(tail -c 1 {CONFIG_FILE})\" ] || echo >> {CONFIG_FILE}",
    ]
    lines.append(f"printf '%s\\n' {_quote_all(spec.rendered_lines())} >> {CONFIG_FILE}")
    return lines


def hard_lock_fragment(module_set: ModuleSet) -> List[str]:
    if module_set.is_no_filtering:
        return []
    lines = [f"# module hard lock: {len(module_set)} modules"]
    lines.extend(_printf_lines(module_set.render_lines(), FROZEN_FILE))
    if module_set.unresolved:
        lines.append("# symbols for members outside the catalog, from this tree's Kbuild files")
        lines.extend(_printf_lines(module_set.unresolved, WANT_FILE))
        lines.append(
            f"find . \\( -name Makefile -o -name Kbuild \\) -type f 2> /dev/null"
            f" | LC_ALL=C sort > {KBUILD_LIST_FILE} || true"
        )
        lines.append(
            f"awk -v want={WANT_FILE} -v list={KBUILD_LIST_FILE} {shlex.quote(KBUILD_SCAN_AWK)}"
            f" < /dev/null | LC_ALL=C sort -u >> {FROZEN_FILE}"
        )
        lines.append(f"rm -f {WANT_FILE} {KBUILD_LIST_FILE}")
    lines.append(
        f"awk -v frozen={FROZEN_FILE} {shlex.quote(HARD_LOCK_AWK)} {CONFIG_FILE} > {TMP_FILE}"
        f" && mv {TMP_FILE} {CONFIG_FILE}"
    )
    lines.append(f"rm -f {FROZEN_FILE}")
    return lines


def autodetect_fragment(spec: ConfigSpec, module_set: ModuleSet) -> List[str]:
    """localmodconfig against the frozen set instead of the build host's lsmod."""
    if module_set.is_no_filtering:
        return []
    flags = " ".join(spec.make_flags)
    make = f"make {flags} " if flags else "make "
    lines = ["# module auto-detection against the frozen set"]
    lines.append(f"printf '%s\\n' 'Module                  Size  Used by' > {LSMOD_FILE}")
    identifiers = tuple(e.identifier for e in module_set.kept_entries)
    if identifiers:
        lines.append(f"printf '%s 0 0\\n' {_quote_all(identifiers)} >> {LSMOD_FILE}")
    lines.append(
        f"yes '' | {make}LSMOD=\"$PWD/{LSMOD_FILE}\" localmodconfig > /dev/null"
        " || echo '[kernforge] localmodconfig failed' >&2"
    )
    lines.append(f"rm -f {LSMOD_FILE}")
    return lines


def renormalize_fragment(spec: ConfigSpec) -> List[str]:
    """Dependency regeneration, accept-defaults and never prompting."""
    flags = " ".join(spec.make_flags)
    make = f"make {flags} olddefconfig" if flags else "make olddefconfig"
    return [
        "# non-interactive regeneration",
        "if command -v make > /dev/null 2>&1; then",
        f"  {make} > /dev/null",
        "fi",
    ]


def toolchain_fragment(spec: ConfigSpec) -> List[str]:
    """Kernel-only compiler flags and the per-directory LTO opt-out for GPU drivers."""
    lines: List[str] = []
    if spec.kernel_cflags:
        lines.append("# kernel-only compiler flags (host tools read HOSTCFLAGS)")
        lines.append(f"export KCFLAGS={shlex.quote(' '.join(spec.kernel_cflags))}")
    directories = [d for module in spec.lto_shield_modules for d in LTO_SHIELD_DIRS.get(module, ())]
    if directories:
        lines.append(f"# LTO shield: {', '.join(spec.lto_shield_modules)}")
        line = shlex.quote(LTO_SHIELD_LINE)
        for directory in directories:
            makefile = shlex.quote(f"{directory}/Makefile")
            lines.append(
                f"if [ -f {makefile} ] && ! grep -qxF {line} {makefile}; then"
                f" printf '%s\\n' {line} >> {makefile}; fi"
            )
    return lines


def mglru_tuning_script(spec: ConfigSpec) -> str:
    """Runtime MGLRU tuning for the built kernel, run as root after boot."""
    lines = [
        "#!/bin/sh",
        f"# MGLRU runtime tuning, {spec.profile.value} profile",
        f"[ -d {LRU_GEN_SYSFS} ] || {{ echo 'MGLRU is not available in this kernel' >&2; exit 0; }}",
    ]
    if spec.value(Setting.MGLRU):
        tuning = spec.mglru_tuning
        lines.append(f"echo 0x{tuning.enabled_mask:04x} > {LRU_GEN_SYSFS}/enabled")
        lines.append(f"echo {tuning.min_ttl_ms} > {LRU_GEN_SYSFS}/min_ttl_ms")
    else:
        lines.append(f"echo n > {LRU_GEN_SYSFS}/enabled")
    return "".join(f"{line}\n" for line in lines)


def render_steps(
    checkpoint: EnforcementCheckpoint,
    spec: ConfigSpec,
    module_set: ModuleSet,
) -> List[str]:
    body: List[str] = []
    for step in checkpoint.steps:
        if step == PayloadStep.FAMILIES:
            body.extend(families_fragment(spec))
        elif step == PayloadStep.HARD_LOCK:
            body.extend(hard_lock_fragment(module_set))
        elif step == PayloadStep.AUTODETECT:
            body.extend(autodetect_fragment(spec, module_set))
        elif step == PayloadStep.RENORMALIZE:
            body.extend(renormalize_fragment(spec))
        elif step == PayloadStep.TOOLCHAIN:
            body.extend(toolchain_fragment(spec))
    return body


def render_block(
    checkpoint: EnforcementCheckpoint,
    spec: ConfigSpec,
    module_set: ModuleSet,
    indent: str = "",
) -> List[str]:
    """
    The full sentinel-wrapped block for one checkpoint.

    Returns [] when no step has anything to do (e.g. module steps under
    NO_FILTERING with no managed families), so nothing is inserted.
    """
    body = render_steps(checkpoint, spec, module_set)
    if not body:
        return []
    block = [SENTINEL_BEGIN.format(id=checkpoint.checkpoint_id)]
    block.append(f"if [ -f {CONFIG_FILE} ]; then")
    block.extend(f"  {line}" for line in body)
    block.append(f"  echo '[kernforge] checkpoint {checkpoint.checkpoint_id} applied' >&2")
    block.append("else")
    block.append(f"  echo '[kernforge] checkpoint {checkpoint.checkpoint_id}: no {CONFIG_FILE}' >&2")
    block.append("fi")
    block.append(SENTINEL_END.format(id=checkpoint.checkpoint_id))
    return [f"{indent}{line}" for line in block]
