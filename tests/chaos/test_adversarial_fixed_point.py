"""
Chaos Tests: Adversarial Config Tools

Whatever the external tools do to .config between checkpoints, the last
checkpoint before compilation leaves the same enforced state, and that
state is a fixed point of the checkpoint itself.
"""

import os
import random
import shutil
import subprocess

import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.strategies import composite

from kernforge.contracts.modules import NO_FILTERING, ModuleSet
from kernforge.enforcement.checkpoints import (
    AUTODETECT_GUARD, OVERWRITE_RESTORER, PREBUILD_FINAL, REGENERATION_GUARD,
)
from kernforge.enforcement.injector import instrument
from kernforge.enforcement.kconfig import (
    BUILTIN_LINE, DISABLED_LINE, MODULE_LINE, apply_steps, family_lines, split_lines,
)
from kernforge.enforcement.payloads import render_block
from kernforge.modules.kbuild import scan_kbuild_symbols

from tests.chaos.fixtures import LINE_POOL, autodetect, flood, overwrite, regenerate
from tests.enforcement.fixtures import ARCH_PKGBUILD, kernel_modules, resolved_spec


MODULES = kernel_modules("nvme", "evdev", "ext4")
MODULE_SYMBOLS = sorted(MODULES.symbols) + ["CONFIG_DRM_NOUVEAU", "CONFIG_SND_HDA_INTEL"]

lines = st.lists(st.sampled_from(LINE_POOL), max_size=12)


@composite
def adversaries(draw):
    """One clobbering action before each checkpoint."""
    return {
        "overwrite": draw(lines),
        "autodetect": draw(st.sets(st.sampled_from(MODULE_SYMBOLS))),
        "regenerate": draw(lines),
        "late": draw(lines),
    }


def _run_build(spec, module_set, attack):
    """Replay prepare() and build() with the adversaries in between."""
    text = overwrite("", attack["overwrite"])
    text = apply_steps(text, OVERWRITE_RESTORER.steps, spec, module_set)
    text = autodetect(text, attack["autodetect"])
    text = apply_steps(text, AUTODETECT_GUARD.steps, spec, module_set)
    text = regenerate(text, attack["regenerate"])
    text = apply_steps(text, REGENERATION_GUARD.steps, spec, module_set)
    text = regenerate(text, attack["late"])
    return apply_steps(text, PREBUILD_FINAL.steps, spec, module_set)


class TestAdversarialFixedPoint:
    """Enforcement converges no matter what runs in between."""

    @settings(max_examples=200)
    @given(attack=adversaries(), profile=st.sampled_from(["generic", "gaming", "server"]))
    def test_families_exact_after_final_checkpoint(self, attack, profile):
        spec = resolved_spec(profile)
        final = _run_build(spec, MODULES, attack)

        for selection in spec.managed_families():
            assert family_lines(final, selection.family) == selection.render_lines()

    @settings(max_examples=200)
    @given(attack=adversaries())
    def test_module_list_pinned(self, attack):
        final = _run_build(resolved_spec("gaming"), MODULES, attack)
        rows = split_lines(final)
        builtin = {m.group(1) for m in map(BUILTIN_LINE.match, rows) if m}
        expected = {line for line in MODULES.render_lines() if line.split("=")[0] not in builtin}

        assert {row for row in rows if MODULE_LINE.match(row)} == expected
        for row in rows:
            disabled = DISABLED_LINE.match(row)
            assert not (disabled and disabled.group(1) in MODULES.symbols)

    @settings(max_examples=200)
    @given(attack=adversaries(), profile=st.sampled_from(["generic", "workstation", "laptop"]))
    def test_final_state_is_fixed_point(self, attack, profile):
        spec = resolved_spec(profile)
        final = _run_build(spec, MODULES, attack)

        assert apply_steps(final, PREBUILD_FINAL.steps, spec, MODULES) == final

    @given(attack=adversaries())
    def test_no_filtering_leaves_modules_alone(self, attack):
        final = _run_build(resolved_spec("generic"), NO_FILTERING, attack)
        rows = split_lines(final)
        attacked = set(attack["overwrite"] + attack["regenerate"] + attack["late"])

        for row in rows:
            if MODULE_LINE.match(row):
                assert row in attacked


class TestScriptTampering:
    """Hand edits to an instrumented script are healed on the next run."""

    def test_misplaced_block_is_moved_back(self):
        spec = resolved_spec("gaming")
        clean = instrument(ARCH_PKGBUILD, spec, MODULES).text
        rows = clean.split("\n")
        begin = next(i for i, r in enumerate(rows) if "kernforge checkpoint: prebuild-final >>>" in r)
        end = next(i for i, r in enumerate(rows) if "kernforge checkpoint: prebuild-final <<<" in r)
        block = rows[begin:end + 1]
        tampered_rows = rows[:begin] + rows[end + 1:]
        package_row = tampered_rows.index("package() {")
        tampered = "\n".join(tampered_rows[:package_row + 1] + block + tampered_rows[package_row + 1:])

        assert instrument(tampered, spec, MODULES).text == clean

    def test_stale_spec_block_is_replaced(self):
        old = instrument(ARCH_PKGBUILD, resolved_spec("server"), NO_FILTERING).text
        new = instrument(old, resolved_spec("gaming"), MODULES).text

        assert new == instrument(ARCH_PKGBUILD, resolved_spec("gaming"), MODULES).text
        assert "CONFIG_HZ_100=y" not in new


FLOOD_SIZE = 4000

TREE_WIDTH = 300


def _flood_attack(rng):
    return {
        "overwrite": flood(rng, FLOOD_SIZE),
        "autodetect": set(rng.sample(MODULE_SYMBOLS, 2)),
        "regenerate": flood(rng, FLOOD_SIZE),
        "late": flood(rng, FLOOD_SIZE),
    }


class TestFloodedConfig:
    """Thousands of unknown loadable modules are all dropped, every time."""

    @settings(max_examples=10, deadline=None)
    @given(seed=st.integers(min_value=0), profile=st.sampled_from(["generic", "gaming"]))
    def test_flood_converges_to_the_frozen_set(self, seed, profile):
        spec = resolved_spec(profile)
        final = _run_build(spec, MODULES, _flood_attack(random.Random(seed)))
        rows = split_lines(final)
        builtin = {m.group(1) for m in map(BUILTIN_LINE.match, rows) if m}
        expected = {line for line in MODULES.render_lines() if line.split("=")[0] not in builtin}

        assert {row for row in rows if MODULE_LINE.match(row)} == expected
        assert not any(row.startswith("CONFIG_X_") and row.endswith("=m") for row in rows)
        for selection in spec.managed_families():
            assert family_lines(final, selection.family) == selection.render_lines()
        assert apply_steps(final, PREBUILD_FINAL.steps, spec, MODULES) == final

    def test_flood_with_tree_members(self, tmp_path):
        rng = random.Random(7)
        kept = _kbuild_tree(tmp_path, rng)
        modules = ModuleSet.of({"nvme", "evdev", "ext4"} | kept, {
            "nvme": "CONFIG_BLK_DEV_NVME", "evdev": "CONFIG_INPUT_EVDEV", "ext4": "CONFIG_EXT4_FS",
        })
        tree_symbols = scan_kbuild_symbols(str(tmp_path), modules.unresolved)
        config = "\n".join(flood(rng, FLOOD_SIZE)) + "\n"
        spec = resolved_spec("gaming")

        final = apply_steps(config, REGENERATION_GUARD.steps, spec, modules, tree_symbols)
        rows = split_lines(final)
        flooded = {row for row in rows if row.startswith("CONFIG_X_") and row.endswith("=m")}

        assert len(tree_symbols) == len(kept)
        assert flooded == {f"CONFIG_X_{x.split('_')[1]}=m" for x in kept}
        assert apply_steps(final, REGENERATION_GUARD.steps, spec, modules, tree_symbols) == final


def _kbuild_tree(root, rng):
    """A tree building x-<n>.o under CONFIG_X_<n>; returns the identifiers wanted from it."""
    for n in range(TREE_WIDTH):
        directory = root / "drivers" / f"d{n}"
        directory.mkdir(parents=True)
        (directory / "Makefile").write_text(
            f"obj-$(CONFIG_X_{n}) += x-{n}.o\nobj-y += helper-{n}.o\n", encoding="utf-8",
        )
    return {f"x_{n}" for n in rng.sample(range(TREE_WIDTH), TREE_WIDTH // 3)}


@pytest.mark.skipif(
    shutil.which("bash") is None or shutil.which("awk") is None,
    reason="needs bash and awk",
)
class TestFloodedShellAgreement:
    """The awk payload and the pure functions agree on a flooded config."""

    def _run_block(self, tmp_path, checkpoint, spec, module_set, config_text):
        with open(tmp_path / ".config", "w", encoding="utf-8") as f:
            f.write(config_text)
        script = "\n".join(render_block(checkpoint, spec, module_set)) + "\n"
        subprocess.run(
            ["bash", "-c", script],
            cwd=tmp_path,
            check=True,
            capture_output=True,
            timeout=120,
            env={"PATH": os.environ.get("PATH", "")},
        )
        with open(tmp_path / ".config", "r", encoding="utf-8") as f:
            return f.read()

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_flood_matches(self, tmp_path, seed):
        rng = random.Random(seed)
        config = "\n".join(flood(rng, FLOOD_SIZE * 2)) + "\n"
        spec = resolved_spec("gaming")

        shell = self._run_block(tmp_path, REGENERATION_GUARD, spec, MODULES, config)
        pure = apply_steps(config, REGENERATION_GUARD.steps, spec, MODULES)

        assert shell == pure
        assert apply_steps(shell, REGENERATION_GUARD.steps, spec, MODULES) == shell

    def test_flood_with_tree_matches(self, tmp_path):
        rng = random.Random(11)
        kept = _kbuild_tree(tmp_path, rng)
        modules = ModuleSet.of({"nvme", "evdev"} | kept, {
            "nvme": "CONFIG_BLK_DEV_NVME", "evdev": "CONFIG_INPUT_EVDEV",
        })
        config = "\n".join(flood(rng, FLOOD_SIZE * 2)) + "\n"
        spec = resolved_spec("server")

        shell = self._run_block(tmp_path, REGENERATION_GUARD, spec, modules, config)
        tree_symbols = scan_kbuild_symbols(str(tmp_path), modules.unresolved)
        pure = apply_steps(config, REGENERATION_GUARD.steps, spec, modules, tree_symbols)

        assert shell == pure
