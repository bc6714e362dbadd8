"""
CLI Tests

Commands that never spawn a build: resolve, plan, verify, status, phases.
Host detection is always skipped so results do not depend on the machine.
"""

import pytest

from kernforge.cli import EXIT_FAILED, main, parse_overrides
from kernforge.contracts.configuration import Setting
from kernforge.contracts.modules import NO_FILTERING
from kernforge.enforcement.kconfig import enforce_config

from tests.enforcement.fixtures import ARCH_PKGBUILD, STOCK_CONFIG, resolved_spec
from tests.integration.fixtures import read_file, write_file


def _cli(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


class TestResolveAndPlan:

    def test_resolve_prints_provenance(self, capsys):
        out = _cli(capsys, "resolve", "--profile", "server", "--no-detect", "--set", "timer_hz=250")

        assert "[*] Profile: server" in out
        assert "timer_hz" in out and "(from_override)" in out
        assert "CONFIG_LTO_CLANG_FULL=y" in out
        assert "[*] make flags: LLVM=1 LLVM_IAS=1" in out

    def test_resolve_reports_ignored_override(self, capsys):
        out = _cli(capsys, "resolve", "--no-detect", "--gpu", "amd", "--set", "gpu_vendor=intel")

        assert "[!] Override for gpu_vendor ignored: kept amd, wanted intel" in out

    def test_bad_override_value(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["resolve", "--no-detect", "--set", "timer_hz=123"])
        assert excinfo.value.code == EXIT_FAILED
        assert "INVALID_SETTING_VALUE" in capsys.readouterr().out

    def test_plan_lists_checkpoints_without_writing(self, capsys, tmp_path):
        write_file(tmp_path / "PKGBUILD", ARCH_PKGBUILD)

        out = _cli(capsys, "--workspace", str(tmp_path), "plan", "--no-detect")

        assert "3 checkpoint(s)" in out
        assert "prebuild-final" in out
        assert any("autodetect-guard" in line and "(no anchor)" in line for line in out.splitlines())
        assert "[*] Module filtering: off" in out
        assert read_file(tmp_path / "PKGBUILD") == ARCH_PKGBUILD

    def test_plan_without_script(self, capsys, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(["--workspace", str(tmp_path), "plan", "--no-detect"])
        assert excinfo.value.code == EXIT_FAILED


class TestVerifyAndStatus:

    def _final_config(self, tmp_path, extra=""):
        tree = tmp_path / "src" / "linux"
        tree.mkdir(parents=True)
        write_file(tree / ".config", enforce_config(STOCK_CONFIG, resolved_spec(), NO_FILTERING) + extra)

    def test_verify_passes(self, capsys, tmp_path):
        self._final_config(tmp_path)

        out = _cli(capsys, "--workspace", str(tmp_path), "verify", "--no-detect")

        assert "[*] Verified" in out
        assert "MISMATCH" not in out

    def test_verify_secondary_mismatch(self, capsys, tmp_path):
        self._final_config(tmp_path, "CONFIG_HZ_1000=y\n")

        with pytest.raises(SystemExit) as excinfo:
            main(["--workspace", str(tmp_path), "verify", "--no-detect"])
        out = capsys.readouterr().out
        assert excinfo.value.code == EXIT_FAILED
        assert "MISMATCH" in out
        assert "[!] family timer_frequency" in out

    def test_verify_primary_mismatch(self, capsys, tmp_path):
        self._final_config(tmp_path, "CONFIG_LTO_NONE=y\n")

        with pytest.raises(SystemExit):
            main(["--workspace", str(tmp_path), "verify", "--no-detect"])
        assert "[!] PRIMARY_FAMILY_MISMATCH" in capsys.readouterr().out

    def test_status_without_session(self, capsys, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(["--workspace", str(tmp_path), "status"])
        assert excinfo.value.code == EXIT_FAILED
        assert "[!] No build session recorded" in capsys.readouterr().out

    def test_phases(self, capsys):
        out = _cli(capsys, "phases")

        assert "[*] 9 phases, 17 transitions" in out
        assert "idle -> preparation -> configuration" in out


class TestOverrideParsing:

    def test_pairs(self):
        assert parse_overrides(["Optimization = full", "polly=yes"]) == {
            Setting.OPTIMIZATION: "full",
            Setting.POLLY: "yes",
        }

    @pytest.mark.parametrize("pair", ["optimization", "warp=9"])
    def test_rejected(self, pair):
        with pytest.raises(SystemExit):
            parse_overrides([pair])
