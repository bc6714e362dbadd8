"""
Write Capability Tests

Only a live Patching lease may write, and a failed write leaves every
target exactly as it was.
"""

import os
from unittest import mock

import pytest

from kernforge.contracts.base import (
    AnchorError, CapabilityError, ErrorCode, FileWriteFailure, SessionId,
)
from kernforge.contracts.events import BuildPhase
from kernforge.contracts.modules import NO_FILTERING
from kernforge.enforcement import EnforcementEngine
from kernforge.enforcement.writer import PhaseLease, ScriptWriteHandle

from tests.enforcement.fixtures import (
    ARCH_PKGBUILD, NO_BUILD_FUNCTION, STOCK_CONFIG, kernel_modules, lease_for, resolved_spec,
)


SESSION = SessionId("session_test")


def _write(path, text):
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def _read(path):
    with open(path, "rb") as f:
        return f.read()


class TestCapability:
    """Handles exist only inside Patching."""

    @pytest.mark.parametrize("phase", [
        BuildPhase.PREPARATION, BuildPhase.CONFIGURATION, BuildPhase.BUILDING,
        BuildPhase.VALIDATION,
    ])
    def test_other_phases_denied(self, phase):
        with pytest.raises(CapabilityError) as excinfo:
            ScriptWriteHandle.acquire(lease_for(phase))
        assert excinfo.value.code == ErrorCode.WRITE_CAPABILITY_DENIED

    def test_lease_has_no_public_constructor(self):
        with pytest.raises(TypeError):
            PhaseLease(BuildPhase.PATCHING, SESSION)

    def test_missing_lease_denied(self):
        with pytest.raises(CapabilityError):
            ScriptWriteHandle.acquire(None)

    def test_revoked_lease_denied(self):
        lease = lease_for(BuildPhase.PATCHING)
        lease.revoke()
        with pytest.raises(CapabilityError):
            ScriptWriteHandle.acquire(lease)

    def test_handle_dies_with_its_lease(self, tmp_path):
        lease = lease_for(BuildPhase.PATCHING)
        handle = ScriptWriteHandle.acquire(lease)
        handle.write_text(str(tmp_path / "PKGBUILD"), "one\n")
        lease.revoke()

        with pytest.raises(CapabilityError):
            handle.write_text(str(tmp_path / "PKGBUILD"), "two\n")
        assert _read(tmp_path / "PKGBUILD") == b"one\n"


class TestAtomicWrites:
    """Writes replace whole files and roll back together."""

    def test_write_keeps_file_mode(self, tmp_path):
        target = tmp_path / "PKGBUILD"
        _write(target, "old\n")
        os.chmod(target, 0o640)

        handle = ScriptWriteHandle.acquire(lease_for(BuildPhase.PATCHING))
        receipt = handle.write_text(str(target), "new\n")

        assert _read(target) == b"new\n"
        assert os.stat(target).st_mode & 0o777 == 0o640
        assert receipt.signature.payload_length == 4
        assert handle.backups[str(target)].content == b"old\n"

    def test_failed_second_write_restores_first(self, tmp_path):
        script = tmp_path / "PKGBUILD"
        config = tmp_path / "config"
        _write(script, ARCH_PKGBUILD)
        _write(config, STOCK_CONFIG)
        handle = ScriptWriteHandle.acquire(lease_for(BuildPhase.PATCHING))

        real_replace = os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append(dst)
            if dst == str(config):
                raise OSError("disk full")
            real_replace(src, dst)

        with mock.patch("kernforge.enforcement.writer.os.replace", side_effect=flaky_replace):
            handle.write_text(str(script), "instrumented\n")
            with pytest.raises(FileWriteFailure) as excinfo:
                handle.write_text(str(config), "enforced\n")

        assert excinfo.value.code == ErrorCode.FILE_WRITE_FAILED
        assert "backups restored" in excinfo.value.error.message
        assert _read(script) == ARCH_PKGBUILD.encode("utf-8")
        assert _read(config) == STOCK_CONFIG.encode("utf-8")
        assert sorted(os.listdir(tmp_path)) == ["PKGBUILD", "config"]

    def test_restore_renames_a_fresh_file_into_place(self, tmp_path):
        target = tmp_path / "PKGBUILD"
        _write(target, ARCH_PKGBUILD)
        os.chmod(target, 0o640)
        handle = ScriptWriteHandle.acquire(lease_for(BuildPhase.PATCHING))
        handle.write_text(str(target), "instrumented\n")
        written_inode = os.stat(target).st_ino

        handle.restore_all()

        assert _read(target) == ARCH_PKGBUILD.encode("utf-8")
        assert os.stat(target).st_ino != written_inode
        assert os.stat(target).st_mode & 0o777 == 0o640
        assert sorted(os.listdir(tmp_path)) == ["PKGBUILD"]

    def test_rollback_removes_created_file(self, tmp_path):
        handle = ScriptWriteHandle.acquire(lease_for(BuildPhase.PATCHING))
        handle.write_text(str(tmp_path / "new"), "created\n")
        handle.restore_all()

        assert not (tmp_path / "new").exists()


class TestEngineApply:
    """The engine writes the script and the source config in one lease."""

    def test_apply_writes_both(self, tmp_path):
        script = tmp_path / "PKGBUILD"
        config = tmp_path / "config"
        spec = resolved_spec("gaming")
        modules = kernel_modules("nvme", "ext4")
        engine = EnforcementEngine()

        result = engine.apply(
            lease_for(BuildPhase.PATCHING),
            str(script), ARCH_PKGBUILD, spec, modules,
            config_path=str(config), pristine_config=STOCK_CONFIG,
        )

        assert _read(script).decode("utf-8") == result.script.text
        assert "CONFIG_HZ=1000" in _read(config).decode("utf-8")
        assert "CONFIG_BTRFS_FS=m" not in _read(config).decode("utf-8")
        actions = [e.action for e in engine.get_audit_log()]
        assert actions[-2:] == ["script_written", "config_written"]

    def test_apply_writes_mglru_tuning(self, tmp_path):
        tuning = tmp_path / "kernforge-mglru.sh"
        engine = EnforcementEngine()

        result = engine.apply(
            lease_for(BuildPhase.PATCHING),
            str(tmp_path / "PKGBUILD"), ARCH_PKGBUILD, resolved_spec("laptop"), NO_FILTERING,
            tuning_path=str(tuning),
        )

        assert result.tuning_path == str(tuning)
        assert "echo 500 > /sys/kernel/mm/lru_gen/min_ttl_ms" in _read(tuning).decode("utf-8")
        assert [e.action for e in engine.get_audit_log()][-1] == "mglru_tuning_written"

    def test_anchor_error_writes_nothing(self, tmp_path):
        script = tmp_path / "PKGBUILD"
        _write(script, NO_BUILD_FUNCTION)

        with pytest.raises(AnchorError):
            EnforcementEngine().apply(
                lease_for(BuildPhase.PATCHING),
                str(script), NO_BUILD_FUNCTION, resolved_spec(), NO_FILTERING,
            )
        assert _read(script) == NO_BUILD_FUNCTION.encode("utf-8")

    def test_apply_needs_patching_lease(self, tmp_path):
        with pytest.raises(CapabilityError):
            EnforcementEngine().apply(
                lease_for(BuildPhase.BUILDING),
                str(tmp_path / "PKGBUILD"), ARCH_PKGBUILD, resolved_spec(), NO_FILTERING,
            )
        assert not (tmp_path / "PKGBUILD").exists()
