"""
Integration Tests: Build Sessions End to End

Runs the orchestrator against a workspace in tmp_path with a fake build
driver. Verifies that:
1. The phase sequence is the happy path, reported in order
2. The build script is instrumented and the final config holds the spec
3. Output is streamed, persisted and numbered without gaps
4. Cancellation, process failure and anchor failure each end in the
   right terminal phase with the right error
"""

import asyncio
import json
import os

import httpx
import pytest

from kernforge.contracts.base import ConfigError, ErrorCode
from kernforge.contracts.configuration import Profile, Setting
from kernforge.contracts.events import BuildPhase, LogLine, LogStream, PhaseChanged, ProgressUpdate
from kernforge.enforcement.kconfig import family_lines
from kernforge.observability.persistence import read_audit, read_log, read_summary
from kernforge.orchestrator import BuildOrchestrator, BuildRequest, ProcessRunner, SourceFetcher
from kernforge.resolution.families import OPTIMIZATION

from tests.enforcement.fixtures import NO_BUILD_FUNCTION
from tests.integration.fixtures import (
    ARTIFACT_NAME, FAILING_DRIVER, FIXED_HARDWARE, HANGING_DRIVER, INTEGRATION_CONFIG,
    INTEGRATION_PKGBUILD, make_workspace, read_file, requires_shell, shell_config, write_file,
)


HAPPY_PATH = [
    BuildPhase.PREPARATION,
    BuildPhase.CONFIGURATION,
    BuildPhase.PATCHING,
    BuildPhase.BUILDING,
    BuildPhase.VALIDATION,
    BuildPhase.COMPLETED,
]


def _run(orchestrator, request, listener=None, cancel_on=None):
    """Drive one session to its end; cancel_on is a log text that triggers cancellation."""

    async def session():
        cancel_event = asyncio.Event()
        events = []

        def on_event(event):
            events.append(event)
            if cancel_on and isinstance(event, LogLine) and event.text == cancel_on:
                cancel_event.set()
            if listener is not None:
                listener(event)

        outcome = await orchestrator.run(request, on_event, cancel_event)
        return outcome, events

    return asyncio.run(session())


def _request(workspace, **kwargs):
    kwargs.setdefault("hardware", FIXED_HARDWARE)
    return BuildRequest(workspace=workspace, **kwargs)


@requires_shell
class TestHappyPath:
    """A clean workspace builds through every phase."""

    def test_phases_in_order(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        outcome, events = _run(BuildOrchestrator(shell_config()), _request(workspace))

        assert outcome.final_phase == BuildPhase.COMPLETED, outcome.error
        phases = [e.current for e in events if isinstance(e, PhaseChanged)]
        assert phases == HAPPY_PATH

    def test_script_instrumented_and_config_enforced(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())
        outcome, _ = _run(orchestrator, _request(workspace))

        script = read_file(os.path.join(workspace, "PKGBUILD"))
        assert "kernforge checkpoint: overwrite-restorer >>>" in script
        assert "kernforge checkpoint: regeneration-guard >>>" in script
        assert "kernforge checkpoint: prebuild-final >>>" in script

        spec = orchestrator.last_session.spec
        final = read_file(os.path.join(workspace, "src", "linux-test", ".config"))
        assert family_lines(final, OPTIMIZATION) == spec.family("optimization").render_lines()
        assert "CONFIG_LTO_CLANG_FULL=y" not in final
        assert outcome.warnings == ()

    def test_source_config_enforced_in_place(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        _run(BuildOrchestrator(shell_config()), _request(workspace))

        config = read_file(os.path.join(workspace, "config"))
        assert "CONFIG_HZ_300=y" in config
        assert "CONFIG_HZ_250=y" not in config
        assert read_file(os.path.join(workspace, ".kernforge", "pristine", "config")) == INTEGRATION_CONFIG

    def test_output_streamed_and_persisted(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        outcome, events = _run(BuildOrchestrator(shell_config()), _request(workspace))

        lines = [e for e in events if isinstance(e, LogLine)]
        assert [line.sequence for line in lines] == list(range(1, len(lines) + 1))
        stderr = [line.text for line in lines if line.stream == LogStream.STDERR]
        assert "[kernforge] checkpoint prebuild-final applied" in stderr

        persisted = read_log(workspace)
        assert [r["text"] for r in persisted] == [line.text for line in lines]

    def test_progress_only_moves_forward(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        _, events = _run(BuildOrchestrator(shell_config()), _request(workspace))

        percents = [e.percent for e in events if isinstance(e, ProgressUpdate)]
        assert percents == sorted(set(percents))
        assert percents[-1] == 100

    def test_artifacts_and_summary(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        outcome, _ = _run(BuildOrchestrator(shell_config()), _request(workspace))

        assert outcome.exit_code == 0
        assert [os.path.basename(a) for a in outcome.artifacts] == [ARTIFACT_NAME]

        summary = read_summary(workspace)
        assert summary["phase"] == "completed"
        assert summary["variant"] == "linux-test"
        assert summary["progress"] == 100
        assert summary["module_count"] is None
        assert summary["settings"]["optimization"] == {"value": "thin", "provenance": "from_preset"}
        assert {c["checkpoint_id"] for c in summary["checkpoints"]} == {
            "overwrite-restorer", "regeneration-guard", "prebuild-final",
        }

        metrics = summary["metrics"]
        assert metrics["checkpoints_inserted_total"]["count"] == 3
        assert metrics["checkpoints_inserted_total"]["by_label"] == {
            "checkpoint=overwrite-restorer": 1, "checkpoint=prebuild-final": 1,
            "checkpoint=regeneration-guard": 1,
        }
        assert metrics["phase_duration_ms"]["type"] == "timing"
        assert set(metrics["phase_duration_ms"]["by_label"]) == {
            f"phase={phase.value}" for phase in HAPPY_PATH[:-1]
        }
        assert metrics["build_log_lines_total"]["sum"] == summary["log_lines"]

        audit = summary["audit"]
        assert audit["total_entries"] == len(read_audit(workspace))
        assert audit["by_layer"]["enforcement"] >= 3
        assert audit["by_event_type"]["state_change"] >= len(HAPPY_PATH)

    def test_derived_values_reach_the_build(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())
        outcome, _ = _run(orchestrator, _request(workspace, overrides=((Setting.POLLY, True),)))

        assert outcome.final_phase == BuildPhase.COMPLETED, outcome.error
        texts = [r["text"] for r in read_log(workspace)]
        compile_lines = [t for t in texts if t.startswith("make all")]
        assert compile_lines == ["make all KCFLAGS=" + " ".join(orchestrator.last_session.spec.kernel_cflags)]
        assert "-march=native -mllvm -polly" in compile_lines[0]

        summary = read_summary(workspace)
        tuning = os.path.join(workspace, "kernforge-mglru.sh")
        assert summary["mglru_tuning"] == tuning
        assert "/sys/kernel/mm/lru_gen/enabled" in read_file(tuning)

    def test_module_stripping_with_facts(self, tmp_path):
        facts = tmp_path / "modprobed.db"
        facts.write_text("nvme\next4\nbtrfs\n", encoding="utf-8")
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())

        outcome, _ = _run(orchestrator, _request(
            workspace, profile=Profile.GAMING, module_facts_path=str(facts),
        ))

        assert outcome.final_phase == BuildPhase.COMPLETED, outcome.error
        session = orchestrator.last_session
        assert {"nvme", "ext4", "btrfs"} <= session.module_set.identifiers
        assert read_summary(workspace)["module_count"] == len(session.module_set)
        assert session.report.missing_modules == ()
        final = read_file(os.path.join(workspace, "src", "linux-test", ".config"))
        assert "CONFIG_BLK_DEV_NVME=m" in final
        assert "CONFIG_SND_HDA_INTEL=m" not in final

    def test_uncatalogued_module_survives_stripping(self, tmp_path):
        facts = tmp_path / "modprobed.db"
        facts.write_text("nvme\nsnd-hda-intel\n", encoding="utf-8")
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())

        outcome, _ = _run(orchestrator, _request(
            workspace, profile=Profile.GAMING, module_facts_path=str(facts),
        ))

        assert outcome.final_phase == BuildPhase.COMPLETED, outcome.error
        session = orchestrator.last_session
        assert session.module_set.unresolved == ("snd_hda_intel",)
        final = read_file(os.path.join(workspace, "src", "linux-test", ".config")).splitlines()
        assert "CONFIG_SND_HDA_INTEL=m" in final
        assert "snd_hda_intel=m" not in final
        assert session.report.missing_modules == ()
        assert session.report.unresolved_modules == ()

    def test_rerun_is_idempotent(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())
        _run(orchestrator, _request(workspace))
        first_script = read_file(os.path.join(workspace, "PKGBUILD"))
        first_lines = len(read_log(workspace))

        outcome, _ = _run(orchestrator, _request(workspace))

        assert outcome.final_phase == BuildPhase.COMPLETED
        assert read_file(os.path.join(workspace, "PKGBUILD")) == first_script
        assert len(read_log(workspace)) == first_lines
        discarded = [r for r in read_audit(workspace) if r["action"] == "leftover_discarded"]
        assert {os.path.basename(r["entity_id"]) for r in discarded} >= {"src", ARTIFACT_NAME}
        actions = [r["action"] for r in read_audit(workspace)]
        assert "pristine_refreshed" not in actions
        assert "pristine_stored" not in actions

    def test_replaced_script_is_the_next_baseline(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())
        _run(orchestrator, _request(workspace))

        bumped = INTEGRATION_PKGBUILD.replace("pkgrel=1", "pkgrel=2")
        write_file(os.path.join(workspace, "PKGBUILD"), bumped)
        outcome, _ = _run(orchestrator, _request(workspace))

        assert outcome.final_phase == BuildPhase.COMPLETED, outcome.error
        assert read_file(os.path.join(workspace, ".kernforge", "pristine", "PKGBUILD")) == bumped
        assert "pkgrel=2" in read_file(os.path.join(workspace, "PKGBUILD"))
        refreshed = [r for r in read_audit(workspace) if r["action"] == "pristine_refreshed"]
        assert [os.path.basename(r["entity_id"]) for r in refreshed] == ["PKGBUILD"]

    def test_override_changes_the_build(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        orchestrator = BuildOrchestrator(shell_config())

        _run(orchestrator, _request(workspace, overrides=((Setting.OPTIMIZATION, "full"),)))

        final = read_file(os.path.join(workspace, "src", "linux-test", ".config"))
        assert "CONFIG_LTO_CLANG_FULL=y" in final
        assert "CONFIG_LTO_CLANG_THIN=y" not in final


@requires_shell
class TestTerminalOutcomes:
    """Every way a session can end."""

    def test_cancel_during_build(self, tmp_path):
        workspace = make_workspace(tmp_path / "build", driver=HANGING_DRIVER)

        outcome, events = _run(
            BuildOrchestrator(shell_config()), _request(workspace), cancel_on="waiting for cancel",
        )

        assert outcome.final_phase == BuildPhase.CANCELLED
        assert outcome.error is None
        texts = [e.text for e in events if isinstance(e, LogLine)]
        assert "should never print" not in texts
        assert read_summary(workspace)["phase"] == "cancelled"

    def test_process_failure(self, tmp_path):
        workspace = make_workspace(tmp_path / "build", driver=FAILING_DRIVER)

        outcome, _ = _run(BuildOrchestrator(shell_config()), _request(workspace))

        assert outcome.final_phase == BuildPhase.FAILED
        assert outcome.exit_code == 3
        assert outcome.error.code == ErrorCode.EXTERNAL_PROCESS_FAILED
        assert dict(outcome.error.context)["exit_code"] == "3"
        summary = read_summary(workspace)
        assert summary["error"]["code"] == "EXTERNAL_PROCESS_FAILED"
        assert "error: compiler exploded" in [r["text"] for r in read_log(workspace)]

    def test_missing_build_function_leaves_script_alone(self, tmp_path):
        workspace = make_workspace(tmp_path / "build", script=NO_BUILD_FUNCTION)

        outcome, events = _run(BuildOrchestrator(shell_config()), _request(workspace))

        assert outcome.final_phase == BuildPhase.FAILED
        assert outcome.error.code == ErrorCode.FUNCTION_NOT_FOUND
        assert read_file(os.path.join(workspace, "PKGBUILD")) == NO_BUILD_FUNCTION
        assert read_file(os.path.join(workspace, "config")) == INTEGRATION_CONFIG
        assert not any(isinstance(e, LogLine) for e in events)

    def test_missing_script_without_variant(self, tmp_path):
        workspace = make_workspace(tmp_path / "build", script=None)

        outcome, _ = _run(BuildOrchestrator(shell_config()), _request(workspace))

        assert outcome.final_phase == BuildPhase.FAILED
        assert outcome.error.code == ErrorCode.PREREQUISITE_MISSING

    def test_missing_tool(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")
        config = shell_config(required_tools=("bash", "kernforge-no-such-tool"))

        outcome, _ = _run(BuildOrchestrator(config), _request(workspace))

        assert outcome.final_phase == BuildPhase.FAILED
        assert outcome.error.code == ErrorCode.PREREQUISITE_MISSING
        assert "kernforge-no-such-tool" in outcome.error.message

    def test_broken_listener_does_not_stop_the_build(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")

        def explode(event):
            raise RuntimeError("listener bug")

        outcome, _ = _run(BuildOrchestrator(shell_config()), _request(workspace), listener=explode)

        assert outcome.final_phase == BuildPhase.COMPLETED
        assert any("listener_failed" in w for w in outcome.warnings)

    def test_unexpected_error_ends_failed(self, tmp_path):
        workspace = make_workspace(tmp_path / "build")

        class BrokenRunner(ProcessRunner):
            async def run(self, *args, **kwargs):
                raise RuntimeError("runner bug")

        config = shell_config()
        orchestrator = BuildOrchestrator(config, runner=BrokenRunner(config.runner))
        outcome, events = _run(orchestrator, _request(workspace))

        assert outcome.final_phase == BuildPhase.FAILED
        assert outcome.error.code == ErrorCode.UNEXPECTED_FAILURE
        assert "runner bug" in outcome.error.message
        assert dict(outcome.error.context)["phase"] == "building"
        phases = [e.current for e in events if isinstance(e, PhaseChanged)]
        assert phases[-1] == BuildPhase.FAILED
        summary = read_summary(workspace)
        assert summary["phase"] == "failed"
        assert summary["error"]["code"] == "UNEXPECTED_FAILURE"
        failed = [e for e in read_audit(workspace) if e["action"] == "build_failed"]
        assert len(failed) == 1


@requires_shell
class TestFetchedSources:
    """A workspace with only a config fetches its PKGBUILD once."""

    def test_fetch_then_build(self, tmp_path):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, text=INTEGRATION_PKGBUILD)

        workspace = make_workspace(tmp_path / "build", script=None)
        fetcher = SourceFetcher(transport=httpx.MockTransport(handler))
        orchestrator = BuildOrchestrator(shell_config(), fetcher=fetcher)

        outcome, _ = _run(orchestrator, _request(workspace, variant="linux"))

        assert outcome.final_phase == BuildPhase.COMPLETED, outcome.error
        assert len(requested) == 1
        pristine = read_file(os.path.join(workspace, ".kernforge", "pristine", "PKGBUILD"))
        assert pristine == INTEGRATION_PKGBUILD
        assert "kernforge checkpoint" in read_file(os.path.join(workspace, "PKGBUILD"))

        _run(orchestrator, _request(workspace, variant="linux"))
        assert len(requested) == 1

    def test_fetch_failure(self, tmp_path):
        workspace = make_workspace(tmp_path / "build", script=None)
        fetcher = SourceFetcher(transport=httpx.MockTransport(lambda request: httpx.Response(404)))

        outcome, _ = _run(
            BuildOrchestrator(shell_config(), fetcher=fetcher), _request(workspace, variant="linux-zen"),
        )

        assert outcome.final_phase == BuildPhase.FAILED
        assert outcome.error.code == ErrorCode.SOURCE_UNREACHABLE
        assert not os.path.exists(os.path.join(workspace, "PKGBUILD"))


@pytest.mark.parametrize("payload,code", [
    ({}, ErrorCode.INVALID_SETTING_VALUE),
    ({"workspace": "/w", "profile": "turbo"}, ErrorCode.UNKNOWN_PROFILE),
    ({"workspace": "/w", "overrides": {"warp_drive": True}}, ErrorCode.INVALID_SETTING_VALUE),
    ({"workspace": "/w", "hardware": {"gpu_vendor": "matrox"}}, ErrorCode.INVALID_SETTING_VALUE),
])
def test_bad_build_request(payload, code):
    with pytest.raises(ConfigError) as excinfo:
        BuildRequest.from_json(json.dumps(payload))
    assert excinfo.value.code == code


def test_build_request_from_json():
    request = BuildRequest.from_json(
        '{"workspace": "/w", "profile": "server", "overrides": {"timer_hz": 250, "polly": true},'
        ' "hardware": {"gpu_vendor": "amd", "cpu_cores": 16}, "variant": "linux-lts"}'
    )

    assert request.profile == Profile.SERVER
    assert request.overrides_dict() == {Setting.POLLY: True, Setting.TIMER_HZ: 250}
    assert request.hardware.cpu_cores == 16
    assert request.hardware.ram_gb is None
    assert request.variant == "linux-lts"
