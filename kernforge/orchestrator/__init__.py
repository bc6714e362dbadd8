"""
Orchestrator Layer

RESPONSIBILITY: Drive one build session through its phases and turn every
outcome into a terminal state
ALLOWED INPUTS: BuildRequest, optional event listener, cancel event
OUTPUTS: BuildOutcome, session summary and logs on disk

PHASE FLOW:
===========
1. Preparation: prerequisites, pristine store, leftover cleanup
2. Configuration: Resolver + Reconciler, frozen ConfigSpec / ModuleSet
3. Patching: one call into the enforcement engine (the only writer)
4. Building: external process, output streamed and persisted
5. Validation: read-only check of the final config

WHAT THIS LAYER MUST NOT DO:
============================
- Write the build script or the config file itself
- Run a phase out of order or twice
- Retry anything automatically
- Report a cancellation as a failure

BOUNDARY ENFORCEMENT:
=====================
- Mutation goes through EnforcementEngine with the Patching lease
- Execution goes through ProcessRunner
- Layer audit logs are collected into one ObservabilityEngine per session
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple
import asyncio
import json
import time

from ..contracts.base import (
    BuildCancelled, ConfigError, Error, ErrorCode, ExternalProcessFailure, FileWriteFailure,
    KernforgeError, PreparationError, SessionId, Timestamp,
)
from ..contracts.configuration import (
    ConfigSpec, GpuVendor, HardwareFacts, Profile, Setting,
)
from ..contracts.events import (
    AuditEventType, AuditLogEntry, BuildOutcome, BuildPhase, LogLine, ProgressUpdate,
)
from ..contracts.modules import ModuleSet
from ..enforcement import EnforcementConfig, EnforcementEngine, PatchResult
from ..modules import ModuleReconciler, ReconcilerConfig
from ..observability import ObservabilityConfig, ObservabilityEngine
from ..observability.persistence import BuildLogPersister
from ..resolution import ResolutionConfig, ResolutionEngine
from .hardware import detect_hardware
from .runner import ProcessRunner, RunnerConfig, parse_progress
from .sources import SourceFetcher
from .state import PhaseStateMachine, analyze_transitions
from .stream import EventStream, Listener
from .validation import BuildValidator, ValidationConfig, ValidationReport
from .workspace import PristineSources, Workspace, check_prerequisites


DEFAULT_REQUIRED_TOOLS = ("makepkg", "make", "awk")

# Progress shown on entering each phase; Building reports its own
PHASE_PROGRESS = {
    BuildPhase.PREPARATION: 0,
    BuildPhase.CONFIGURATION: 1,
    BuildPhase.PATCHING: 2,
    BuildPhase.BUILDING: 3,
    BuildPhase.VALIDATION: 95,
    BuildPhase.COMPLETED: 100,
}


@dataclass
class OrchestratorConfig:
    """Unified configuration for a build session."""
    resolution: ResolutionConfig = None
    reconciler: ReconcilerConfig = None
    enforcement: EnforcementConfig = None
    runner: RunnerConfig = None
    validation: ValidationConfig = None
    observability: ObservabilityConfig = None
    required_tools: Tuple[str, ...] = DEFAULT_REQUIRED_TOOLS
    min_ram_gb: int = 4
    min_disk_gb: int = 20
    fetch_timeout: float = 30.0

    def __post_init__(self):
        self.resolution = self.resolution or ResolutionConfig()
        self.reconciler = self.reconciler or ReconcilerConfig()
        self.enforcement = self.enforcement or EnforcementConfig()
        self.runner = self.runner or RunnerConfig()
        self.validation = self.validation or ValidationConfig()
        self.observability = self.observability or ObservabilityConfig()


@dataclass(frozen=True)
class BuildRequest:
    """
    What the caller wants built.

    hardware=None means detect on this host; pass HardwareFacts() to
    build without any detected facts.
    """
    workspace: str
    profile: Profile = Profile.GENERIC
    overrides: Tuple[Tuple[Setting, object], ...] = field(default_factory=tuple)
    hardware: Optional[HardwareFacts] = None
    module_facts_path: Optional[str] = None
    symbol_table_path: Optional[str] = None
    variant: Optional[str] = None  # fetch this variant's PKGBUILD when the workspace has none

    def overrides_dict(self) -> Dict[Setting, object]:
        return dict(self.overrides)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> BuildRequest:
        if "workspace" not in data:
            raise ConfigError(Error.create(
                ErrorCode.INVALID_SETTING_VALUE,
                "Build request needs a workspace",
            ))
        try:
            profile = Profile(data.get("profile", Profile.GENERIC.value))
        except ValueError:
            raise ConfigError(Error.create(
                ErrorCode.UNKNOWN_PROFILE,
                f"Unknown profile: {data.get('profile')}",
                profile=str(data.get("profile")),
            ))

        overrides = []
        for key, value in sorted((data.get("overrides") or {}).items()):
            try:
                overrides.append((Setting(key), value))
            except ValueError:
                raise ConfigError(Error.create(
                    ErrorCode.INVALID_SETTING_VALUE,
                    f"Unknown setting: {key}",
                    setting=key,
                ))

        hardware = None
        if data.get("hardware") is not None:
            facts = data["hardware"]
            vendor = facts.get("gpu_vendor")
            try:
                gpu_vendor = GpuVendor(vendor) if vendor is not None else None
            except ValueError:
                raise ConfigError(Error.create(
                    ErrorCode.INVALID_SETTING_VALUE,
                    f"Unknown GPU vendor: {vendor}",
                    gpu_vendor=str(vendor),
                ))
            hardware = HardwareFacts(
                gpu_vendor=gpu_vendor,
                cpu_cores=facts.get("cpu_cores"),
                ram_gb=facts.get("ram_gb"),
                disk_free_gb=facts.get("disk_free_gb"),
            )

        return BuildRequest(
            workspace=data["workspace"],
            profile=profile,
            overrides=tuple(overrides),
            hardware=hardware,
            module_facts_path=data.get("module_facts_path"),
            symbol_table_path=data.get("symbol_table_path"),
            variant=data.get("variant"),
        )

    @staticmethod
    def from_json(text: str) -> BuildRequest:
        return BuildRequest.from_dict(json.loads(text))


class BuildSession:
    """
    State of one run. Created by BuildOrchestrator.run() and kept as
    last_session for inspection.
    """

    def __init__(self, request: BuildRequest, config: OrchestratorConfig, listener: Optional[Listener]):
        self.request = request
        self.workspace = Workspace(request.workspace)
        self.started_at = Timestamp.now()
        self.session_id = SessionId.generate(self.workspace.root, self.started_at)
        self.machine = PhaseStateMachine(self.session_id)
        self.stream = EventStream(listener)
        self.observability = ObservabilityEngine(config.observability)

        self.hardware: Optional[HardwareFacts] = None
        self.pristine: Optional[PristineSources] = None
        self.spec: Optional[ConfigSpec] = None
        self.module_set: Optional[ModuleSet] = None
        self.patch: Optional[PatchResult] = None
        self.report: Optional[ValidationReport] = None
        self.exit_code: Optional[int] = None
        self.error: Optional[Error] = None
        self.progress = -1
        self.log_lines = 0
        self.persister: Optional[BuildLogPersister] = None
        self._phase_started = time.monotonic()

    @property
    def phase(self) -> BuildPhase:
        return self.machine.phase

    def warnings(self) -> Tuple[str, ...]:
        return tuple(_describe_warning(e) for e in self.observability.get_warnings())

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id.value,
            "workspace": self.workspace.root,
            "phase": self.phase.value,
            "started_at": self.started_at.to_iso(),
            "updated_at": Timestamp.now().to_iso(),
            "variant": self.pristine.variant if self.pristine else None,
            "profile": self.spec.profile.value if self.spec else self.request.profile.value,
            "spec_hash": self.spec.spec_hash if self.spec else None,
            "settings": {
                s.setting.value: {"value": _plain(s.value), "provenance": s.provenance.value}
                for s in self.spec.settings
            } if self.spec else {},
            "module_count": (
                None if self.module_set is None or self.module_set.is_no_filtering
                else len(self.module_set)
            ),
            "checkpoints": [
                {
                    "checkpoint_id": i.checkpoint_id,
                    "stage": i.stage,
                    "line": i.anchor_line,
                    "anchor": i.anchor_text,
                }
                for i in self.patch.script.insertions
            ] if self.patch else [],
            "mglru_tuning": self.patch.tuning_path if self.patch else None,
            "exit_code": self.exit_code,
            "progress": max(self.progress, 0),
            "log_lines": self.log_lines,
            "error": {
                "code": self.error.code.name,
                "message": self.error.message,
                "context": dict(self.error.context),
            } if self.error else None,
            "warnings": list(self.warnings()),
            "metrics": self.observability.metrics_summary(),
            "audit": self.observability.generate_audit_report(),
        }


class BuildOrchestrator:
    """
    Runs build sessions.

    One session per call to run(). Sessions in different workspaces may
    run concurrently; two sessions on the same workspace must not.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        runner: Optional[ProcessRunner] = None,
        fetcher: Optional[SourceFetcher] = None,
    ):
        self._config = config or OrchestratorConfig()
        self._runner = runner or ProcessRunner(self._config.runner)
        self._fetcher = fetcher or SourceFetcher(timeout=self._config.fetch_timeout)
        self.last_session: Optional[BuildSession] = None

    async def run(
        self,
        request: BuildRequest,
        listener: Optional[Listener] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BuildOutcome:
        session = BuildSession(request, self._config, listener)
        self.last_session = session
        cancel_event = cancel_event or asyncio.Event()
        session.stream.start()

        try:
            await self._run_phases(session, cancel_event)
        except BuildCancelled as e:
            session.observability.log_audit(
                action="build_cancelled",
                entity_id=session.session_id.value,
                outcome="cancelled",
                details=str(e),
                event_type=AuditEventType.STATE_CHANGE,
            )
            self._enter(session, BuildPhase.CANCELLED)
        except KernforgeError as e:
            session.error = e.error
            session.observability.log_audit(
                action="build_failed",
                entity_id=session.session_id.value,
                outcome="failure",
                details=f"{e.code.name}: {e.error.message}",
                event_type=AuditEventType.ERROR,
            )
            self._enter(session, BuildPhase.FAILED)
        except Exception as e:
            session.error = Error.create(
                ErrorCode.UNEXPECTED_FAILURE,
                f"{type(e).__name__}: {e}",
                phase=session.phase.value,
            )
            session.observability.log_audit(
                action="build_failed",
                entity_id=session.session_id.value,
                outcome="failure",
                details=f"{ErrorCode.UNEXPECTED_FAILURE.name}: {session.error.message}",
                event_type=AuditEventType.ERROR,
            )
            self._enter(session, BuildPhase.FAILED)
        finally:
            await self._close(session)

        return BuildOutcome(
            session_id=session.session_id,
            final_phase=session.phase,
            started_at=session.started_at,
            finished_at=Timestamp.now(),
            error=session.error,
            warnings=session.warnings(),
            artifacts=session.report.artifacts if session.report else (),
            exit_code=session.exit_code,
        )

    # =========================================================================
    # PHASES
    # =========================================================================

    async def _run_phases(self, session: BuildSession, cancel_event: asyncio.Event):
        self._enter(session, BuildPhase.PREPARATION)
        await self._prepare(session)

        self._check_cancel(cancel_event)
        self._enter(session, BuildPhase.CONFIGURATION)
        self._configure(session)

        self._check_cancel(cancel_event)
        self._enter(session, BuildPhase.PATCHING)
        self._patch(session)

        self._check_cancel(cancel_event)
        self._enter(session, BuildPhase.BUILDING)
        await self._build(session, cancel_event)

        self._check_cancel(cancel_event)
        self._enter(session, BuildPhase.VALIDATION)
        self._validate(session)

        self._enter(session, BuildPhase.COMPLETED)

    async def _prepare(self, session: BuildSession):
        workspace = session.workspace
        try:
            removed = workspace.discard_stale_state() + workspace.discard_leftovers()
        except OSError as e:
            raise PreparationError(Error.create(
                ErrorCode.PREREQUISITE_MISSING,
                f"Could not clean workspace {workspace.root}: {e}",
                workspace=workspace.root,
            ))

        # Opened after the stale state is gone so this session's log starts empty
        session.persister = BuildLogPersister(workspace.root)
        if self._config.observability.persist_audit:
            for entry in session.observability.get_unified_log():
                session.persister.append_audit(entry)
            session.observability.add_sink(session.persister.append_audit)

        for path in removed:
            session.observability.log_audit(
                action="leftover_discarded",
                entity_id=path,
                layer="orchestrator",
                event_type=AuditEventType.SYSTEM,
            )

        session.hardware = session.request.hardware
        if session.hardware is None:
            session.hardware = detect_hardware(workspace.root)
        check_prerequisites(
            self._config.required_tools,
            session.hardware,
            min_ram_gb=self._config.min_ram_gb,
            min_disk_gb=self._config.min_disk_gb,
        )

        fetched = None
        if not workspace.has_script():
            if not session.request.variant:
                raise PreparationError(Error.create(
                    ErrorCode.PREREQUISITE_MISSING,
                    f"No PKGBUILD in {workspace.root} and no variant to fetch",
                    workspace=workspace.root,
                ))
            fetched = await self._fetcher.fetch_pkgbuild(session.request.variant)
            session.observability.log_audit(
                action="source_fetched",
                entity_id=session.request.variant,
                details=f"{len(fetched)} bytes",
            )

        try:
            stored = workspace.store_pristine(fetched)
        except OSError as e:
            raise PreparationError(Error.create(
                ErrorCode.PREREQUISITE_MISSING,
                f"Could not record pristine sources: {e}",
                workspace=workspace.root,
            ))
        for copy in stored:
            session.observability.log_audit(
                action="pristine_refreshed" if copy.refreshed else "pristine_stored",
                entity_id=copy.path,
            )

        session.pristine = workspace.load_pristine()
        session.observability.log_audit(
            action="workspace_prepared",
            entity_id=workspace.root,
            details=f"variant={session.pristine.variant}",
        )

    def _configure(self, session: BuildSession):
        request = session.request
        resolver = ResolutionEngine(self._config.resolution)
        try:
            session.spec = resolver.resolve(
                hardware_facts=session.hardware,
                overrides=request.overrides_dict(),
                profile=request.profile,
            )
        finally:
            session.observability.collect_all(resolver.get_audit_log())
        session.observability.collect_metric(
            "resolution_conflicts_total", len(session.spec.conflicts)
        )

        reconciler_config = self._config.reconciler
        if request.module_facts_path or request.symbol_table_path:
            reconciler_config = replace(
                reconciler_config,
                module_facts_path=request.module_facts_path or reconciler_config.module_facts_path,
                symbol_table_path=request.symbol_table_path or reconciler_config.symbol_table_path,
            )
        reconciler = ModuleReconciler(reconciler_config)
        try:
            session.module_set = reconciler.reconcile(session.spec)
        finally:
            session.observability.collect_all(reconciler.get_audit_log())
        if not session.module_set.is_no_filtering:
            session.observability.collect_metric("modules_frozen", len(session.module_set))

    def _patch(self, session: BuildSession):
        engine = EnforcementEngine(self._config.enforcement)
        workspace = session.workspace
        pristine = session.pristine
        try:
            session.patch = engine.apply(
                session.machine.lease,
                workspace.script_path,
                pristine.script,
                session.spec,
                session.module_set,
                config_path=workspace.config_path if pristine.config is not None else None,
                pristine_config=pristine.config,
                tuning_path=workspace.mglru_tuning_path,
            )
        finally:
            session.observability.collect_all(engine.get_audit_log())
        try:
            workspace.record_enforced()
        except OSError as e:
            raise FileWriteFailure(Error.create(
                ErrorCode.FILE_WRITE_FAILED,
                f"Could not record enforced sources: {e}",
                workspace=workspace.root,
            ))
        for insertion in session.patch.script.insertions:
            session.observability.collect_metric(
                "checkpoints_inserted_total", 1, {"checkpoint": insertion.checkpoint_id}
            )

    async def _build(self, session: BuildSession, cancel_event: asyncio.Event):
        session.observability.log_audit(
            action="process_started",
            entity_id=session.session_id.value,
            details=" ".join(self._runner.command),
            layer="runner",
            event_type=AuditEventType.PROCESS,
        )

        def on_line(line: LogLine):
            session.persister.append_line(line)
            session.log_lines += 1
            session.stream.publish(line)
            percent = parse_progress(line.text)
            if percent is not None:
                self._progress(session, percent)

        try:
            result = await self._runner.run(
                session.workspace.root, session.session_id, on_line, cancel_event
            )
        finally:
            session.observability.collect_metric("build_log_lines_total", session.log_lines)

        session.exit_code = result.exit_code
        session.observability.log_audit(
            action="process_exited",
            entity_id=session.session_id.value,
            outcome="success" if result.succeeded else "failure",
            details=f"exit code {result.exit_code}, {result.line_count} lines",
            layer="runner",
            event_type=AuditEventType.PROCESS,
        )
        if not result.succeeded:
            raise ExternalProcessFailure(Error.create(
                ErrorCode.EXTERNAL_PROCESS_FAILED,
                f"Build command exited with code {result.exit_code}",
                exit_code=result.exit_code,
                log=session.persister.log_path,
            ))

    def _validate(self, session: BuildSession):
        validator = BuildValidator(self._config.validation)
        try:
            session.report = validator.verify(
                session.workspace.root, session.spec, session.module_set
            )
        except KernforgeError as e:
            session.observability.collect_metric(
                "verification_mismatches_total", 1, {"severity": "fatal"}
            )
            session.observability.log_audit(
                action="verification_failed",
                entity_id=e.error.context_value("family"),
                outcome="failure",
                details=e.error.message,
                layer="validation",
                event_type=AuditEventType.VALIDATION,
            )
            raise

        report = session.report
        for warning in report.warnings:
            session.observability.warn("validation", "verification_warning", warning)
        mismatched = sum(1 for c in report.families if not c.matches)
        if mismatched:
            session.observability.collect_metric(
                "verification_mismatches_total", mismatched, {"severity": "warning"}
            )
        session.observability.log_audit(
            action="verification_passed" if report.passed else "verification_passed_with_warnings",
            entity_id=report.config_path,
            details=f"{len(report.families)} families, {len(report.artifacts)} artifacts",
            layer="validation",
            event_type=AuditEventType.VALIDATION,
        )

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _enter(self, session: BuildSession, target: BuildPhase):
        previous = session.phase
        event = session.machine.transition(target)
        now = time.monotonic()
        if previous != BuildPhase.IDLE:
            session.observability.collect_metric(
                "phase_duration_ms",
                (now - session._phase_started) * 1000.0,
                {"phase": previous.value},
            )
        session._phase_started = now

        session.stream.publish(event)
        session.observability.log_audit(
            action="phase_entered",
            entity_id=session.session_id.value,
            details=f"{previous.value} -> {target.value}",
            event_type=AuditEventType.STATE_CHANGE,
        )
        if target in PHASE_PROGRESS:
            self._progress(session, PHASE_PROGRESS[target])
        if session.persister is not None:
            session.persister.write_summary(session.summary())

    def _progress(self, session: BuildSession, percent: int):
        """Progress only moves forward within a session."""
        if percent <= session.progress:
            return
        session.progress = percent
        session.stream.publish(ProgressUpdate(
            session_id=session.session_id,
            phase=session.phase,
            percent=percent,
            timestamp=Timestamp.now(),
        ))

    @staticmethod
    def _check_cancel(cancel_event: asyncio.Event):
        if cancel_event.is_set():
            raise BuildCancelled("cancellation requested between phases")

    async def _close(self, session: BuildSession):
        await session.stream.close()
        if session.stream.listener_error is not None:
            session.observability.warn(
                "orchestrator",
                "listener_failed",
                f"event listener raised {session.stream.listener_error!r}; later events not delivered",
            )
        if session.stream.coalesced:
            session.observability.log_audit(
                action="progress_coalesced",
                entity_id=session.session_id.value,
                details=f"{session.stream.coalesced} updates replaced",
            )
        if session.persister is not None:
            session.persister.write_summary(session.summary())
            session.persister.close()


def _plain(value: object) -> object:
    return value.value if hasattr(value, "value") else value


def _describe_warning(entry: AuditLogEntry) -> str:
    details = entry.metadata_value("details")
    if details is None:
        details = ", ".join(f"{k}={v}" for k, v in entry.metadata)
    subject = f" {entry.entity_id}" if entry.entity_id else ""
    return f"{entry.layer}: {entry.action}{subject}: {details}"


__all__ = [
    'BuildOrchestrator',
    'BuildRequest',
    'BuildSession',
    'OrchestratorConfig',
    'PhaseStateMachine',
    'ProcessRunner',
    'RunnerConfig',
    'SourceFetcher',
    'ValidationConfig',
    'analyze_transitions',
]
