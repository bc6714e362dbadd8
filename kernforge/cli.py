"""
kernforge command line.

Usage:
    python -m kernforge.cli --workspace ./linux resolve --profile gaming
    python -m kernforge.cli --workspace ./linux plan --set optimization=full
    python -m kernforge.cli --workspace ./linux build --profile gaming
    python -m kernforge.cli --workspace ./linux verify
    python -m kernforge.cli --workspace ./linux status
"""

import argparse
import asyncio
import json
import os
import shlex
import signal
import sys
from typing import Dict, Optional

from .contracts.base import KernforgeError
from .contracts.configuration import ConfigSpec, GpuVendor, HardwareFacts, Setting, describe_value
from .contracts.events import BuildEvent, BuildPhase, LogLine, PhaseChanged, ProgressUpdate
from .enforcement import EnforcementEngine
from .modules import ModuleReconciler, ReconcilerConfig
from .observability.persistence import read_summary
from .orchestrator import BuildOrchestrator, BuildRequest, OrchestratorConfig
from .orchestrator.hardware import detect_hardware
from .orchestrator.state import analyze_transitions
from .orchestrator.validation import BuildValidator
from .orchestrator.workspace import Workspace
from .resolution import ResolutionEngine, get_preset


EXIT_FAILED = 1
EXIT_CANCELLED = 130


def parse_overrides(pairs) -> Dict[Setting, object]:
    overrides: Dict[Setting, object] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise SystemExit(f"[!] Override must look like key=value: {pair}")
        try:
            overrides[Setting(key.strip().lower())] = value.strip()
        except ValueError:
            known = ", ".join(s.value for s in Setting)
            raise SystemExit(f"[!] Unknown setting {key!r} (known: {known})")
    return overrides


def hardware_from_args(args) -> HardwareFacts:
    if args.no_detect:
        facts = HardwareFacts()
    else:
        facts = detect_hardware(args.workspace)
    if args.gpu:
        facts = HardwareFacts(
            gpu_vendor=GpuVendor(args.gpu),
            cpu_cores=facts.cpu_cores,
            ram_gb=facts.ram_gb,
            disk_free_gb=facts.disk_free_gb,
        )
    return facts


def resolve_from_args(args) -> ConfigSpec:
    engine = ResolutionEngine()
    spec = engine.resolve(
        hardware_facts=hardware_from_args(args),
        overrides=parse_overrides(args.set),
        profile=args.profile,
    )
    for entry in engine.get_audit_log():
        if entry.action == "override_ignored":
            print(f"[!] Override for {entry.entity_id} ignored: "
                  f"kept {entry.metadata_value('kept')}, wanted {entry.metadata_value('ignored')}")
    return spec


def reconcile_from_args(args, spec: ConfigSpec):
    reconciler = ModuleReconciler(ReconcilerConfig(
        module_facts_path=args.module_facts,
        symbol_table_path=args.symbol_table,
    ))
    module_set = reconciler.reconcile(spec)
    for warning in reconciler.warnings:
        print(f"[!] {warning}")
    return module_set


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_resolve(args):
    spec = resolve_from_args(args)
    print(f"[*] Profile: {spec.profile.value}  spec {spec.spec_hash[:16]}")
    for resolved in spec.settings:
        print(f"    {resolved.setting.value:<22} {describe_value(resolved.value):<12} "
              f"({resolved.provenance.value})")
    print("[*] Families:")
    for selection in spec.families:
        state = "managed" if selection.managed else "left to kconfig"
        print(f"    {selection.family.name} [{state}]")
        for line in selection.render_lines():
            print(f"      {line}")
    if spec.make_flags:
        print(f"[*] make flags: {' '.join(spec.make_flags)}")


def cmd_plan(args):
    spec = resolve_from_args(args)
    module_set = reconcile_from_args(args, spec)
    workspace = Workspace(args.workspace)

    path = workspace.pristine_script_path
    if not os.path.isfile(path):
        path = workspace.script_path
    if not os.path.isfile(path):
        print(f"[!] No PKGBUILD in {workspace.root}")
        sys.exit(EXIT_FAILED)
    with open(path, "r", encoding="utf-8") as f:
        pristine = f.read()

    result = EnforcementEngine().instrument(pristine, spec, module_set)
    print(f"[*] {path}: {len(result.insertions)} checkpoint(s)")
    for insertion in result.insertions:
        print(f"    {insertion.checkpoint_id:<20} {insertion.stage}() line {insertion.anchor_line}: "
              f"{insertion.anchor_text}")
    for checkpoint_id in result.skipped_checkpoints:
        print(f"    {checkpoint_id:<20} (no anchor)")
    if module_set.is_no_filtering:
        print("[*] Module filtering: off")
    else:
        print(f"[*] Module filtering: {len(module_set)} modules frozen")
        if module_set.unresolved:
            print(f"    resolved from the kernel tree at build time: {', '.join(module_set.unresolved)}")
    if args.show:
        print(result.text, end="")


def _print_event(event: BuildEvent):
    if isinstance(event, PhaseChanged):
        print(f"[*] {event.previous.value} -> {event.current.value}")
    elif isinstance(event, LogLine):
        print(event.text)
    elif isinstance(event, ProgressUpdate):
        print(f"[*] progress {event.percent}%")


def cmd_build(args):
    if args.request:
        with open(args.request, "r", encoding="utf-8") as f:
            request = BuildRequest.from_json(f.read())
    else:
        request = BuildRequest(
            workspace=args.workspace,
            profile=get_preset(args.profile).profile,
            overrides=tuple(sorted(parse_overrides(args.set).items(), key=lambda kv: kv[0].value)),
            hardware=HardwareFacts() if args.no_detect else None,
            module_facts_path=args.module_facts,
            symbol_table_path=args.symbol_table,
            variant=args.variant,
        )

    config = OrchestratorConfig()
    if args.command_line:
        config.runner.command = tuple(shlex.split(args.command_line))
    orchestrator = BuildOrchestrator(config)

    async def run():
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        try:
            return await orchestrator.run(request, listener=_print_event, cancel_event=cancel_event)
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    outcome = asyncio.run(run())
    for warning in outcome.warnings:
        print(f"[!] {warning}")
    if outcome.final_phase == BuildPhase.CANCELLED:
        print("[!] Build cancelled")
        sys.exit(EXIT_CANCELLED)
    if not outcome.succeeded:
        print(f"[!] Build failed: {outcome.error.code.name}: {outcome.error.message}")
        sys.exit(EXIT_FAILED)
    print(f"[*] Build completed in {outcome.duration_seconds:.0f}s")
    for artifact in outcome.artifacts:
        print(f"    {artifact}")


def cmd_verify(args):
    spec = resolve_from_args(args)
    module_set = reconcile_from_args(args, spec)
    report = BuildValidator().verify(Workspace(args.workspace).root, spec, module_set, args.config)
    print(f"[*] Verified {report.config_path}")
    for check in report.families:
        mark = "ok" if check.matches else "MISMATCH"
        print(f"    {check.family:<18} {mark}")
    for warning in report.warnings:
        print(f"[!] {warning}")
    if not report.passed:
        sys.exit(EXIT_FAILED)


def cmd_status(args):
    summary = read_summary(Workspace(args.workspace).root)
    if summary is None:
        print("[!] No build session recorded")
        sys.exit(EXIT_FAILED)
    print(json.dumps(summary, indent=2))


def cmd_phases(args):
    report = analyze_transitions()
    print(f"[*] {report.phase_count} phases, {report.transition_count} transitions")
    print(f"    happy path: {' -> '.join(p.value for p in report.happy_path)}")
    print(f"    every phase reaches a terminal state: {report.all_reach_terminal}")
    print(f"    cancellation reachable from every live phase: {report.cancel_reachable_everywhere}")


def _add_resolution_args(parser: argparse.ArgumentParser):
    parser.add_argument("--profile", default="generic", help="Profile preset")
    parser.add_argument("--set", action="append", metavar="KEY=VALUE", help="Override a setting")
    parser.add_argument("--gpu", choices=[v.value for v in GpuVendor], help="GPU vendor fact")
    parser.add_argument("--no-detect", action="store_true", help="Skip host hardware detection")


def _add_module_args(parser: argparse.ArgumentParser):
    parser.add_argument("--module-facts", help="Module database (default ~/.config/modprobed.db)")
    parser.add_argument("--symbol-table", help="TAB-separated module -> CONFIG symbol table")


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(description="Kernel build configuration enforcement")
    parser.add_argument("--workspace", default=".", help="Directory holding the PKGBUILD")

    subparsers = parser.add_subparsers(dest="command")

    resolve_parser = subparsers.add_parser("resolve", help="Show the resolved configuration")
    _add_resolution_args(resolve_parser)

    plan_parser = subparsers.add_parser("plan", help="Show where enforcement would be inserted")
    _add_resolution_args(plan_parser)
    _add_module_args(plan_parser)
    plan_parser.add_argument("--show", action="store_true", help="Print the instrumented script")

    build_parser = subparsers.add_parser("build", help="Run a full build session")
    _add_resolution_args(build_parser)
    _add_module_args(build_parser)
    build_parser.add_argument("--request", help="JSON build request (replaces the flags)")
    build_parser.add_argument("--variant", help="Kernel variant to fetch when no PKGBUILD exists")
    build_parser.add_argument("--command-line", help="Build command, shell-quoted (default makepkg)")

    verify_parser = subparsers.add_parser("verify", help="Check a finished build's config")
    _add_resolution_args(verify_parser)
    _add_module_args(verify_parser)
    verify_parser.add_argument("--config", help="Config file to check (default src/*/.config)")

    subparsers.add_parser("status", help="Print the last session summary")
    subparsers.add_parser("phases", help="Describe the build phase graph")

    args = parser.parse_args(argv)

    commands = {
        "resolve": cmd_resolve,
        "plan": cmd_plan,
        "build": cmd_build,
        "verify": cmd_verify,
        "status": cmd_status,
        "phases": cmd_phases,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except KernforgeError as e:
        print(f"[!] {e.code.name}: {e.error.message}")
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
