"""
kernforge: Surgical Configuration Enforcement Engine

This package makes a kernel build honor a resolved configuration even
though the build script regenerates, overwrites and auto-detects its
config several times along the way. Each layer communicates only through
explicit contracts, never through shared mutable state.

LAYER STRUCTURE:
================

1. RESOLUTION LAYER (resolution/)
   - Responsibility: Merge hardware facts, overrides and a profile preset
   - Allowed inputs: HardwareFacts, UserOverrides, ProfilePreset
   - Outputs: ConfigSpec (immutable, dense)
   - MUST NOT: Read files, detect hardware, drop a conflict silently

2. MODULE RECONCILIATION LAYER (modules/)
   - Responsibility: Compute the frozen module set
   - Allowed inputs: ConfigSpec, module facts, static catalogs
   - Outputs: ModuleSet or NO_FILTERING
   - MUST NOT: Guess when facts are missing, exclude essential drivers

3. ENFORCEMENT LAYER (enforcement/)
   - Responsibility: Instrument the build script, enforce the config file
   - Allowed inputs: pristine text, ConfigSpec, ModuleSet, write handle
   - Outputs: InstrumentedScript, files written through the handle
   - MUST NOT: Execute anything, write without a Patching lease

4. ORCHESTRATOR LAYER (orchestrator/)
   - Responsibility: Phase sequencing, external process, verification
   - Allowed inputs: BuildRequest, listener, cancel event
   - Outputs: BuildOutcome, BuildEvent stream
   - MUST NOT: Mutate files itself, retry, report cancellation as failure

5. OBSERVABILITY LAYER (observability/)
   - Responsibility: Audit trail, metrics, durable build log
   - Allowed inputs: Audit entries and metrics from every layer
   - Outputs: Reports, JSONL files under .kernforge/state/
   - MUST NOT: Influence any build decision

CONTRACTS (contracts/):
=======================
All inter-layer data structures are defined here.
Contracts are immutable and versioned.
"""

__version__ = "0.1.0"
