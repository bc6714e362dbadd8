"""
External Process Runner
=======================

Runs the build command and streams its output. Observes only: the runner
never touches the build script or the config file.

GUARANTEES:
===========
1. Every output line reaches on_line, in per-stream order, numbered by a
   single sequence shared by stdout and stderr
2. The child runs in its own process group; cancellation terminates the
   whole group (SIGTERM, then SIGKILL after the grace period)
3. A cancelled run raises BuildCancelled; a non-zero exit is reported,
   not raised, so the caller decides what it means
4. Output is always drained: no line length stalls the pipes, and if
   on_line raises, the process group is terminated and the error
   propagates
5. The process group never outlives run(), even when the awaiting task
   is itself cancelled
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple
import asyncio
import os
import re
import signal

from ..contracts.base import BuildCancelled, Error, ErrorCode, ExternalProcessFailure, SessionId, Timestamp
from ..contracts.events import LogLine, LogStream


DEFAULT_BUILD_COMMAND = ("makepkg", "--force", "--cleanbuild", "--noconfirm")

# Generous line limit: compiler diagnostics can be long. Longer lines
# are delivered in STREAM_LIMIT pieces.
STREAM_LIMIT = 1024 * 1024
READ_CHUNK = 64 * 1024


@dataclass
class RunnerConfig:
    """Configuration for the build process runner."""
    command: Tuple[str, ...] = DEFAULT_BUILD_COMMAND
    termination_grace_seconds: float = 10.0
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RunResult:
    exit_code: int
    line_count: int
    started_at: Timestamp
    finished_at: Timestamp

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


# =============================================================================
# PROGRESS PARSING
# =============================================================================

MILESTONES = (
    ("==> Retrieving sources", 5),
    ("==> Extracting sources", 10),
    ("==> Starting build()", 20),
    ("==> Starting package", 85),
    ("==> Packaging", 85),
    ("==> Creating package", 85),
)

RATIO_PATTERN = re.compile(r'\[\s*(\d+)/(\d+)\]')
PERCENT_PATTERN = re.compile(r'\[\s*(\d+)%\]')


def parse_progress(line: str) -> Optional[int]:
    """Percent complete implied by one output line, if any."""
    for marker, percent in MILESTONES:
        if marker in line:
            return percent

    match = RATIO_PATTERN.search(line)
    if match:
        current, total = int(match.group(1)), int(match.group(2))
        if total > 0:
            return min(100, current * 100 // total)

    match = PERCENT_PATTERN.search(line)
    if match:
        return min(100, int(match.group(1)))

    return None


# =============================================================================
# RUNNER
# =============================================================================

class ProcessRunner:
    """Spawns one build process per call to run()."""

    def __init__(self, config: Optional[RunnerConfig] = None):
        self._config = config or RunnerConfig()

    @property
    def command(self) -> Tuple[str, ...]:
        return self._config.command

    async def run(
        self,
        cwd: str,
        session_id: SessionId,
        on_line: Callable[[LogLine], None],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunResult:
        started_at = Timestamp.now()
        env = dict(os.environ)
        env.update(self._config.env)

        try:
            process = await asyncio.create_subprocess_exec(
                *self._config.command,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ExternalProcessFailure(Error.create(
                ErrorCode.PROCESS_SPAWN_FAILED,
                f"Could not start {self._config.command[0]}: {e}",
                command=" ".join(self._config.command),
            ))

        sequence = [0]

        def emit(raw: bytes, kind: LogStream):
            sequence[0] += 1
            on_line(LogLine(
                session_id=session_id,
                sequence=sequence[0],
                stream=kind,
                text=raw.decode("utf-8", errors="replace").rstrip("\r"),
                timestamp=Timestamp.now(),
            ))

        async def pump(stream: asyncio.StreamReader, kind: LogStream):
            buffer = bytearray()
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                buffer.extend(chunk)
                while True:
                    end = buffer.find(b"\n")
                    if end >= 0:
                        emit(bytes(buffer[:end]), kind)
                        del buffer[:end + 1]
                    elif len(buffer) >= STREAM_LIMIT:
                        # No newline in sight: hand the line over in pieces
                        emit(bytes(buffer[:STREAM_LIMIT]), kind)
                        del buffer[:STREAM_LIMIT]
                    else:
                        break
            if buffer:
                emit(bytes(buffer), kind)

        pumps = [
            asyncio.ensure_future(pump(process.stdout, LogStream.STDOUT)),
            asyncio.ensure_future(pump(process.stderr, LogStream.STDERR)),
        ]
        readers = asyncio.gather(*pumps)
        waiter = asyncio.ensure_future(process.wait())
        pending = {waiter, readers}
        canceller = None
        if cancel_event is not None:
            canceller = asyncio.ensure_future(cancel_event.wait())
            pending.add(canceller)

        cancelled = False
        try:
            while not waiter.done():
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if readers in done and readers.exception() is not None:
                    # Output can no longer be delivered; stop the build
                    await self._terminate(process)
                    break
                if canceller in done and not waiter.done():
                    cancelled = True
                    await self._terminate(process)
                    break
            await waiter
            await readers
        finally:
            if canceller is not None and not canceller.done():
                canceller.cancel()
            if process.returncode is None:
                await self._terminate(process)
            for task in pumps:
                if not task.done():
                    task.cancel()

        if cancelled:
            raise BuildCancelled(f"build process {process.pid} terminated on request")

        return RunResult(
            exit_code=process.returncode,
            line_count=sequence[0],
            started_at=started_at,
            finished_at=Timestamp.now(),
        )

    async def _terminate(self, process: asyncio.subprocess.Process):
        """SIGTERM the process group, SIGKILL it if it outlives the grace period."""
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(
                asyncio.shield(process.wait()),
                timeout=self._config.termination_grace_seconds,
            )
        except asyncio.TimeoutError:
            self._signal_group(process, signal.SIGKILL)
            await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals):
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
