"""
Guarded file writes.

A ScriptWriteHandle is the only object in the package that mutates the
build script or the config file. It can only be acquired with a live
PhaseLease for the PATCHING phase, and every write through it checks the
lease again, so a handle kept past Patching is useless.

WRITE PROTOCOL:
===============
1. First mutation of a target: snapshot its bytes into a Backup
2. Write the new content to a temp file in the same directory, fsync
3. os.replace() the temp file over the target
4. On any OSError: remove the temp file, restore every Backup this
   handle took (temp file + rename again), raise FileWriteFailure
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional
import os
import stat

from ..contracts.base import (
    CapabilityError, ContentSignature, Error, ErrorCode, FileWriteFailure, SessionId, Timestamp,
)
from ..contracts.events import BuildPhase


_ISSUER = object()


class PhaseLease:
    """
    Proof that the holder is running inside a given build phase.

    Issued by the orchestrator's state machine on entering a phase and
    revoked when the phase is left. There is no public constructor: a
    lease only comes from PhaseStateMachine.lease.
    """

    def __init__(self, phase: BuildPhase, session_id: SessionId, issuer: object = None):
        if issuer is not _ISSUER:
            raise TypeError("PhaseLease is issued by the phase state machine only")
        self._phase = phase
        self._session_id = session_id
        self._live = True

    @property
    def phase(self) -> BuildPhase:
        return self._phase

    @property
    def session_id(self) -> SessionId:
        return self._session_id

    @property
    def is_live(self) -> bool:
        return self._live

    def revoke(self):
        self._live = False


def _issue_lease(phase: BuildPhase, session_id: SessionId) -> PhaseLease:
    """For PhaseStateMachine.transition(); nothing else issues leases."""
    return PhaseLease(phase, session_id, _ISSUER)


@dataclass(frozen=True)
class Backup:
    """Snapshot of a target taken before its first mutation."""
    path: str
    content: Optional[bytes]  # None: the file did not exist
    signature: Optional[ContentSignature]
    taken_at: Timestamp


@dataclass(frozen=True)
class WriteReceipt:
    path: str
    signature: ContentSignature
    written_at: Timestamp


class ScriptWriteHandle:
    """Write capability for the Patching phase."""

    def __init__(self, lease: PhaseLease):
        self._lease = lease
        self._backups: Dict[str, Backup] = {}
        self._receipts: List[WriteReceipt] = []

    @staticmethod
    def acquire(lease: Optional[PhaseLease]) -> ScriptWriteHandle:
        if lease is None or lease.phase != BuildPhase.PATCHING or not lease.is_live:
            phase = lease.phase.value if lease is not None else "none"
            raise CapabilityError(Error.create(
                ErrorCode.WRITE_CAPABILITY_DENIED,
                f"Write capability requires a live patching lease (got {phase})",
                phase=phase,
            ))
        return ScriptWriteHandle(lease)

    @property
    def session_id(self) -> SessionId:
        return self._lease.session_id

    @property
    def backups(self) -> Dict[str, Backup]:
        return dict(self._backups)

    @property
    def receipts(self) -> List[WriteReceipt]:
        return list(self._receipts)

    def write_text(self, path: str, content: str) -> WriteReceipt:
        self._check_live(path)
        path = os.path.abspath(path)
        payload = content.encode("utf-8")
        tmp_path = self._tmp_path(path)

        try:
            if path not in self._backups:
                self._backups[path] = self._take_backup(path)
            mode = self._existing_mode(path)
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            if mode is not None:
                os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except OSError as e:
            self._discard(tmp_path)
            try:
                self.restore_all()
            except OSError as restore_error:
                raise FileWriteFailure(Error.create(
                    ErrorCode.FILE_WRITE_FAILED,
                    f"Write to {path} failed: {e}; restoring backups also failed: {restore_error}",
                    path=path,
                ))
            raise FileWriteFailure(Error.create(
                ErrorCode.FILE_WRITE_FAILED,
                f"Write to {path} failed: {e}; backups restored",
                path=path,
            ))

        receipt = WriteReceipt(
            path=path,
            signature=ContentSignature.compute(content),
            written_at=Timestamp.now(),
        )
        self._receipts.append(receipt)
        return receipt

    def restore_all(self):
        """Put every backed-up target back byte for byte, by the same temp-and-rename as writes."""
        for path, backup in self._backups.items():
            if backup.content is None:
                self._discard(path)
                continue
            if self._holds(path, backup.content):
                continue
            tmp_path = self._tmp_path(path)
            mode = self._existing_mode(path)
            try:
                with open(tmp_path, "wb") as f:
                    f.write(backup.content)
                    f.flush()
                    os.fsync(f.fileno())
                if mode is not None:
                    os.chmod(tmp_path, mode)
                os.replace(tmp_path, path)
            finally:
                self._discard(tmp_path)

    def _check_live(self, path: str):
        if not self._lease.is_live or self._lease.phase != BuildPhase.PATCHING:
            raise CapabilityError(Error.create(
                ErrorCode.WRITE_CAPABILITY_DENIED,
                f"Patching lease revoked; refusing to write {path}",
                path=path,
            ))

    @staticmethod
    def _take_backup(path: str) -> Backup:
        if not os.path.exists(path):
            return Backup(path=path, content=None, signature=None, taken_at=Timestamp.now())
        with open(path, "rb") as f:
            content = f.read()
        return Backup(
            path=path,
            content=content,
            signature=ContentSignature.compute(content.decode("utf-8", errors="replace")),
            taken_at=Timestamp.now(),
        )

    @staticmethod
    def _holds(path: str, content: bytes) -> bool:
        if not os.path.isfile(path):
            return False
        with open(path, "rb") as f:
            return f.read() == content

    @staticmethod
    def _tmp_path(path: str) -> str:
        return os.path.join(os.path.dirname(path), f".{os.path.basename(path)}.kernforge.tmp")

    @staticmethod
    def _existing_mode(path: str) -> Optional[int]:
        if not os.path.exists(path):
            return None
        return stat.S_IMODE(os.stat(path).st_mode)

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            os.remove(path)
