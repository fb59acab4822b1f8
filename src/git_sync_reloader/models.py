"""Data structures shared by the sync engine components."""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


@dataclass(frozen=True)
class RepositorySnapshot:
    """A fetched repository state.

    Attributes:
        revision_id (str): Opaque revision identifier (usually a commit sha).
        root_path (Path): The fetched working tree to mirror from.
    """

    revision_id: str
    root_path: Path

    @property
    def short_id(self) -> str:
        return self.revision_id[:7]


class SyncPhase(str, Enum):
    """Phases of the sync state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    MIRRORING = "mirroring"
    RELOADING = "reloading"
    BACKOFF = "backoff"
    FAILED = "failed"

    @property
    def is_busy(self) -> bool:
        """True while a pipeline holds the gate."""
        return self not in (SyncPhase.IDLE, SyncPhase.FAILED)


@dataclass
class SyncState:
    """Process-wide sync state, owned and mutated only by the orchestrator.

    Attributes:
        current_revision (str | None): Last committed revision, None if unknown.
        phase (SyncPhase): The active phase.
        pending_trigger (bool): Whether a trigger arrived while busy.
        last_error (str | None): Description of the most recent failure.
        last_cycle_at (datetime.datetime | None): When the last cycle ended.
        cycles (int): Number of completed cycles.
    """

    current_revision: str | None = None
    phase: SyncPhase = SyncPhase.IDLE
    pending_trigger: bool = False
    last_error: str | None = None
    last_cycle_at: datetime.datetime | None = None
    cycles: int = 0

    def as_dict(self) -> dict:
        return {
            "current_revision": self.current_revision,
            "phase": self.phase.value,
            "pending_trigger": self.pending_trigger,
            "last_error": self.last_error,
            "last_cycle_at": (
                self.last_cycle_at.isoformat() if self.last_cycle_at else None
            ),
            "cycles": self.cycles,
        }


@dataclass(frozen=True)
class MirrorOperation:
    """A single filesystem operation against the target tree.

    Attributes:
        kind (str): One of 'create', 'update', 'delete'.
        path (str): Path relative to the target root (forward slashes).
        entry_type (str): One of 'file', 'dir', 'symlink'.
        source (Path | None): Absolute source path, None for deletes.
        mode (int | None): Permission bits to apply to files.
    """

    kind: str
    path: str
    entry_type: str
    source: Path | None = None
    mode: int | None = None


@dataclass
class MirrorPlan:
    """Ordered operations making a target tree match a source tree."""

    source_root: Path
    target_root: Path
    operations: list[MirrorOperation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    @property
    def total(self) -> int:
        return len(self.operations)

    def count(self, kind: str) -> int:
        return sum(1 for op in self.operations if op.kind == kind)

    def summary(self) -> str:
        """One-line +N ~N -N summary."""
        parts = []
        if added := self.count("create"):
            parts.append(f"+{added}")
        if updated := self.count("update"):
            parts.append(f"~{updated}")
        if deleted := self.count("delete"):
            parts.append(f"-{deleted}")
        return " ".join(parts) if parts else "no changes"


@dataclass
class MirrorResult:
    """Outcome of a fully applied plan."""

    changed: bool
    applied: int = 0


@dataclass
class ReloadOutcome:
    """Outcome of one reload attempt.

    Attributes:
        succeeded (bool): Whether the dependent process was notified.
        attempt (int): 1-based attempt number within the current sequence.
        last_error (str | None): Error description when the attempt failed.
    """

    succeeded: bool
    attempt: int
    last_error: str | None = None


@dataclass
class CycleResult:
    """Summary of one sync cycle.

    Attributes:
        phase (SyncPhase): IDLE for a completed cycle, FAILED otherwise.
        previous_revision (str | None): Committed revision before the cycle.
        revision (str | None): Committed revision after the cycle.
        changed (bool): Whether the mirror was modified.
        reloaded (bool): Whether the reload action succeeded.
        error (str | None): The error that ended a failed cycle.
    """

    phase: SyncPhase
    previous_revision: str | None = None
    revision: str | None = None
    changed: bool = False
    reloaded: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.phase is SyncPhase.FAILED
