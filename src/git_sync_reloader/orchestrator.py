"""The sync state machine.

``SyncOrchestrator`` sequences Fetch -> Diff -> Mirror -> Reload for every
trigger. The phase field of ``SyncState`` is the single-pipeline gate: the
caller that moves it out of Idle runs the pipeline on its own thread, and any
trigger arriving meanwhile only sets ``pending_trigger``. When a cycle ends
with the flag set, exactly one follow-up cycle runs.

Retry policy:

* Fetch and mirror failures back off and restart from Fetching, up to
  ``max_retries`` per cycle. The revision is not committed.
* Reload failures back off and retry the reload alone (the mirror is already
  correct), up to the trigger's ``max_attempts``. The mirror is never rolled
  back when reloading gives up.
"""

import datetime
import logging
import threading
import time
from dataclasses import replace
from pathlib import Path

from .config import SyncConfig
from .constants import APP_NAME
from .exceptions import FetchError, MirrorError
from .fetch import Fetcher
from .mirror import MirrorSyncer
from .models import CycleResult, MirrorResult, RepositorySnapshot, SyncPhase, SyncState
from .reload import ReloadTrigger
from .revision import RevisionStore, RevisionTracker

logger = logging.getLogger(APP_NAME)


class SyncOrchestrator:
    """Owns the sync state and runs sync cycles on behalf of trigger sources.

    Attributes:
        fetcher (Fetcher): Produces repository snapshots.
        mirror (MirrorSyncer): Applies snapshots to the target directory.
        tracker (RevisionTracker): Remembers the committed revision.
        reload (ReloadTrigger): Notifies the dependent process.
        target_root (Path): The mirror directory.
        settings (SyncConfig): Timeouts, retry ceiling and backoff parameters.
        store (RevisionStore | None): Optional persistence of committed revisions.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        mirror: MirrorSyncer,
        tracker: RevisionTracker,
        reload: ReloadTrigger,
        target_root: Path,
        settings: SyncConfig | None = None,
        store: RevisionStore | None = None,
    ):
        self.fetcher = fetcher
        self.mirror = mirror
        self.tracker = tracker
        self.reload = reload
        self.target_root = target_root
        self.settings = settings or SyncConfig()
        self.store = store

        self._cond = threading.Condition(threading.Lock())
        self._state = SyncState(current_revision=tracker.current)
        self._shutdown = threading.Event()

    # ------------------------------------------------------------------
    # Trigger entry point
    # ------------------------------------------------------------------

    def trigger(self, source: str = "manual") -> CycleResult | None:
        """Requests a check for upstream changes.

        If no pipeline is running, the calling thread runs one cycle (plus one
        coalesced follow-up if triggers arrived meanwhile) and gets the last
        cycle's result. Otherwise the request is folded into the pending flag.

        Args:
            source (str, optional): Label of the trigger source, for logs.

        Returns:
            CycleResult | None: The result of the last cycle run by this call,
            or None if the request was coalesced or rejected during shutdown.
        """
        with self._cond:
            if self._shutdown.is_set():
                logger.debug(f"TRIGGER ({source}) ignored: shutting down")
                return None
            if self._state.phase.is_busy:
                self._state.pending_trigger = True
                logger.debug(f"TRIGGER ({source}) coalesced: cycle in progress")
                return None
            self._state.phase = SyncPhase.FETCHING
            self._state.pending_trigger = False

        while True:
            try:
                result = self._run_cycle(source)
            except Exception as e:
                logger.exception(f"CYCLE ERROR ({source})")
                result = CycleResult(
                    phase=SyncPhase.FAILED,
                    previous_revision=self.tracker.current,
                    revision=self.tracker.current,
                    error=f"unexpected: {e}",
                )

            with self._cond:
                self._finish_cycle(result)
                rerun = self._state.pending_trigger and not self._shutdown.is_set()
                if rerun:
                    self._state.pending_trigger = False
                    self._state.phase = SyncPhase.FETCHING
                else:
                    self._cond.notify_all()

            if not rerun:
                return result
            source = "coalesced"

    def _finish_cycle(self, result: CycleResult) -> None:
        """Records the end of a cycle. Caller holds the lock."""
        self._state.phase = result.phase
        self._state.current_revision = self.tracker.current
        self._state.last_error = result.error
        self._state.last_cycle_at = datetime.datetime.now(datetime.timezone.utc)
        self._state.cycles += 1

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._cond:
            self._state.phase = phase

    def _run_cycle(self, source: str) -> CycleResult:
        previous = self.tracker.current
        logger.debug(f"CYCLE start ({source}), current revision {previous}")

        retries = 0
        while True:
            try:
                snapshot, result = self._fetch_and_mirror()
                break
            except (FetchError, MirrorError) as e:
                phase = "FETCH" if isinstance(e, FetchError) else "MIRROR"
                logger.warning(
                    f"{phase} ERROR (attempt {retries + 1}/{self.settings.max_retries + 1}): "
                    f"{e.describe()}"
                )
                if retries >= self.settings.max_retries:
                    logger.error(f"CYCLE FAILED: {phase.lower()} retries exhausted")
                    return self._failed(previous, e.describe())
                if not self._backoff(retries):
                    return self._failed(previous, "shutdown during backoff")
                retries += 1

        if snapshot is None:
            return CycleResult(
                phase=SyncPhase.IDLE, previous_revision=previous, revision=previous
            )

        self._commit(snapshot)

        if not result.changed:
            logger.info(
                f"SYNCED {snapshot.short_id}: content unchanged, reload skipped"
            )
            return CycleResult(
                phase=SyncPhase.IDLE,
                previous_revision=previous,
                revision=snapshot.revision_id,
            )

        logger.info(f"SYNCED {snapshot.short_id}: {result.applied} operations applied")
        error = self._reload(snapshot.revision_id)
        return CycleResult(
            phase=SyncPhase.FAILED if error else SyncPhase.IDLE,
            previous_revision=previous,
            revision=snapshot.revision_id,
            changed=True,
            reloaded=error is None,
            error=error,
        )

    def _fetch_and_mirror(self) -> tuple[RepositorySnapshot | None, MirrorResult | None]:
        """Runs the Fetching and Mirroring phases once.

        Returns:
            tuple: (None, None) when the fetched revision is already committed,
            otherwise the snapshot and the applied mirror result.
        """
        self._set_phase(SyncPhase.FETCHING)
        snapshot = self.fetcher.fetch_latest()
        if not self.tracker.should_sync(snapshot):
            logger.debug(f"UP TO DATE at {snapshot.short_id}")
            return None, None

        self._set_phase(SyncPhase.MIRRORING)
        plan = self.mirror.compute_plan(snapshot.root_path, self.target_root)
        logger.info(f"MIRROR {snapshot.short_id}: {plan.summary()}")
        deadline = None
        if self.settings.mirror_timeout > 0:
            deadline = time.monotonic() + self.settings.mirror_timeout
        return snapshot, self.mirror.apply_plan(plan, deadline=deadline)

    def _commit(self, snapshot: RepositorySnapshot) -> None:
        self.tracker.commit(snapshot)
        with self._cond:
            self._state.current_revision = snapshot.revision_id
        if self.store is not None:
            self.store.save(snapshot.revision_id)

    def _reload(self, revision: str) -> str | None:
        """Runs the Reloading phase with retries.

        Returns:
            str | None: None on success, otherwise the last error description.
        """
        self.reload.reset()
        while True:
            self._set_phase(SyncPhase.RELOADING)
            outcome = self.reload.fire(revision)
            if outcome.succeeded:
                return None
            if self.reload.exhausted:
                logger.error(
                    f"RELOAD FAILED after {outcome.attempt} attempts: {outcome.last_error}. "
                    "Mirror left at the new revision."
                )
                return outcome.last_error
            if not self._backoff(outcome.attempt - 1):
                return "shutdown during backoff"

    def _backoff(self, attempt: int) -> bool:
        """Waits before a retry.

        Returns:
            bool: False if shutdown interrupted the wait.
        """
        self._set_phase(SyncPhase.BACKOFF)
        delay = self.settings.backoff_delay(attempt)
        logger.info(f"BACKOFF {delay:.1f}s before retry")
        return not self._shutdown.wait(delay)

    def _failed(self, previous: str | None, error: str) -> CycleResult:
        return CycleResult(
            phase=SyncPhase.FAILED,
            previous_revision=previous,
            revision=self.tracker.current,
            error=error,
        )

    # ------------------------------------------------------------------
    # Lifecycle / observability
    # ------------------------------------------------------------------

    def status(self) -> SyncState:
        """Returns a copy of the current sync state."""
        with self._cond:
            return replace(self._state)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def shutdown(self) -> None:
        """Stops accepting triggers. The in-flight phase is allowed to finish."""
        if not self._shutdown.is_set():
            logger.info("SHUTDOWN requested")
        self._shutdown.set()

    def wait_shutdown(self, timeout: float | None = None) -> bool:
        """Blocks until shutdown is requested or *timeout* elapses."""
        return self._shutdown.wait(timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Blocks until no pipeline is running.

        Returns:
            bool: False if the timeout elapsed first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._state.phase.is_busy, timeout)
