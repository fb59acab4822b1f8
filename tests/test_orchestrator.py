"""Tests for the sync state machine: sequencing, retries, coalescing and shutdown."""

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import FakeFetcher, read_tree

from git_sync_reloader import mirror
from git_sync_reloader.config import SyncConfig
from git_sync_reloader.exceptions import FetchError, ReloadError
from git_sync_reloader.mirror import MirrorSyncer
from git_sync_reloader.models import RepositorySnapshot, SyncPhase
from git_sync_reloader.orchestrator import SyncOrchestrator
from git_sync_reloader.reload import Notifier, ReloadTrigger
from git_sync_reloader.revision import RevisionStore, RevisionTracker


class RecordingNotifier(Notifier):
    """Records notified revisions; fails the first *failures* calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[str] = []

    def notify(self, revision: str) -> None:
        self.calls.append(revision)
        if len(self.calls) <= self.failures:
            raise ReloadError("target not responding", kind="http")


class BlockingFetcher:
    """Blocks its first fetch until released, so tests can trigger mid-cycle."""

    def __init__(self, *results):
        self.inner = FakeFetcher(*results)
        self.started = threading.Event()
        self.release = threading.Event()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return self.inner.calls

    def fetch_latest(self) -> RepositorySnapshot:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if not self.started.is_set():
                self.started.set()
                assert self.release.wait(5)
            return self.inner.fetch_latest()
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def target(tmp_path: Path) -> Path:
    return tmp_path / "target"


@pytest.fixture
def make_orchestrator(target: Path):
    def _make(
        fetcher,
        notifier: Notifier | None = None,
        initial: str | None = None,
        max_retries: int = 3,
        max_attempts: int = 3,
        store: RevisionStore | None = None,
    ) -> SyncOrchestrator:
        return SyncOrchestrator(
            fetcher=fetcher,
            mirror=MirrorSyncer(),
            tracker=RevisionTracker(initial),
            reload=ReloadTrigger(notifier or RecordingNotifier(), max_attempts),
            target_root=target,
            settings=SyncConfig(backoff_base=0, max_retries=max_retries),
            store=store,
        )

    return _make


# --- Happy path ---


def test_initial_sync_mirrors_and_reloads(tree_factory, make_orchestrator, target) -> None:
    """Verifies that a first run into an empty target mirrors, commits and reloads once."""
    notifier = RecordingNotifier()
    orch = make_orchestrator(
        FakeFetcher(tree_factory("r1", "r1", {"a.txt": "hello"})), notifier
    )

    result = orch.trigger("test")

    assert read_tree(target) == {"a.txt": "hello"}
    assert result.phase is SyncPhase.IDLE
    assert (result.previous_revision, result.revision) == (None, "r1")
    assert result.changed and result.reloaded
    assert orch.tracker.current == "r1"
    assert notifier.calls == ["r1"]


def test_new_revision_updates_and_deletes(
    tree_factory, make_orchestrator, target
) -> None:
    """Verifies that moving from r1 to r2 updates changed files and removes stale ones."""
    notifier = RecordingNotifier()
    fetcher = FakeFetcher(
        tree_factory("r1", "r1", {"a.txt": "hello", "b.txt": "x"}),
        tree_factory("r2", "r2", {"a.txt": "world"}),
    )
    orch = make_orchestrator(fetcher, notifier)

    orch.trigger()
    result = orch.trigger()

    assert read_tree(target) == {"a.txt": "world"}
    assert result.revision == "r2"
    assert notifier.calls == ["r1", "r2"]


def test_same_revision_does_nothing(tree_factory, make_orchestrator, target) -> None:
    """Verifies that an already-committed revision skips mirroring and reload."""
    notifier = RecordingNotifier()
    orch = make_orchestrator(
        FakeFetcher(tree_factory("r1", "r1", {"a.txt": "hello"})),
        notifier,
        initial="r1",
    )

    result = orch.trigger()

    assert result.phase is SyncPhase.IDLE
    assert not result.changed
    assert not target.exists()
    assert notifier.calls == []


def test_new_revision_with_identical_content_skips_reload(
    tree_factory, make_orchestrator, target
) -> None:
    """Verifies that a new revision is committed but the reload is skipped when no file changed."""
    notifier = RecordingNotifier()
    fetcher = FakeFetcher(
        tree_factory("r1", "r1", {"a.txt": "same"}),
        tree_factory("r2", "r2", {"a.txt": "same"}),
    )
    orch = make_orchestrator(fetcher, notifier)

    orch.trigger()
    result = orch.trigger()

    assert result.revision == "r2"
    assert not result.changed
    assert orch.tracker.current == "r2"
    assert notifier.calls == ["r1"]


def test_committed_revision_is_persisted(
    tree_factory, make_orchestrator, tmp_path: Path
) -> None:
    store = RevisionStore(tmp_path / "state" / "revision.json")
    orch = make_orchestrator(
        FakeFetcher(tree_factory("r1", "r1", {"a.txt": "1"})), store=store
    )

    orch.trigger()

    assert store.load() == "r1"


def test_status_reports_last_cycle(tree_factory, make_orchestrator) -> None:
    orch = make_orchestrator(FakeFetcher(tree_factory("r1", "r1", {"a.txt": "1"})))
    assert orch.status().cycles == 0

    orch.trigger()
    state = orch.status()

    assert state.phase is SyncPhase.IDLE
    assert state.current_revision == "r1"
    assert state.cycles == 1
    assert state.last_cycle_at is not None
    assert state.last_error is None
    assert orch.wait_idle(timeout=1)


# --- Fetch / mirror failures ---


def test_fetch_failure_is_retried(tree_factory, make_orchestrator, target) -> None:
    fetcher = FakeFetcher(
        FetchError("connection reset"), tree_factory("r1", "r1", {"a.txt": "1"})
    )
    orch = make_orchestrator(fetcher, max_retries=1)

    result = orch.trigger()

    assert fetcher.calls == 2
    assert result.revision == "r1"
    assert read_tree(target) == {"a.txt": "1"}


def test_fetch_retries_exhausted(
    make_orchestrator, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that a cycle fails after max_retries and keeps the previous revision."""
    notifier = RecordingNotifier()
    fetcher = FakeFetcher(FetchError("unreachable", kind="transport"))
    orch = make_orchestrator(fetcher, notifier, initial="r0", max_retries=2)

    result = orch.trigger()

    assert fetcher.calls == 3
    assert result.failed
    assert result.error == "transport: unreachable"
    assert orch.tracker.current == "r0"
    assert notifier.calls == []
    assert orch.status().phase is SyncPhase.FAILED
    assert orch.status().last_error == "transport: unreachable"
    assert "fetch retries exhausted" in caplog.text


def test_mirror_failure_mid_plan_is_retried(
    tree_factory, make_orchestrator, target, mocker: MagicMock
) -> None:
    """Verifies that a failure on the 2nd of 3 writes keeps r1 until a retry completes r2."""
    notifier = RecordingNotifier()
    fetcher = FakeFetcher(
        tree_factory("r1", "r1", {"a.txt": "1", "b.txt": "1", "c.txt": "1"}),
        tree_factory("r2", "r2", {"a.txt": "2", "b.txt": "2", "c.txt": "2"}),
    )
    orch = make_orchestrator(fetcher, notifier)
    orch.trigger()

    real_write = mirror._write_file
    failed = []
    seen_during_failure = []
    phase_during_failure = []

    def flaky(source: Path, dest: Path, mode: int | None) -> None:
        if dest.name == "b.txt" and not failed:
            failed.append(dest)
            seen_during_failure.append(orch.tracker.current)
            phase_during_failure.append(orch.status().phase)
            raise OSError(5, "Input/output error", str(dest))
        real_write(source, dest, mode)

    mocker.patch("git_sync_reloader.mirror._write_file", side_effect=flaky)
    phases = mocker.spy(orch, "_set_phase")

    result = orch.trigger()

    assert seen_during_failure == ["r1"]
    assert phase_during_failure == [SyncPhase.MIRRORING]
    assert [c.args[0] for c in phases.call_args_list] == [
        SyncPhase.FETCHING,
        SyncPhase.MIRRORING,
        SyncPhase.BACKOFF,
        SyncPhase.FETCHING,
        SyncPhase.MIRRORING,
        SyncPhase.RELOADING,
    ]
    assert result.revision == "r2"
    assert read_tree(target) == {"a.txt": "2", "b.txt": "2", "c.txt": "2"}
    assert notifier.calls == ["r1", "r2"]


def test_mirror_failure_exhausted_keeps_previous_revision(
    tree_factory, make_orchestrator, target, mocker: MagicMock
) -> None:
    notifier = RecordingNotifier()
    fetcher = FakeFetcher(
        tree_factory("r1", "r1", {"a.txt": "1"}),
        tree_factory("r2", "r2", {"a.txt": "2", "b.txt": "2"}),
    )
    orch = make_orchestrator(fetcher, notifier, max_retries=0)
    orch.trigger()
    mocker.patch(
        "git_sync_reloader.mirror._write_file",
        side_effect=PermissionError(13, "Permission denied"),
    )

    result = orch.trigger()

    assert result.failed
    assert result.error.startswith("permission (a.txt)")
    assert orch.tracker.current == "r1"
    assert notifier.calls == ["r1"]


def test_unexpected_error_fails_cycle_and_releases_gate(
    tree_factory, make_orchestrator
) -> None:
    fetcher = FakeFetcher(
        RuntimeError("boom"), tree_factory("r1", "r1", {"a.txt": "1"})
    )
    orch = make_orchestrator(fetcher)

    first = orch.trigger()
    second = orch.trigger()

    assert first.failed
    assert "boom" in first.error
    assert second.revision == "r1"


# --- Reload failures ---


def test_reload_failure_is_retried(tree_factory, make_orchestrator, mocker: MagicMock) -> None:
    """Verifies that only the reload is retried after a reload failure."""
    notifier = RecordingNotifier(failures=1)
    orch = make_orchestrator(
        FakeFetcher(tree_factory("r1", "r1", {"a.txt": "1"})), notifier
    )
    phases = mocker.spy(orch, "_set_phase")

    result = orch.trigger()

    assert result.reloaded
    assert [c.args[0] for c in phases.call_args_list] == [
        SyncPhase.FETCHING,
        SyncPhase.MIRRORING,
        SyncPhase.RELOADING,
        SyncPhase.BACKOFF,
        SyncPhase.RELOADING,
    ]
    assert notifier.calls == ["r1", "r1"]


def test_reload_exhausted_keeps_mirror_and_revision(
    tree_factory, make_orchestrator, target
) -> None:
    """Verifies that a failed reload neither rolls back the mirror nor uncommits the revision."""
    notifier = RecordingNotifier(failures=10)
    orch = make_orchestrator(
        FakeFetcher(tree_factory("r1", "r1", {"a.txt": "1"})),
        notifier,
        max_attempts=2,
    )

    result = orch.trigger()

    assert result.failed
    assert result.changed and not result.reloaded
    assert result.error == "http: target not responding"
    assert orch.tracker.current == "r1"
    assert read_tree(target) == {"a.txt": "1"}
    assert notifier.calls == ["r1", "r1"]


def test_failed_reload_is_not_repeated_for_same_revision(
    tree_factory, make_orchestrator
) -> None:
    notifier = RecordingNotifier(failures=10)
    orch = make_orchestrator(
        FakeFetcher(tree_factory("r1", "r1", {"a.txt": "1"})),
        notifier,
        max_attempts=1,
    )

    orch.trigger()
    result = orch.trigger()

    assert result.phase is SyncPhase.IDLE
    assert notifier.calls == ["r1"]


# --- Concurrency ---


def _start_blocked_cycle(orch: SyncOrchestrator, fetcher: BlockingFetcher):
    results = []
    worker = threading.Thread(target=lambda: results.append(orch.trigger("first")))
    worker.start()
    assert fetcher.started.wait(5)
    return worker, results


def test_triggers_during_cycle_coalesce_into_one_rerun(
    tree_factory, make_orchestrator
) -> None:
    """Verifies that N triggers during a cycle produce exactly one follow-up cycle."""
    fetcher = BlockingFetcher(tree_factory("r1", "r1", {"a.txt": "1"}))
    orch = make_orchestrator(fetcher)
    worker, results = _start_blocked_cycle(orch, fetcher)

    others = [orch.trigger("webhook") for _ in range(5)]
    assert others == [None] * 5
    assert orch.status().pending_trigger is True
    assert orch.status().phase.is_busy

    fetcher.release.set()
    worker.join(5)

    assert fetcher.calls == 2
    assert orch.status().pending_trigger is False
    assert orch.status().cycles == 2
    assert results[0].phase is SyncPhase.IDLE


def test_only_one_pipeline_runs_at_a_time(tree_factory, make_orchestrator) -> None:
    fetcher = BlockingFetcher(tree_factory("r1", "r1", {"a.txt": "1"}))
    orch = make_orchestrator(fetcher)
    worker, _ = _start_blocked_cycle(orch, fetcher)

    threads = [threading.Thread(target=orch.trigger, args=("timer",)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)
    fetcher.release.set()
    worker.join(5)

    assert fetcher.max_active == 1
    assert fetcher.calls == 2


def test_pending_trigger_runs_after_failed_cycle(
    tree_factory, make_orchestrator
) -> None:
    fetcher = BlockingFetcher(
        FetchError("flaky"), tree_factory("r1", "r1", {"a.txt": "1"})
    )
    orch = make_orchestrator(fetcher, max_retries=0)
    worker, results = _start_blocked_cycle(orch, fetcher)

    orch.trigger("webhook")
    fetcher.release.set()
    worker.join(5)

    assert results[0].revision == "r1"
    assert orch.status().phase is SyncPhase.IDLE


# --- Shutdown ---


def test_trigger_after_shutdown_is_ignored(tree_factory, make_orchestrator) -> None:
    fetcher = FakeFetcher(tree_factory("r1", "r1", {"a.txt": "1"}))
    orch = make_orchestrator(fetcher)

    orch.shutdown()

    assert orch.shutting_down
    assert orch.trigger() is None
    assert fetcher.calls == 0
    assert orch.wait_shutdown(timeout=0)


def test_shutdown_interrupts_backoff(make_orchestrator) -> None:
    """Verifies that shutdown during a backoff wait ends the cycle as failed."""
    orch = None

    class ShutdownFetcher:
        calls = 0

        def fetch_latest(self):
            self.calls += 1
            orch.shutdown()
            raise FetchError("down")

    fetcher = ShutdownFetcher()
    orch = make_orchestrator(fetcher, initial="r0")
    orch.settings.backoff_base = 30

    result = orch.trigger()

    assert result.failed
    assert result.error == "shutdown during backoff"
    assert fetcher.calls == 1
    assert orch.tracker.current == "r0"


def test_shutdown_drops_pending_rerun(tree_factory, make_orchestrator) -> None:
    fetcher = BlockingFetcher(tree_factory("r1", "r1", {"a.txt": "1"}))
    orch = make_orchestrator(fetcher)
    worker, results = _start_blocked_cycle(orch, fetcher)

    orch.trigger("webhook")
    orch.shutdown()
    fetcher.release.set()
    worker.join(5)

    assert fetcher.calls == 1
    assert results[0].revision == "r1"
    assert orch.wait_idle(timeout=1)
