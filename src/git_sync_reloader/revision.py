import contextlib
import datetime
import json
import logging
import os
import threading
from pathlib import Path

from .constants import APP_NAME
from .models import RepositorySnapshot

logger = logging.getLogger(APP_NAME)


class RevisionTracker:
    """Holds the last-synced revision and decides whether a snapshot is new.

    Revision-id equality is authoritative: a snapshot carrying the committed id
    is never re-diffed, whatever its tree contains. The tracker performs no I/O.

    Attributes:
        current (str | None): The committed revision, None before the first sync.
    """

    def __init__(self, initial: str | None = None):
        self._current = initial
        self._lock = threading.Lock()

    @property
    def current(self) -> str | None:
        with self._lock:
            return self._current

    def should_sync(self, candidate: RepositorySnapshot) -> bool:
        """Returns True if *candidate* differs from the committed revision.

        Args:
            candidate (RepositorySnapshot): The freshly fetched snapshot.

        Returns:
            bool: True on first run or when the revision id changed.
        """
        with self._lock:
            return self._current is None or candidate.revision_id != self._current

    def commit(self, candidate: RepositorySnapshot) -> None:
        """Records *candidate* as synced. Call only after a successful mirror apply."""
        with self._lock:
            self._current = candidate.revision_id


class RevisionStore:
    """Persists the last committed revision across restarts.

    Attributes:
        path (Path): The JSON state file.
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> str | None:
        """Reads the persisted revision.

        Returns:
            str | None: The revision, or None when the file is missing or
            unreadable (the caller then performs a full resync).
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text())
            revision = data.get("revision")
            return revision if isinstance(revision, str) and revision else None
        except (OSError, ValueError, AttributeError) as e:
            logger.debug(f"Failed to read revision state: {e}")
            return None

    def save(self, revision: str) -> None:
        """Persists *revision* to disk atomically.

        Args:
            revision (str): The committed revision id.
        """
        tmp_file = self.path.with_suffix(".tmp")
        data = {
            "revision": revision,
            "updated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())  # Force hardware write

            # Atomic pointer swap at the filesystem level
            os.replace(tmp_file, self.path)
        except OSError as e:
            logger.warning(f"Failed to persist revision state: {e}")
            if tmp_file.exists():
                with contextlib.suppress(OSError):
                    tmp_file.unlink()
