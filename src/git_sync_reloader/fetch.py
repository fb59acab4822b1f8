"""Fetch collaborators producing repository snapshots.

Two flavours are provided:

* ``GitFetcher`` owns a local clone and updates it with ``git fetch``.
* ``WorktreeFetcher`` reads a checkout maintained by someone else, typically a
  git-sync container that publishes each revision behind an atomically swapped
  symlink.

Both raise ``FetchError`` for every failure so the orchestrator can route the
cycle to backoff without knowing anything about git.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from .config import Config
from .constants import APP_NAME
from .exceptions import FetchError
from .git_wrapper import GitRepo
from .models import RepositorySnapshot

logger = logging.getLogger(APP_NAME)


class Fetcher(Protocol):
    def fetch_latest(self) -> RepositorySnapshot: ...


def _snapshot_root(worktree: Path, subpath: str) -> Path:
    root = worktree / subpath if subpath else worktree
    if not root.is_dir():
        raise FetchError(f"Subpath '{subpath}' missing in {worktree}", kind="missing")
    return root


class GitFetcher:
    """Keeps a private clone of the upstream branch up to date.

    Attributes:
        url (str): Remote URL.
        branch (str): Branch to track.
        checkout_dir (Path): Location of the private clone.
        depth (int): Shallow fetch depth.
        timeout (float | None): Seconds allowed per git command.
        subpath (str): Subdirectory of the working tree to expose.
    """

    def __init__(
        self,
        url: str,
        branch: str,
        checkout_dir: Path,
        depth: int = 1,
        timeout: float | None = None,
        subpath: str = "",
    ):
        self.url = url
        self.branch = branch
        self.checkout_dir = checkout_dir
        self.depth = depth
        self.timeout = timeout
        self.subpath = subpath

    def _open(self) -> GitRepo:
        """Returns the clone, creating (or re-creating) it when needed."""
        if (self.checkout_dir / ".git").exists():
            repo = GitRepo(self.checkout_dir, timeout=self.timeout)
            if repo.remote_url() != self.url:
                logger.info(f"Remote URL changed, updating origin to {self.url}")
                repo.set_remote_url(self.url)
            return repo

        if self.checkout_dir.exists():
            # Leftover from an interrupted clone.
            logger.warning(f"Removing incomplete checkout at {self.checkout_dir}")
            shutil.rmtree(self.checkout_dir)

        logger.info(f"Cloning {self.url} ({self.branch}) into {self.checkout_dir}")
        return GitRepo.clone(
            self.url,
            self.checkout_dir,
            self.branch,
            depth=self.depth,
            timeout=self.timeout,
        )

    def fetch_latest(self) -> RepositorySnapshot:
        """Fetches the tracked branch and checks it out.

        Returns:
            RepositorySnapshot: The fetched revision and the tree to mirror.

        Raises:
            FetchError: On any git failure or timeout.
        """
        try:
            repo = self._open()
            repo.fetch(self.branch, depth=self.depth)
            repo.reset_hard("FETCH_HEAD")
            repo.clean()
            revision = repo.rev_parse("HEAD")
        except subprocess.TimeoutExpired as e:
            raise FetchError(f"git timed out after {e.timeout}s", kind="timeout") from e
        except (RuntimeError, ValueError, OSError) as e:
            raise FetchError(str(e), kind="transport") from e

        if not revision:
            raise FetchError("Could not resolve HEAD after fetch", kind="missing")

        return RepositorySnapshot(
            revision_id=revision,
            root_path=_snapshot_root(self.checkout_dir, self.subpath),
        )


class WorktreeFetcher:
    """Reads the revision of a checkout maintained by an external process.

    Attributes:
        path (Path): The worktree, or a symlink pointing at the current one.
        subpath (str): Subdirectory of the worktree to expose.
        timeout (float | None): Seconds allowed for the git query.
    """

    def __init__(self, path: Path, subpath: str = "", timeout: float | None = None):
        self.path = path
        self.subpath = subpath
        self.timeout = timeout

    def fetch_latest(self) -> RepositorySnapshot:
        """Resolves the published worktree and its HEAD revision.

        The symlink is resolved once so the whole cycle reads a single revision,
        even if the publisher swaps the link meanwhile.

        Raises:
            FetchError: If the worktree is missing or its HEAD cannot be read.
        """
        if not self.path.exists():
            raise FetchError(f"Worktree not found: {self.path}", kind="missing")

        worktree = self.path.resolve()
        try:
            revision = GitRepo(worktree, timeout=self.timeout).rev_parse("HEAD")
        except subprocess.TimeoutExpired as e:
            raise FetchError(f"git timed out after {e.timeout}s", kind="timeout") from e
        except (ValueError, OSError) as e:
            raise FetchError(str(e), kind="missing") from e

        if not revision:
            raise FetchError(f"Could not resolve HEAD in {worktree}", kind="missing")

        return RepositorySnapshot(
            revision_id=revision, root_path=_snapshot_root(worktree, self.subpath)
        )


def build_fetcher(config: Config) -> Fetcher:
    """Factory returning the fetch collaborator selected by ``[repo].mode``."""
    checkout = Path(config.repo.checkout_dir).expanduser()
    if config.repo.mode == "worktree":
        return WorktreeFetcher(
            checkout, subpath=config.repo.subpath, timeout=config.sync.fetch_timeout
        )
    return GitFetcher(
        config.repo.url,
        config.repo.branch,
        checkout,
        depth=config.repo.depth,
        timeout=config.sync.fetch_timeout,
        subpath=config.repo.subpath,
    )
