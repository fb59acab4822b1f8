import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


def git_env() -> dict[str, str]:
    """Environment for non-interactive git: no credential prompts, batch SSH."""
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    This class provides the handful of plumbing and porcelain operations the
    fetcher needs, using `subprocess` with a per-command timeout. Transport,
    credential and TLS handling are left entirely to git itself.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float | None): Seconds allowed per git command.
    """

    def __init__(self, path: Path, timeout: float | None = None):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float | None, optional): Seconds allowed per git command.

        Raises:
            ValueError: If the specified path does not contain a .git entry.
        """
        self.path = path
        self.timeout = timeout
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def clone(
        cls,
        url: str,
        path: Path,
        branch: str,
        depth: int = 1,
        timeout: float | None = None,
    ) -> "GitRepo":
        """Clones a single branch of *url* into *path*.

        Args:
            url (str): The remote URL.
            path (Path): The destination directory (must not exist or be empty).
            branch (str): The branch to clone.
            depth (int, optional): Shallow clone depth, 0 for full history.
            timeout (float | None, optional): Seconds allowed for the clone.

        Returns:
            GitRepo: The wrapper for the new clone.

        Raises:
            RuntimeError: If the git command returns a non-zero exit code.
            subprocess.TimeoutExpired: If the clone exceeds the timeout.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        cmd = ["git", "clone", "--single-branch", "--branch", branch]
        if depth > 0:
            cmd.extend(["--depth", str(depth)])
        cmd.extend([url, str(path)])
        try:
            subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                env=git_env(),
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Git error: {e.stderr or e}") from e
        return cls(path, timeout=timeout)

    def _run(
        self, args: list[str], capture: bool = True, env: dict | None = None
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to capture and return stdout.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Defaults to git_env().

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            RuntimeError: If the git command returns a non-zero exit code.
            subprocess.TimeoutExpired: If the command exceeds the timeout.
        """
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=capture,
                text=True,
                check=True,
                env=env if env is not None else git_env(),
                timeout=self.timeout,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Git error: {e.stderr or e}") from e

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'FETCH_HEAD').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev]) or None
        except RuntimeError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def remote_url(self, remote: str = "origin") -> str | None:
        """Returns the configured URL of *remote*, or None if it is not set."""
        try:
            return self._run(["remote", "get-url", remote]) or None
        except RuntimeError:
            return None

    def set_remote_url(self, url: str, remote: str = "origin") -> None:
        """Points *remote* at *url*."""
        self._run(["remote", "set-url", remote, url])

    def fetch(self, branch: str, depth: int = 1, remote: str = "origin") -> None:
        """Fetches *branch* from *remote* into FETCH_HEAD.

        Args:
            branch (str): The branch to fetch.
            depth (int, optional): Shallow fetch depth, 0 for full history.
            remote (str, optional): The remote name. Defaults to 'origin'.
        """
        cmd = ["fetch", "--no-tags", "--prune"]
        if depth > 0:
            cmd.extend(["--depth", str(depth)])
        cmd.extend([remote, branch])
        self._run(cmd)

    def reset_hard(self, target: str) -> None:
        """Forcefully moves HEAD and the working tree to *target*."""
        self._run(["reset", "--hard", "--quiet", target])

    def clean(self) -> None:
        """Removes untracked and ignored files from the working tree."""
        self._run(["clean", "-ffdxq"])
