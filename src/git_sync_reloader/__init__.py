"""git-sync-reloader: keep a directory mirrored from git and reload on change.

This package provides the sync engine (revision tracking, mirroring, reload
triggering and the orchestrating state machine), the git fetch collaborators,
the webhook listener, and the daemon/CLI wrapping them.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    exceptions,
    fetch,
    git_wrapper,
    mirror,
    models,
    orchestrator,
    reload,
    revision,
    webhook,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "exceptions",
    "fetch",
    "git_wrapper",
    "mirror",
    "models",
    "orchestrator",
    "reload",
    "revision",
    "webhook",
]
