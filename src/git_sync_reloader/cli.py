import argparse
import logging
import os
import sys
from dataclasses import fields
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import SECTIONS, Config
from .constants import APP_NAME, CONFIG_FILE, PID_FILE
from .exceptions import ConfigError, SyncError
from .fetch import build_fetcher
from .mirror import MirrorSyncer
from .revision import RevisionStore

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

OPTION_HELP = {
    ("repo", "mode"): "'clone' keeps a private clone; 'worktree' reads an external checkout.",
    ("repo", "url"): "Remote URL to clone and fetch.",
    ("repo", "branch"): "Branch to track.",
    ("repo", "checkout_dir"): "Private clone, or the worktree/symlink maintained by git-sync.",
    ("repo", "subpath"): "Subdirectory of the working tree to mirror.",
    ("repo", "depth"): "Shallow fetch depth (0 for full history).",
    ("mirror", "target"): "Directory kept identical to the fetched tree.",
    ("sync", "interval"): "Time between periodic checks (e.g., '30s', '5m'; 0 disables).",
    ("sync", "fetch_timeout"): "Time allowed for one fetch.",
    ("sync", "mirror_timeout"): "Time allowed for applying one mirror plan.",
    ("sync", "max_retries"): "Fetch/mirror retries per cycle before giving up.",
    ("sync", "backoff_base"): "First retry delay, doubled on each retry.",
    ("sync", "backoff_max"): "Upper bound of a retry delay.",
    ("reload", "method"): "'none', 'signal', 'command', 'http' or 'configmap'.",
    ("reload", "signal"): "Signal sent in 'signal' mode.",
    ("reload", "pid"): "Target pid in 'signal' mode.",
    ("reload", "pid_file"): "File holding the target pid in 'signal' mode.",
    ("reload", "command"): "Command run in 'command' mode.",
    ("reload", "url"): "Endpoint called in 'http' mode (revision sent as Gitsync-Hash).",
    ("reload", "http_method"): "HTTP verb used in 'http' mode.",
    ("reload", "configmap"): "namespace/name of the ConfigMap annotated in 'configmap' mode.",
    ("reload", "annotation"): "Annotation key holding the revision in 'configmap' mode.",
    ("reload", "timeout"): "Time allowed for one reload attempt.",
    ("reload", "max_attempts"): "Reload attempts per revision before failing.",
    ("webhook", "enabled"): "Serve the push-notification listener.",
    ("webhook", "addr"): "Listener bind address.",
    ("webhook", "port"): "Listener port.",
    ("webhook", "path"): "Route accepting trigger requests.",
    ("webhook", "require_hash"): "Reject triggers without a Gitsync-Hash header.",
    ("webhook", "token"): "Bearer token required on trigger requests.",
    ("webhook", "allowed_targets"): "namespace/name targets accepted on <path>/<namespace>/<name>.",
    ("state", "persist_revision"): "Remember the synced revision across restarts.",
    ("state", "path"): "File storing the persisted revision.",
    ("limits", "max_log_size"): "Max size for log files before rotation (e.g., '5mb').",
}


def _load_config(path: str | None) -> Config:
    try:
        return Config.load(Path(path) if path else None)
    except ConfigError as e:
        err_console.print(f"[bold red]Config Error:[/bold red] {e}")
        sys.exit(1)


def _daemon_pid() -> int | None:
    """Returns the pid of a live daemon, or None."""
    if not PID_FILE.exists():
        return None
    try:
        pid = int(PID_FILE.read_text().strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, OSError):
        return None


def show_status(config: Config) -> None:
    """Displays daemon liveness, the configured mirror and the persisted revision."""
    pid = _daemon_pid()

    content = Text()
    content.append("Daemon:   ", style="bold")
    if pid:
        content.append(f"Running (pid {pid})\n", style="bold green")
    else:
        content.append("Stopped\n", style="bold red")

    content.append("Source:   ", style="bold")
    if config.repo.mode == "worktree":
        content.append(f"{config.repo.checkout_dir} (external worktree)\n")
    else:
        content.append(f"{config.repo.url or '-'} @ {config.repo.branch}\n")

    content.append("Target:   ", style="bold")
    content.append(f"{config.mirror.target or '-'}\n")

    content.append("Revision: ", style="bold")
    if config.state.persist_revision:
        revision = RevisionStore(Path(config.state.path).expanduser()).load()
        content.append(revision or "unknown (full resync on start)")
    else:
        content.append("not persisted", style="dim")

    console.print(Panel(content, title="git-sync-reloader", expand=False))


def show_plan(config: Config) -> int:
    """Fetches the upstream tree and prints the mirror plan without applying it."""
    try:
        config.validate()
    except ConfigError as e:
        err_console.print(f"[bold red]Config Error:[/bold red] {e}")
        return 1

    try:
        with console.status("[bold blue]Fetching...[/bold blue]", spinner="dots"):
            snapshot = build_fetcher(config).fetch_latest()
            plan = MirrorSyncer().compute_plan(
                snapshot.root_path, Path(config.mirror.target).expanduser()
            )
    except SyncError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e.describe()}")
        return 1

    if plan.is_empty:
        console.print(
            f"[bold green]In sync[/bold green] with {snapshot.short_id}: no changes."
        )
        return 0

    table = Table(title=f"Mirror plan for {snapshot.short_id} ({plan.summary()})")
    table.add_column("Action", style="bold")
    table.add_column("Type", style="dim")
    table.add_column("Path")
    styles = {"create": "green", "update": "yellow", "delete": "red"}
    for op in plan.operations:
        table.add_row(
            f"[{styles[op.kind]}]{op.kind}[/{styles[op.kind]}]", op.entry_type, op.path
        )
    console.print(table)
    return 0


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="git-sync-reloader Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    defaults = Config()
    for section in SECTIONS:
        first = True
        for f in fields(getattr(defaults, section)):
            table.add_row(
                section if first else "",
                f.name,
                repr(getattr(getattr(defaults, section), f.name)),
                OPTION_HELP.get((section, f.name), ""),
            )
            first = False

    console.print(table)
    console.print(
        f"[dim]Global file: {CONFIG_FILE}. Environment overrides: "
        "GIT_SYNC_RELOADER_<SECTION>_<KEY> (e.g. GIT_SYNC_RELOADER_REPO_URL).[/dim]"
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the git-sync-reloader CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Mirror a git branch into a directory and reload a process on change.",
    )
    parser.add_argument("-c", "--config", help="Path to a TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command")
    run_parser = subparsers.add_parser("run", help="Run the sync daemon (default)")
    run_parser.add_argument(
        "--foreground",
        action="store_true",
        help="Log to stdout only (no log file, no PID file)",
    )
    run_parser.add_argument(
        "--allow",
        action="append",
        metavar="NAMESPACE/NAME",
        help="Accept webhook triggers for this target (repeatable)",
    )
    subparsers.add_parser("once", help="Run a single sync cycle and exit")
    subparsers.add_parser("plan", help="Show what a sync would change, without applying")
    subparsers.add_parser("status", help="Show daemon and revision status")
    config_parser = subparsers.add_parser("config", help="Show configuration options")
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options",
    )

    args = parser.parse_args(argv)

    if args.command == "config":
        show_config_reference()
        return

    config = _load_config(args.config)

    if args.command == "status":
        show_status(config)
        return
    elif args.command == "plan":
        daemon.setup_logging(True, config, verbose=args.verbose)
        sys.exit(show_plan(config))
    elif args.command == "once":
        daemon.setup_logging(True, config, verbose=args.verbose)
        sys.exit(daemon.run_once(config))

    # Default Action
    foreground = getattr(args, "foreground", False)
    for ref in getattr(args, "allow", None) or []:
        if ref not in config.webhook.allowed_targets:
            config.webhook.allowed_targets.append(ref)
    daemon.setup_logging(foreground, config, verbose=args.verbose)
    sys.exit(daemon.main(config, interactive=foreground))


if __name__ == "__main__":
    main()
