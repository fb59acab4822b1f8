import atexit
import logging
import os
import signal
import sys
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .exceptions import ConfigError
from .fetch import build_fetcher
from .mirror import MirrorSyncer
from .orchestrator import SyncOrchestrator
from .reload import ReloadTrigger, get_notifier
from .revision import RevisionStore, RevisionTracker
from .webhook import WebhookApp, WebhookServer

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def setup_logging(interactive: bool, config: Config | None = None, verbose: bool = False) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            to a rotating file.
        config (Config | None): Supplies the log rotation size.
        verbose (bool): Enables DEBUG output.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Always log to a stream (captured by the container runtime).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        max_bytes = config.limits.max_log_size if config else 5 * 1024 * 1024
        try:
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=max_bytes,
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)


def ensure_writable(directory: Path) -> None:
    """Creates *directory* if needed and proves it is writable.

    Raises:
        ConfigError: If the directory cannot be created or written to.
    """
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile(dir=directory):
            pass
    except OSError as e:
        raise ConfigError(f"Target directory {directory} is not writable: {e}") from e


def webhook_targets(config: Config) -> set[str]:
    """Targets the webhook accepts by path: the allowlist plus the annotated ConfigMap."""
    targets = set(config.webhook.allowed_targets)
    if config.reload.method == "configmap":
        targets.add(config.reload.configmap)
    return targets


def build_orchestrator(config: Config) -> SyncOrchestrator:
    """Wires the sync engine from configuration.

    Args:
        config (Config): A validated configuration.

    Returns:
        SyncOrchestrator: Ready to accept triggers.

    Raises:
        ConfigError: If the reload action settings are unusable.
    """
    store = None
    initial = None
    if config.state.persist_revision:
        store = RevisionStore(Path(config.state.path).expanduser())
        initial = store.load()
        if initial:
            logger.info(f"Resuming from persisted revision {initial[:7]}")

    try:
        notifier = get_notifier(config)
    except ValueError as e:
        raise ConfigError(f"[reload]: {e}") from e

    return SyncOrchestrator(
        fetcher=build_fetcher(config),
        mirror=MirrorSyncer(),
        tracker=RevisionTracker(initial),
        reload=ReloadTrigger(notifier, max_attempts=config.reload.max_attempts),
        target_root=Path(config.mirror.target).expanduser(),
        settings=config.sync,
        store=store,
    )


def run_timer(orchestrator: SyncOrchestrator, interval: float) -> None:
    """Triggers a check immediately and then every *interval* seconds until shutdown.

    With a non-positive interval only the initial check runs and the loop waits
    for shutdown (webhook-driven deployments).
    """
    while not orchestrator.shutting_down:
        orchestrator.trigger("timer")
        if interval <= 0:
            orchestrator.wait_shutdown()
            break
        if orchestrator.wait_shutdown(interval):
            break


def _write_pid_file() -> None:
    try:
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))

        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def main(config: Config, interactive: bool = False) -> int:
    """The main daemon execution loop.

    Args:
        config (Config): The loaded configuration.
        interactive (bool, optional): Log to stdout only. Defaults to False.

    Returns:
        int: The process exit code (0 on graceful shutdown, 1 on init failure).
    """
    try:
        config.validate()
        ensure_writable(Path(config.mirror.target).expanduser())
        orchestrator = build_orchestrator(config)
    except ConfigError as e:
        logger.critical(f"INIT ERROR: {e}")
        return 1

    def shutdown_handler(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, finishing current phase")
        orchestrator.shutdown()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    if not interactive:
        _write_pid_file()

    server = None
    if config.webhook.enabled:
        try:
            server = WebhookServer(
                WebhookApp(orchestrator, config.webhook, webhook_targets(config)),
                config.webhook.addr,
                config.webhook.port,
            )
        except OSError as e:
            logger.critical(
                f"INIT ERROR: cannot bind {config.webhook.addr}:{config.webhook.port}: {e}"
            )
            return 1
        server.start()

    logger.info(
        f"Mirroring into {config.mirror.target} every {config.sync.interval:g}s "
        f"(reload: {orchestrator.reload.notifier.description})"
    )
    try:
        run_timer(orchestrator, config.sync.interval)
    finally:
        if server is not None:
            server.stop()
        # Let a webhook-triggered cycle finish its current phase.
        orchestrator.wait_idle()

    logger.info("Stopped.")
    return 0


def run_once(config: Config) -> int:
    """Runs a single sync cycle.

    Returns:
        int: 0 if the cycle completed, 1 on init failure or a failed cycle.
    """
    try:
        config.validate()
        ensure_writable(Path(config.mirror.target).expanduser())
        orchestrator = build_orchestrator(config)
    except ConfigError as e:
        logger.critical(f"INIT ERROR: {e}")
        return 1

    result = orchestrator.trigger("once")
    if result is None or result.failed:
        logger.error(f"Sync failed: {result.error if result else 'not started'}")
        return 1
    return 0
