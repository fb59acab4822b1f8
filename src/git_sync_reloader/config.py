import logging
import os
import re
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .constants import APP_NAME, CONFIG_FILE, ENV_PREFIX, REVISION_FILE, STATE_DIR
from .exceptions import ConfigError

logger = logging.getLogger(APP_NAME)

SIZE_KEYS = {"max_log_size"}
TIME_KEYS = {
    "interval",
    "fetch_timeout",
    "mirror_timeout",
    "backoff_base",
    "backoff_max",
    "timeout",
}
LIST_KEYS = {"allowed_targets"}
RELOAD_METHODS = ("none", "signal", "command", "http", "configmap")
REPO_MODES = ("clone", "worktree")


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '1hr', '30s', '500ms') to seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip().lower()
    if re.match(r"^\d+(?:\.\d+)?$", text):
        return float(text)
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr)s?$", text)
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "ms": 0.001,
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
    }
    return num * multiplier[unit]


def _parse_list(value: Any) -> list[str]:
    """Accepts a TOML array or a comma-separated string."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ValueError(f"Invalid list '{value}'")
    return [item.strip() for item in items if item.strip()]


def _is_object_ref(value: str) -> bool:
    """True for a `namespace/name` reference with both parts non-empty."""
    parts = value.split("/")
    return len(parts) == 2 and all(parts)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean '{value}'")


@dataclass
class RepoConfig:
    """Upstream repository settings.

    Attributes:
        mode (str): 'clone' to fetch with git, 'worktree' to read a checkout
            maintained by an external git-sync process.
        url (str): Remote URL to clone/fetch ('clone' mode).
        branch (str): Branch to track.
        checkout_dir (str): Local clone ('clone' mode) or the worktree/link path
            ('worktree' mode).
        subpath (str): Subdirectory of the working tree to mirror.
        depth (int): Shallow fetch depth (0 for full history).
    """

    mode: str = "clone"
    url: str = ""
    branch: str = "main"
    checkout_dir: str = str(STATE_DIR / "checkout")
    subpath: str = ""
    depth: int = 1


@dataclass
class MirrorConfig:
    """Mirror target settings.

    Attributes:
        target (str): The directory kept identical to the fetched tree.
    """

    target: str = ""


@dataclass
class SyncConfig:
    """Sync loop settings.

    Attributes:
        interval (float): Seconds between periodic checks (0 disables the timer).
        fetch_timeout (float): Seconds allowed for one fetch.
        mirror_timeout (float): Seconds allowed for applying one mirror plan.
        max_retries (int): Fetch/mirror retries per cycle before failing.
        backoff_base (float): First backoff delay in seconds.
        backoff_max (float): Upper bound for a backoff delay.
    """

    interval: float = 60.0
    fetch_timeout: float = 120.0
    mirror_timeout: float = 300.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 60.0

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for the given 0-based retry attempt."""
        return min(self.backoff_base * (2**attempt), self.backoff_max)


@dataclass
class ReloadConfig:
    """Reload action settings.

    Attributes:
        method (str): One of 'none', 'signal', 'command', 'http', 'configmap'.
        signal (str): Signal name sent in 'signal' mode.
        pid (int): Target pid in 'signal' mode (0 to use pid_file).
        pid_file (str): File holding the target pid in 'signal' mode.
        command (str): Command line run in 'command' mode.
        url (str): Endpoint called in 'http' mode.
        http_method (str): HTTP verb used in 'http' mode.
        configmap (str): `namespace/name` of the ConfigMap annotated in
            'configmap' mode.
        annotation (str): Annotation key written in 'configmap' mode.
        timeout (float): Seconds allowed for one reload attempt.
        max_attempts (int): Reload attempts per revision before failing.
    """

    method: str = "none"
    signal: str = "SIGHUP"
    pid: int = 0
    pid_file: str = ""
    command: str = ""
    url: str = ""
    http_method: str = "POST"
    configmap: str = ""
    annotation: str = "git-sync-hash"
    timeout: float = 10.0
    max_attempts: int = 3


@dataclass
class WebhookConfig:
    """Push notification listener settings.

    Attributes:
        enabled (bool): Whether to serve the webhook listener.
        addr (str): Bind address.
        port (int): Bind port.
        path (str): Route accepting trigger requests.
        require_hash (bool): Reject trigger requests without a Gitsync-Hash header.
        token (str): Optional bearer token required on trigger requests.
        allowed_targets (list[str]): `namespace/name` targets accepted on
            `<path>/<namespace>/<name>`.
    """

    enabled: bool = False
    addr: str = "0.0.0.0"
    port: int = 8080
    path: str = "/webhook"
    require_hash: bool = False
    token: str = ""
    allowed_targets: list[str] = field(default_factory=list)


@dataclass
class StateConfig:
    """Revision persistence settings.

    Attributes:
        persist_revision (bool): Keep the last committed revision across restarts.
        path (str): File storing the persisted revision.
    """

    persist_revision: bool = False
    path: str = str(REVISION_FILE)


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


SECTIONS = ("repo", "mirror", "sync", "reload", "webhook", "state", "limits")


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        repo (RepoConfig): Upstream repository settings.
        mirror (MirrorConfig): Mirror target settings.
        sync (SyncConfig): Sync loop settings.
        reload (ReloadConfig): Reload action settings.
        webhook (WebhookConfig): Webhook listener settings.
        state (StateConfig): Revision persistence settings.
        limits (LimitsConfig): Resource limits.
    """

    repo: RepoConfig = field(default_factory=RepoConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    reload: ReloadConfig = field(default_factory=ReloadConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    state: StateConfig = field(default_factory=StateConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @classmethod
    def load(
        cls, path: Path | None = None, environ: dict[str, str] | None = None
    ) -> "Config":
        """Loads and merges configuration from defaults, files and environment.

        Args:
            path (Path | None): An explicit config file, merged over the global one.
            environ (dict[str, str] | None): Environment mapping to read overrides
                from. Defaults to os.environ.

        Returns:
            Config: The fully merged configuration object.

        Raises:
            ConfigError: If an explicit config file does not exist.
        """
        instance = cls()

        # 1. Global config
        if CONFIG_FILE.exists():
            instance._merge_from_file(CONFIG_FILE)

        # 2. Explicit config
        if path is not None:
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            instance._merge_from_file(path)

        # 3. Environment overrides
        instance._merge_from_env(os.environ if environ is None else environ)
        return instance

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
            return
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return

        unknown = set(data) - set(SECTIONS)
        if unknown:
            logger.warning(
                f"Unknown config sections in {path}: {', '.join(sorted(unknown))}. Ignoring."
            )

        for section in SECTIONS:
            if isinstance(data.get(section), dict):
                current = getattr(self, section)
                setattr(
                    self,
                    section,
                    self._update_dataclass(section, current, data[section]),
                )

    def _merge_from_env(self, environ: dict[str, str] | Any) -> None:
        """Applies GIT_SYNC_RELOADER_<SECTION>_<KEY> overrides.

        Args:
            environ: Mapping of environment variables.
        """
        for section in SECTIONS:
            current = getattr(self, section)
            updates = {}
            for f in fields(current):
                name = f"{ENV_PREFIX}{section}_{f.name}".upper()
                if name in environ:
                    updates[f.name] = environ[name]
            if updates:
                setattr(self, section, self._update_dataclass(section, current, updates))

        # Short aliases for the two settings every deployment needs.
        aliases = {"TARGET": ("mirror", "target"), "INTERVAL": ("sync", "interval")}
        for alias, (section, key) in aliases.items():
            name = f"{ENV_PREFIX}{alias}"
            if name in environ:
                current = getattr(self, section)
                setattr(
                    self,
                    section,
                    self._update_dataclass(section, current, {key: environ[name]}),
                )

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        types = {f.name: f.type for f in fields(instance)}
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(types)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in types:
                continue

            try:
                if k in SIZE_KEYS:
                    filtered_updates[k] = parse_size(v)
                elif k in TIME_KEYS:
                    filtered_updates[k] = parse_time(v)
                elif k in LIST_KEYS:
                    filtered_updates[k] = _parse_list(v)
                elif types[k] in (bool, "bool"):
                    filtered_updates[k] = _parse_bool(v)
                elif types[k] in (int, "int"):
                    if isinstance(v, bool):
                        raise ValueError(f"Invalid integer '{v}'")
                    filtered_updates[k] = int(v)
                else:
                    filtered_updates[k] = str(v)
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)

    def validate(self) -> None:
        """Checks that the configuration can drive a sync process.

        Raises:
            ConfigError: Describing the first unusable setting found.
        """
        if self.repo.mode not in REPO_MODES:
            raise ConfigError(
                f"[repo].mode must be one of {', '.join(REPO_MODES)}, got '{self.repo.mode}'"
            )
        if self.repo.mode == "clone" and not self.repo.url:
            raise ConfigError("[repo].url is required in 'clone' mode")
        if not self.repo.checkout_dir:
            raise ConfigError("[repo].checkout_dir is required")
        if not self.mirror.target:
            raise ConfigError("[mirror].target is required")

        source = Path(self.repo.checkout_dir).expanduser().resolve()
        target = Path(self.mirror.target).expanduser().resolve()
        if source == target or source in target.parents or target in source.parents:
            raise ConfigError(
                f"[mirror].target ({target}) must not overlap the checkout ({source})"
            )

        if self.reload.method not in RELOAD_METHODS:
            raise ConfigError(
                f"[reload].method must be one of {', '.join(RELOAD_METHODS)}, "
                f"got '{self.reload.method}'"
            )
        if self.reload.method == "signal" and not (
            self.reload.pid or self.reload.pid_file
        ):
            raise ConfigError("[reload].pid or [reload].pid_file is required for 'signal'")
        if self.reload.method == "command" and not self.reload.command:
            raise ConfigError("[reload].command is required for 'command'")
        if self.reload.method == "http" and not self.reload.url:
            raise ConfigError("[reload].url is required for 'http'")
        if self.reload.method == "configmap" and not _is_object_ref(
            self.reload.configmap
        ):
            raise ConfigError(
                "[reload].configmap must be 'namespace/name' for 'configmap'"
            )
        if self.reload.max_attempts < 1:
            raise ConfigError("[reload].max_attempts must be at least 1")
        if self.sync.max_retries < 0:
            raise ConfigError("[sync].max_retries must not be negative")
        if not self.webhook.path.startswith("/"):
            raise ConfigError("[webhook].path must start with '/'")
        for ref in self.webhook.allowed_targets:
            if not _is_object_ref(ref):
                raise ConfigError(
                    f"[webhook].allowed_targets entry '{ref}' is not 'namespace/name'"
                )
