import logging
import os
import shlex
import signal
import subprocess
import threading
from pathlib import Path

import requests
import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from .config import Config
from .constants import APP_NAME, HASH_HEADER, REVISION_ENV_VAR
from .exceptions import ReloadError
from .models import ReloadOutcome

logger = logging.getLogger(APP_NAME)


class Notifier:
    """Base class defining the interface for reload actions.

    The base implementation does nothing, which suits deployments where the
    dependent process watches the mirror directory itself.
    """

    description = "none"

    def notify(self, revision: str) -> None:
        """Tells the dependent process to re-read the mirror.

        Args:
            revision (str): The revision now present on disk.

        Raises:
            ReloadError: If the notification could not be delivered.
        """
        pass


class SignalNotifier(Notifier):
    """Sends a signal to a co-located process."""

    def __init__(
        self,
        signal_name: str = "SIGHUP",
        pid: int | None = None,
        pid_file: Path | None = None,
    ):
        """Initializes the notifier.

        Args:
            signal_name (str): Signal name, with or without the 'SIG' prefix.
            pid (int | None): Target process id.
            pid_file (Path | None): File containing the target pid, read on every
                notification so restarts of the dependent process are followed.

        Raises:
            ValueError: If the signal name is unknown or no target is given.
        """
        name = signal_name.upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        try:
            self.signum = signal.Signals[name]
        except KeyError:
            raise ValueError(f"Unknown signal '{signal_name}'") from None
        if not pid and pid_file is None:
            raise ValueError("A pid or pid file is required")
        self.pid = pid
        self.pid_file = pid_file
        self.description = f"{self.signum.name} -> {pid or pid_file}"

    def _resolve_pid(self) -> int:
        if self.pid:
            return self.pid
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError) as e:
            raise ReloadError(
                f"Cannot read pid from {self.pid_file}: {e}", kind="signal"
            ) from e

    def notify(self, revision: str) -> None:
        pid = self._resolve_pid()
        try:
            os.kill(pid, self.signum)
        except (ProcessLookupError, PermissionError) as e:
            raise ReloadError(
                f"Cannot signal pid {pid} with {self.signum.name}: {e}", kind="signal"
            ) from e


class CommandNotifier(Notifier):
    """Runs a local command, passing the revision in the environment."""

    def __init__(self, command: str, timeout: float | None = None, cwd: Path | None = None):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Reload command is empty")
        self.timeout = timeout
        self.cwd = cwd
        self.description = command

    def notify(self, revision: str) -> None:
        env = os.environ.copy()
        env[REVISION_ENV_VAR] = revision
        try:
            res = subprocess.run(
                self.argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ReloadError(
                f"Command timed out after {e.timeout}s", kind="timeout"
            ) from e
        except OSError as e:
            raise ReloadError(f"Cannot run {self.argv[0]}: {e}", kind="command") from e

        if res.returncode != 0:
            detail = (res.stderr or res.stdout or "").strip()
            raise ReloadError(
                f"Command exited with {res.returncode}: {detail}", kind="command"
            )


class HttpNotifier(Notifier):
    """Calls an HTTP endpoint of a sibling process.

    The revision travels in the Gitsync-Hash header, so any receiver speaking
    the git-sync webhook convention can be the target.
    """

    def __init__(
        self,
        url: str,
        method: str = "POST",
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.url = url
        self.method = method.upper()
        self.timeout = timeout
        self.headers = headers or {}
        self.session = requests.Session()
        self.description = f"{self.method} {url}"

    def notify(self, revision: str) -> None:
        headers = {**self.headers, HASH_HEADER: revision}
        try:
            response = self.session.request(
                self.method, self.url, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.Timeout as e:
            raise ReloadError(f"{self.description} timed out", kind="timeout") from e
        except requests.HTTPError as e:
            raise ReloadError(
                f"{self.description} returned {e.response.status_code}", kind="http"
            ) from e
        except requests.RequestException as e:
            raise ReloadError(f"{self.description} failed: {e}", kind="http") from e


class ConfigMapNotifier(Notifier):
    """Stamps the revision into an annotation of a Kubernetes ConfigMap.

    Workloads that roll on ConfigMap changes (e.g. through a reloader
    controller) pick the new revision up from the annotation. The ConfigMap is
    read first and left alone when it already carries the revision.
    """

    FIELD_MANAGER = "git-sync-reloader"

    def __init__(
        self,
        namespace: str,
        name: str,
        annotation: str = "git-sync-hash",
        timeout: float | None = None,
        api: k8s_client.CoreV1Api | None = None,
    ):
        """Initializes the notifier.

        Args:
            namespace (str): Namespace of the ConfigMap.
            name (str): Name of the ConfigMap.
            annotation (str): Annotation key holding the revision.
            timeout (float | None): Seconds allowed per API request.
            api (CoreV1Api | None): Client to use. Built from the in-cluster
                service account, or the local kubeconfig, when omitted.

        Raises:
            ValueError: If no Kubernetes credentials can be found.
        """
        self.namespace = namespace
        self.name = name
        self.annotation = annotation
        self.timeout = timeout
        self.api = api or _core_api()
        self.description = f"configmap {namespace}/{name}"

    def current_revision(self) -> str | None:
        """Returns the revision currently recorded on the ConfigMap, if any."""
        cm = self._call(
            self.api.read_namespaced_config_map, self.name, self.namespace
        )
        annotations = (cm.metadata.annotations if cm.metadata else None) or {}
        return annotations.get(self.annotation)

    def notify(self, revision: str) -> None:
        if self.current_revision() == revision:
            logger.info(f"{self.description} already at {revision[:7]}, skipping patch")
            return

        body = {"metadata": {"annotations": {self.annotation: revision}}}
        self._call(
            self.api.patch_namespaced_config_map,
            self.name,
            self.namespace,
            body,
            field_manager=self.FIELD_MANAGER,
        )
        logger.debug(f"{self.description}: {self.annotation}={revision}")

    def _call(self, method, *args, **kwargs):
        try:
            return method(*args, _request_timeout=self.timeout, **kwargs)
        except ApiException as e:
            raise ReloadError(
                f"{self.description}: API returned {e.status} {e.reason}",
                kind="kubernetes",
            ) from e
        except urllib3.exceptions.HTTPError as e:
            raise ReloadError(
                f"{self.description}: cannot reach API server: {e}", kind="kubernetes"
            ) from e


def _core_api() -> k8s_client.CoreV1Api:
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        try:
            k8s_config.load_kube_config()
        except (k8s_config.ConfigException, OSError) as e:
            raise ValueError(f"No Kubernetes credentials available: {e}") from e
    return k8s_client.CoreV1Api()


def get_notifier(config: Config) -> Notifier:
    """Factory function returning the notifier selected by ``[reload].method``.

    Args:
        config (Config): The loaded configuration.

    Returns:
        Notifier: A SignalNotifier, CommandNotifier, HttpNotifier,
        ConfigMapNotifier, or the no-op base Notifier.
    """
    rc = config.reload
    if rc.method == "signal":
        return SignalNotifier(
            rc.signal,
            pid=rc.pid or None,
            pid_file=Path(rc.pid_file).expanduser() if rc.pid_file else None,
        )
    elif rc.method == "command":
        return CommandNotifier(rc.command, timeout=rc.timeout)
    elif rc.method == "http":
        return HttpNotifier(rc.url, method=rc.http_method, timeout=rc.timeout)
    elif rc.method == "configmap":
        namespace, _, name = rc.configmap.partition("/")
        return ConfigMapNotifier(
            namespace, name, annotation=rc.annotation, timeout=rc.timeout
        )
    else:
        return Notifier()


class ReloadTrigger:
    """Fires the reload action, one attempt at a time.

    The orchestrator owns the retry loop; the trigger counts attempts within
    the current sequence and serializes concurrent calls.

    Attributes:
        notifier (Notifier): The configured reload action.
        max_attempts (int): Attempts allowed per revision.
    """

    def __init__(self, notifier: Notifier, max_attempts: int = 3):
        self.notifier = notifier
        self.max_attempts = max_attempts
        self._attempt = 0
        self._lock = threading.Lock()

    @property
    def exhausted(self) -> bool:
        return self._attempt >= self.max_attempts

    def reset(self) -> None:
        """Starts a new attempt sequence (called for each newly committed revision)."""
        with self._lock:
            self._attempt = 0

    def fire(self, revision: str) -> ReloadOutcome:
        """Performs one reload attempt.

        Args:
            revision (str): The committed revision now mirrored on disk.

        Returns:
            ReloadOutcome: Success flag, attempt number and the error if any.
        """
        with self._lock:
            self._attempt += 1
            attempt = self._attempt
            try:
                self.notifier.notify(revision)
            except ReloadError as e:
                logger.warning(
                    f"RELOAD attempt {attempt}/{self.max_attempts} failed: {e.describe()}"
                )
                return ReloadOutcome(
                    succeeded=False, attempt=attempt, last_error=e.describe()
                )

        logger.info(f"RELOAD {self.notifier.description}: notified ({revision[:7]})")
        return ReloadOutcome(succeeded=True, attempt=attempt)
