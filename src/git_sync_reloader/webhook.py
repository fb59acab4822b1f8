"""HTTP push-notification listener.

A small WSGI application, served with ``wsgiref``, that turns git-sync style
webhook calls into orchestrator triggers:

* ``POST``/``PATCH`` on the configured path triggers a sync in the
  background. A ``Gitsync-Hash`` header equal to the committed revision is
  answered directly ("already up to date") without triggering.
* ``POST``/``PATCH`` on ``<path>/<namespace>/<name>`` does the same for a
  named target, which must appear in the allowlist (403 otherwise).
* ``GET /healthz`` reports the orchestrator status.
"""

import hmac
import json
import logging
import threading
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .config import WebhookConfig
from .constants import APP_NAME, HASH_HEADER
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(APP_NAME)

HASH_ENVIRON_KEY = "HTTP_" + HASH_HEADER.upper().replace("-", "_")

_REASONS = {
    200: "OK",
    202: "Accepted",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    503: "Service Unavailable",
}


def _json_response(start_response, status: int, body: dict, extra_headers=None) -> list[bytes]:
    payload = json.dumps(body).encode()
    headers = [
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(payload))),
    ]
    headers.extend(extra_headers or [])
    start_response(f"{status} {_REASONS[status]}", headers)
    return [payload]


class WebhookApp:
    """WSGI application translating HTTP calls into sync triggers.

    Attributes:
        orchestrator (SyncOrchestrator): The engine to trigger.
        settings (WebhookConfig): Route, hash and token requirements.
        allowed_targets (frozenset[str]): ``namespace/name`` targets that may
            be addressed by path. Empty means none may.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        settings: WebhookConfig,
        allowed_targets=None,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.allowed_targets = frozenset(
            settings.allowed_targets if allowed_targets is None else allowed_targets
        )

    def __call__(self, environ, start_response):
        path = environ.get("PATH_INFO", "") or "/"
        method = environ.get("REQUEST_METHOD", "GET").upper()

        if path == "/healthz":
            if method != "GET":
                return _json_response(
                    start_response, 405, {"error": "method not allowed"}, [("Allow", "GET")]
                )
            return _json_response(
                start_response, 200, self.orchestrator.status().as_dict()
            )

        routed, target = self._route(path)
        if not routed:
            return _json_response(start_response, 404, {"error": "not found"})

        if method not in ("POST", "PATCH"):
            return _json_response(
                start_response,
                405,
                {"error": "method not allowed"},
                [("Allow", "POST, PATCH")],
            )

        return self._handle_trigger(environ, start_response, target)

    def _route(self, path: str) -> tuple[bool, str | None]:
        """Matches *path* against the trigger routes.

        Returns:
            tuple: (matched, target) where target is ``namespace/name`` for
            the targeted route and None for the bare one.
        """
        base = self.settings.path.rstrip("/")
        path = path.rstrip("/")
        if path == base:
            return True, None
        if not path.startswith(base + "/"):
            return False, None
        parts = path[len(base) + 1 :].split("/")
        if len(parts) != 2 or not all(parts):
            return False, None
        return True, "/".join(parts)

    def _authorized(self, environ) -> bool:
        if not self.settings.token:
            return True
        header = environ.get("HTTP_AUTHORIZATION", "")
        scheme, _, supplied = header.partition(" ")
        return scheme.lower() == "bearer" and hmac.compare_digest(
            supplied.strip(), self.settings.token
        )

    def _handle_trigger(self, environ, start_response, target: str | None = None):
        if not self._authorized(environ):
            logger.warning("WEBHOOK denied: invalid or missing token")
            return _json_response(start_response, 403, {"error": "forbidden"})

        if target is not None and target not in self.allowed_targets:
            logger.warning(f"WEBHOOK denied: target {target} is not allowed")
            return _json_response(start_response, 403, {"error": "forbidden"})

        git_hash = environ.get(HASH_ENVIRON_KEY, "").strip()
        if not git_hash and self.settings.require_hash:
            logger.warning(f"WEBHOOK rejected: missing {HASH_HEADER} header")
            return _json_response(
                start_response, 400, {"error": f"missing {HASH_HEADER} header"}
            )

        if self.orchestrator.shutting_down:
            return _json_response(start_response, 503, {"error": "shutting down"})

        if git_hash and git_hash == self.orchestrator.tracker.current:
            logger.info(f"WEBHOOK hash unchanged ({git_hash[:7]}), skipping")
            return _json_response(
                start_response,
                200,
                {"status": "success", "git_hash": git_hash, "updated": False},
            )

        source = f"webhook:{target}" if target else "webhook"
        logger.info(
            f"WEBHOOK trigger received for {target or 'default'} "
            f"(hash {git_hash[:7] or 'n/a'})"
        )
        threading.Thread(
            target=self.orchestrator.trigger,
            args=(source,),
            name="webhook-trigger",
            daemon=True,
        ).start()
        return _json_response(
            start_response,
            202,
            {"status": "accepted", "git_hash": git_hash or None, "updated": True},
        )


class _LoggingHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug(f"WEBHOOK {self.address_string()} {format % args}")


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    # One thread per connection; a stalled client must not block /healthz.
    daemon_threads = True


class WebhookServer:
    """Serves a WebhookApp on a background thread, one thread per request."""

    def __init__(self, app: WebhookApp, addr: str, port: int):
        self.httpd: WSGIServer = make_server(
            addr,
            port,
            app,
            server_class=_ThreadingWSGIServer,
            handler_class=_LoggingHandler,
        )
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        return self.httpd.server_port

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.httpd.serve_forever, name="webhook-server", daemon=True
        )
        self._thread.start()
        logger.info(f"Webhook listening on {self.httpd.server_name}:{self.port}")

    def stop(self) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
