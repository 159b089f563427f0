"""
HTTP-01 challenge responder.

The issuer publishes the pending tokens and the account-key thumbprint in
``route.json`` under the base path; the responder re-reads that file on every
probe, so it can run in a different process than the issuer.

Two entry points:
  1. ChallengeResponder — a request matcher to plug into any HTTP server.
  2. ChallengeServer    — a minimal standalone server built on http.server
     that answers challenges and 404s everything else.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional, TypeVar

from certstore.filestore import FileStore

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "/.well-known/acme-challenge/"
ROUTE_FILE = "route.json"

T = TypeVar("T")


# ─── Route state ──────────────────────────────────────────────────────────────


@dataclass
class RouteState:
    fingerprint: str = ""
    tokens: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, store: FileStore) -> "RouteState":
        base = store.scope(None)
        if not base.exists(ROUTE_FILE):
            return cls()
        data = base.read_json(ROUTE_FILE)
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed %s in %s", ROUTE_FILE, base.path())
            return cls()
        tokens = data.get("tokens")
        return cls(
            fingerprint=str(data.get("fingerprint") or ""),
            tokens=[str(t) for t in tokens] if isinstance(tokens, list) else [],
        )

    def save(self, store: FileStore) -> None:
        store.scope(None).write(
            ROUTE_FILE, {"fingerprint": self.fingerprint, "tokens": self.tokens}, "json"
        )

    @staticmethod
    def clear(store: FileStore) -> None:
        store.scope(None).write(ROUTE_FILE, "{}")


# ─── Request matcher ──────────────────────────────────────────────────────────


@dataclass
class ChallengeResponse:
    status: int
    body: bytes
    headers: dict[str, str]


class ChallengeResponder:
    """
    Answers ``GET /.well-known/acme-challenge/<token>`` for published tokens.

    Usage:
        responder = ChallengeResponder(FileStore(base_path))
        response = responder(method, path, fallback=lambda: not_found())
    """

    def __init__(self, store: FileStore) -> None:
        self.store = store.scope(None)
        if not self.store.exists(ROUTE_FILE):
            RouteState.clear(self.store)

    def match(self, method: str, path: str) -> Optional[ChallengeResponse]:
        """Return the challenge response for this request, or None when it is not ours."""
        if method.upper() != "GET" or not path.startswith(CHALLENGE_PREFIX):
            return None
        token = path[len(CHALLENGE_PREFIX):]
        if not token:
            return None

        route = RouteState.load(self.store)
        if token not in route.tokens:
            logger.debug("Unknown challenge token %s", token)
            return None

        body = f"{token}.{route.fingerprint}".encode("utf-8")
        logger.info("Answering HTTP-01 challenge for token %s", token)
        return ChallengeResponse(
            status=200,
            body=body,
            headers={
                "Content-Type": "text/plain; charset=utf-8",
                "Content-Length": str(len(body)),
            },
        )

    def __call__(
        self, method: str, path: str, fallback: Callable[[], T]
    ) -> ChallengeResponse | T:
        response = self.match(method, path)
        return response if response is not None else fallback()


# ─── Standalone server ────────────────────────────────────────────────────────


class _ChallengeHandler(BaseHTTPRequestHandler):
    """Serves the ACME challenge path through a ChallengeResponder; 404 otherwise."""

    responder: ChallengeResponder

    def do_GET(self) -> None:
        self._dispatch()

    def do_HEAD(self) -> None:
        self._dispatch()

    def do_POST(self) -> None:
        self._dispatch()

    def _dispatch(self) -> None:
        response = self.responder(self.command, self.path, self._not_found)
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _not_found(self) -> ChallengeResponse:
        body = f"Cannot {self.command} {self.path}".encode("utf-8")
        return ChallengeResponse(
            status=404,
            body=body,
            headers={"Content-Type": "text/plain", "Content-Length": str(len(body))},
        )

    def log_message(self, fmt: str, *args: object) -> None:
        logger.debug("%s - %s", self.address_string(), fmt % args)


class ChallengeServer:
    """
    HTTP server answering HTTP-01 probes for every label under one base path.

    Usage:
        srv = ChallengeServer(FileStore(base_path), host="0.0.0.0", port=80)
        srv.start()          # background thread
        ...
        srv.stop()
    or ``srv.serve_forever()`` to block.
    """

    def __init__(self, store: FileStore, host: str = "127.0.0.1", port: int = 80) -> None:
        handler = type("ChallengeHandler", (_ChallengeHandler,), {"responder": ChallengeResponder(store)})
        self._server = ThreadingHTTPServer((host, port), handler)
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> tuple[str, int]:
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def serve_forever(self) -> None:
        logger.info("ACME challenge server listening on %s:%d", *self.address)
        self._server.serve_forever()

    def start(self) -> None:
        """Serve in a background thread."""
        if self._thread is not None:
            raise RuntimeError("Challenge server is already running")
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread:
            self._server.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._server.server_close()

    def __enter__(self) -> "ChallengeServer":
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()
