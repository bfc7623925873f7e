"""
Local review server.

Serves a single review page on the loopback interface and blocks the CLI until the
person reviewing the document approves, cancels, or the review window runs out.
Each ReviewServer is single-use: start() once, then stop().
"""

import json
import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from ..core import config
from util.logging import logger

from .page import render_review_page, validate_document_url

log = logging.getLogger(__name__)


class ServerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class ReviewDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


@dataclass
class ReviewSession:
    document_url: str
    label: str
    port: int
    started_at: datetime
    decision: ReviewDecision = ReviewDecision.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_url": self.document_url,
            "label": self.label,
            "port": self.port,
            "started_at": self.started_at.isoformat(),
            "decision": self.decision.value,
        }


class ReviewServerError(Exception):
    """Review server misuse or startup failure."""
    pass


class PortExhaustionError(ReviewServerError):
    """No port in the probed range could be bound."""
    pass


_ACTIONS = {
    "/approve": (ReviewDecision.APPROVED, "Approved"),
    "/cancel": (ReviewDecision.CANCELLED, "Cancelled"),
}
_PAGE_PATHS = ("/", "/index.html")


class ReviewRequestHandler(BaseHTTPRequestHandler):
    """Routes the review page and the approve/cancel actions; everything else is 404."""

    server_version = "FormationReview/" + config.VERSION

    def log_message(self, format, *args):
        if config.DEBUG:
            super().log_message(format, *args)
        # Suppress logs in production

    @property
    def review(self) -> 'ReviewServer':
        return self.server.review

    def _path(self) -> str:
        return urlsplit(self.path).path

    def _send(self, status: int, content_type: str, body: bytes, no_cache: bool = False, cors: bool = False):
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        if no_cache:
            self.send_header('Cache-Control', 'no-cache, no-store, must-revalidate')
            self.send_header('Pragma', 'no-cache')
            self.send_header('Expires', '0')
        if cors:
            self.send_header('Access-Control-Allow-Origin', '*')
        self.end_headers()
        self.wfile.write(body)
        self.wfile.flush()

    def _not_found(self):
        self._send(404, 'text/plain; charset=utf-8', b'Not Found')

    def do_GET(self):
        if self._path() in _PAGE_PATHS:
            self._send(200, 'text/html; charset=utf-8', self.review.page_body, no_cache=True)
        else:
            self._not_found()

    def do_POST(self):
        action = _ACTIONS.get(self._path())
        if action is None:
            self._not_found()
            return

        decision, message = action
        body = json.dumps({"success": True, "message": message}).encode('utf-8')
        self._send(200, 'application/json', body, cors=True)
        self.review.handle_action(decision)

    def do_PUT(self):
        self._not_found()

    def do_DELETE(self):
        self._not_found()

    def do_PATCH(self):
        self._not_found()

    def do_HEAD(self):
        self._not_found()

    def do_OPTIONS(self):
        self._not_found()


class _ReviewHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, handler_class, review: 'ReviewServer'):
        self.review = review
        super().__init__(server_address, handler_class)

    def handle_error(self, request, client_address):
        log.warning(f"Review request from {client_address[0]} failed", exc_info=True)


class ReviewServer:
    """
    One review session on 127.0.0.1.

    The decision resolves exactly once; whichever of approve, cancel, timeout or a
    serving failure happens first wins and later ones are ignored.
    """

    def __init__(self, host: str = None, port: int = None, port_attempts: int = None,
                 timeout_sec: float = None, shutdown_grace_sec: float = None):
        self.host = host or config.REVIEW_SERVER_HOST
        self.preferred_port = config.REVIEW_SERVER_PORT if port is None else port
        self.port_attempts = port_attempts or config.REVIEW_PORT_ATTEMPTS
        self.timeout_sec = config.REVIEW_TIMEOUT_SEC if timeout_sec is None else timeout_sec
        self.shutdown_grace_sec = (
            config.REVIEW_SHUTDOWN_GRACE_SEC if shutdown_grace_sec is None else shutdown_grace_sec
        )

        self.page_body = b""
        self.error: Optional[str] = None
        self.session: Optional[ReviewSession] = None
        self._state = ServerState.IDLE
        self._lock = threading.RLock()
        self._decision: Future = Future()
        self._httpd: Optional[_ReviewHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._timeout_timer: Optional[threading.Timer] = None
        self._grace_timer: Optional[threading.Timer] = None
        self._port: Optional[int] = None

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def decision(self) -> ReviewDecision:
        return self._decision.result() if self._decision.done() else ReviewDecision.PENDING

    def start(self, document_url: str, label: str) -> str:
        """
        Bind a free loopback port and start serving the review page.

        Args:
            document_url: http(s) URL of the document to embed
            label: Heading shown on the page (usually the company name)

        Returns:
            URL of the review page

        Raises:
            ReviewServerError: already started, or the document URL is not http(s)
            PortExhaustionError: every port in the probed range is taken
        """
        with self._lock:
            if self._state != ServerState.IDLE:
                raise ReviewServerError(f"Review server has already been started (state: {self._state.value})")
            self._state = ServerState.STARTING

        try:
            validate_document_url(document_url)
            self.page_body = render_review_page(document_url, label).encode('utf-8')
            httpd = self._bind()
        except ValueError as e:
            self._state = ServerState.IDLE
            raise ReviewServerError(str(e)) from e
        except ReviewServerError:
            self._state = ServerState.IDLE
            raise

        with self._lock:
            self._httpd = httpd
            self._port = httpd.server_address[1]
            self.session = ReviewSession(document_url, label, self._port, datetime.now(timezone.utc))
            self._thread = threading.Thread(
                target=self._serve, args=(httpd,), name=f"review-server-{self._port}", daemon=True
            )
            self._timeout_timer = threading.Timer(self.timeout_sec, self._on_timeout)
            self._timeout_timer.daemon = True
            self._state = ServerState.RUNNING
            self._thread.start()
            self._timeout_timer.start()

        logger.log_review_event("start", self._port, details={"timeout_sec": self.timeout_sec})
        return self.get_url()

    def _bind(self) -> _ReviewHTTPServer:
        if self.preferred_port == 0:
            ports = [0]
        else:
            ports = range(self.preferred_port, self.preferred_port + self.port_attempts)

        last_error = None
        for port in ports:
            try:
                return _ReviewHTTPServer((self.host, port), ReviewRequestHandler, self)
            except OSError as e:
                last_error = e
                log.debug(f"Port {port} unavailable: {e}")

        raise PortExhaustionError(
            f"No available port in range {ports[0]}-{ports[-1]} on {self.host}"
        ) from last_error

    def _serve(self, httpd: _ReviewHTTPServer) -> None:
        try:
            httpd.serve_forever(poll_interval=0.1)
        except Exception as e:
            logger.log_review_event("serve_failed", self._port, "error", {"error": str(e)})
            self._resolve(ReviewDecision.ERRORED, f"Review server failed: {e}")
            self.stop()

    def _resolve(self, decision: ReviewDecision, error: str = None) -> bool:
        with self._lock:
            if self._decision.done():
                return False
            self.error = error
            if self.session is not None:
                self.session.decision = decision
            self._decision.set_result(decision)

        logger.log_review_event("decision", self._port, details={"decision": decision.value})
        return True

    def handle_action(self, decision: ReviewDecision) -> None:
        """Resolve from an HTTP action, then stop once the response has had time to flush."""
        if not self._resolve(decision):
            return
        with self._lock:
            if self._state != ServerState.RUNNING:
                return
            self._grace_timer = threading.Timer(self.shutdown_grace_sec, self.stop)
            self._grace_timer.daemon = True
            self._grace_timer.start()

    def _on_timeout(self) -> None:
        if self._resolve(ReviewDecision.TIMED_OUT, "Review window expired"):
            self.stop()

    def wait_for_decision(self, timeout: float = None) -> ReviewDecision:
        """
        Block until the review resolves.

        A caller-side timeout counts as the review timing out and stops the server.
        """
        if self._state == ServerState.IDLE:
            raise ReviewServerError("Review server has not been started")
        try:
            return self._decision.result(timeout)
        except FutureTimeoutError:
            self._resolve(ReviewDecision.TIMED_OUT, "Timed out waiting for a review decision")
            self.stop()
            return self.decision

    def get_url(self) -> str:
        if self._state != ServerState.RUNNING:
            raise ReviewServerError(f"Review server is not running (state: {self._state.value})")
        return f"http://{self.host}:{self._port}/"

    def stop(self) -> None:
        """Stop serving. Safe to call repeatedly; a pending decision resolves as errored."""
        with self._lock:
            if self._state != ServerState.RUNNING:
                return
            self._state = ServerState.STOPPED
            httpd, thread = self._httpd, self._thread
            self._httpd = None
            for timer in (self._timeout_timer, self._grace_timer):
                if timer is not None:
                    timer.cancel()

        self._resolve(ReviewDecision.ERRORED, "Review server stopped before a decision was made")

        httpd.shutdown()
        httpd.server_close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

        logger.log_review_event("stop", self._port, details={"decision": self.decision.value})

    def __enter__(self) -> 'ReviewServer':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
