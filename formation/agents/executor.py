"""
Retry executor shared by every remote agent client.

Each agent module holds an AgentExecutor and calls its get/post/put/delete helpers;
the executor owns timeouts, retry with exponential backoff, error normalization
and optional periodic health probes.

Retryability:
    - timeouts and connection failures are always retryable
    - HTTP errors are retryable when the status is in the policy's status set or the
      response body's "code" is in the policy's error-code set
    - OS-level errors are retryable when their errno name is in the error-code set
    - anything else (including unparseable success bodies) is not retried
"""

import errno
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from formation.core.config import VERSION
from util.logging import logger

from .types import (
    DEFAULT_RETRY_POLICY,
    AgentError,
    AgentStatus,
    ConnectionHealth,
    RequestOptions,
    RetryPolicy,
)

log = logging.getLogger(__name__)

HEALTH_CHECK_PATH = "/health"
HEALTH_CHECK_TIMEOUT = 5.0


def _errno_name(exc: BaseException) -> Optional[str]:
    """Walk an exception chain looking for an OS errno, e.g. 'ECONNRESET'."""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, OSError) and current.errno in errno.errorcode:
            return errno.errorcode[current.errno]
        stack.append(current.__cause__)
        stack.append(current.__context__)
        stack.extend(arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            stack.append(reason)
    return None


class AgentExecutor:
    """Executes requests against one named agent with timeout, retry and health checks."""

    def __init__(self, agent_name: str, base_url: str, api_key: str = None, timeout: float = 30.0,
                 retry_policy: RetryPolicy = None, headers: Dict[str, str] = None,
                 health_check_interval: float = None, session: requests.Session = None):
        self.agent_name = agent_name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.headers = dict(headers or {})
        self.health_check_interval = health_check_interval

        self._owns_session = session is None
        self.session = session or requests.Session()

        self._lock = threading.Lock()
        self._health = ConnectionHealth(agent_name=agent_name)
        self._health_stop: Optional[threading.Event] = None
        self._health_thread: Optional[threading.Thread] = None

        if health_check_interval:
            self.start_health_checking(health_check_interval)

    # ------------------------------------------------------------------
    # Request helpers

    def get(self, path: str, options: RequestOptions = None, params: Dict[str, Any] = None) -> Any:
        return self.request("GET", path, options=options, params=params)

    def post(self, path: str, body: Any = None, options: RequestOptions = None,
             params: Dict[str, Any] = None) -> Any:
        return self.request("POST", path, body=body, options=options, params=params)

    def put(self, path: str, body: Any = None, options: RequestOptions = None,
            params: Dict[str, Any] = None) -> Any:
        return self.request("PUT", path, body=body, options=options, params=params)

    def delete(self, path: str, options: RequestOptions = None, params: Dict[str, Any] = None) -> Any:
        return self.request("DELETE", path, options=options, params=params)

    def request(self, method: str, path: str, body: Any = None, options: RequestOptions = None,
                params: Dict[str, Any] = None) -> Any:
        """
        Issue a request through the retry loop.

        Setting options.cancel_event stops further attempts and interrupts the backoff
        sleep. A request already on the wire is not aborted; it ends when it completes
        or when the per-call timeout fires.

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            AgentError: normalized failure after retries are exhausted or on a
                non-retryable error
        """
        options = options or RequestOptions()
        url = self._url(path)
        headers = self._build_headers(options)
        timeout = options.timeout or self.timeout
        max_attempts = 1 if options.skip_retry else self.retry_policy.max_attempts

        attempt = 1
        while True:
            if options.cancelled:
                raise AgentError(f"Request to {self.agent_name} cancelled", "CANCELLED")

            try:
                return self._send(method, url, path, body, params, headers, timeout, attempt)
            except AgentError as error:
                if not error.retryable or attempt >= max_attempts:
                    raise

                delay = self.retry_policy.delay_for_attempt(attempt)
                logger.log_agent_retry(self.agent_name, path, attempt, delay, error.code)
                self._sleep(delay, options)
                attempt += 1

    def _sleep(self, delay: float, options: RequestOptions) -> None:
        if options.cancel_event is None:
            time.sleep(delay)
            return
        if options.cancel_event.wait(delay):
            raise AgentError(f"Request to {self.agent_name} cancelled during retry backoff", "CANCELLED")

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _build_headers(self, options: RequestOptions) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"formation-cli/{VERSION}",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(self.headers)
        headers.update(options.headers)
        if options.idempotency_key:
            headers["Idempotency-Key"] = options.idempotency_key
        return headers

    def _send(self, method: str, url: str, path: str, body: Any, params: Optional[Dict[str, Any]],
              headers: Dict[str, str], timeout: float, attempt: int) -> Any:
        start = time.monotonic()
        try:
            response = self.session.request(
                method, url, json=body, params=params, headers=headers, timeout=timeout
            )
        except requests.exceptions.Timeout as e:
            error = AgentError(
                f"Request to {self.agent_name} timed out after {timeout}s", "TIMEOUT", retryable=True
            )
            self._log_failure(method, path, attempt, start, error)
            raise error from e
        except requests.exceptions.ConnectionError as e:
            code = _errno_name(e)
            error = AgentError(
                f"Unable to reach {self.agent_name} agent: {e}", "NETWORK_ERROR", retryable=True,
                details={"errno": code} if code else None
            )
            self._log_failure(method, path, attempt, start, error)
            raise error from e
        except requests.exceptions.RequestException as e:
            error = AgentError(f"{self.agent_name} request failed: {e}", "UNKNOWN_ERROR")
            self._log_failure(method, path, attempt, start, error)
            raise error from e
        except OSError as e:
            # RequestException subclasses OSError, so only raw socket errors reach here
            code = _errno_name(e)
            error = AgentError(
                f"{self.agent_name} request failed: {e}", code or "UNKNOWN_ERROR",
                retryable=code in self.retry_policy.retryable_error_codes
            )
            self._log_failure(method, path, attempt, start, error)
            raise error from e
        except Exception as e:
            error = AgentError(f"{self.agent_name} request failed: {e}", "UNKNOWN_ERROR")
            self._log_failure(method, path, attempt, start, error)
            raise error from e

        duration_ms = (time.monotonic() - start) * 1000

        if response.status_code >= 400:
            error = self._http_error(response)
            self._log_failure(method, path, attempt, start, error)
            raise error

        logger.log_agent_request(self.agent_name, method, path, "success", attempt, duration_ms,
                                 {"http_status": response.status_code})

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AgentError(
                f"{self.agent_name} returned a non-JSON response", "INVALID_RESPONSE",
                http_status=response.status_code
            ) from e

    def _http_error(self, response: requests.Response) -> AgentError:
        status = response.status_code
        body: Dict[str, Any] = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except ValueError:
            pass

        error_obj = body.get("error") if isinstance(body.get("error"), dict) else {}
        body_code = body.get("code") or error_obj.get("code")
        message = (
            body.get("message")
            or error_obj.get("message")
            or (body.get("error") if isinstance(body.get("error"), str) else None)
            or f"HTTP {status}: {response.reason or 'error'}"
        )
        retryable = (
            status in self.retry_policy.retryable_status_codes
            or body_code in self.retry_policy.retryable_error_codes
        )
        return AgentError(
            message, body_code or f"HTTP_{status}", retryable=retryable,
            http_status=status, details=body or None
        )

    def _log_failure(self, method: str, path: str, attempt: int, start: float, error: AgentError) -> None:
        logger.log_agent_request(
            self.agent_name, method, path, "failed", attempt, (time.monotonic() - start) * 1000,
            {"code": error.code, "retryable": error.retryable, "http_status": error.http_status}
        )

    # ------------------------------------------------------------------
    # Health

    @property
    def last_health(self) -> ConnectionHealth:
        with self._lock:
            return self._health

    def check_health(self) -> ConnectionHealth:
        """Probe the agent's health endpoint. Never raises."""
        start = time.monotonic()
        with self._lock:
            previous = self._health
        now = datetime.now(timezone.utc)

        try:
            response = self.session.request(
                "GET", self._url(HEALTH_CHECK_PATH),
                headers=self._build_headers(RequestOptions()), timeout=HEALTH_CHECK_TIMEOUT
            )
            response.raise_for_status()
            latency_ms = (time.monotonic() - start) * 1000
            status = AgentStatus.ONLINE
            try:
                body = response.json() if response.content else {}
            except ValueError:
                body = {}
            if isinstance(body, dict) and str(body.get("status", "")).lower() == "degraded":
                status = AgentStatus.DEGRADED
            health = ConnectionHealth(
                agent_name=self.agent_name,
                status=status,
                latency_ms=latency_ms,
                last_success_at=now,
                last_failure_at=previous.last_failure_at,
                consecutive_failures=0,
            )
        except (requests.exceptions.RequestException, OSError) as e:
            health = ConnectionHealth(
                agent_name=self.agent_name,
                status=AgentStatus.OFFLINE,
                latency_ms=None,
                last_success_at=previous.last_success_at,
                last_failure_at=now,
                consecutive_failures=previous.consecutive_failures + 1,
                error_message=str(e),
            )

        with self._lock:
            self._health = health

        logger.log_health_check(self.agent_name, health.status.value, health.latency_ms,
                                health.consecutive_failures, health.error_message)
        return health

    def check_connectivity(self) -> bool:
        """True when the agent answers its health probe."""
        return self.check_health().status in (AgentStatus.ONLINE, AgentStatus.DEGRADED)

    def start_health_checking(self, interval: float = None) -> None:
        """Probe every `interval` seconds on a daemon thread. Restarts if already running."""
        interval = interval or self.health_check_interval
        if not interval or interval <= 0:
            raise ValueError("Health check interval must be > 0 seconds")

        self.stop_health_checking()

        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._health_loop, args=(interval, stop_event),
            name=f"{self.agent_name}-health", daemon=True
        )
        with self._lock:
            self._health_stop = stop_event
            self._health_thread = thread
        thread.start()
        log.debug(f"Health checking started for {self.agent_name} every {interval}s")

    def _health_loop(self, interval: float, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval):
            self.check_health()

    def stop_health_checking(self) -> None:
        """Stop periodic probes. Safe to call repeatedly."""
        with self._lock:
            stop_event, thread = self._health_stop, self._health_thread
            self._health_stop = None
            self._health_thread = None

        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=HEALTH_CHECK_TIMEOUT + 1)

    @property
    def is_health_checking(self) -> bool:
        with self._lock:
            return self._health_thread is not None and self._health_thread.is_alive()

    def destroy(self) -> None:
        """Release the health-check thread and the HTTP session."""
        self.stop_health_checking()
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> 'AgentExecutor':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()
