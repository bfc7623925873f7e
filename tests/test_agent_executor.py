"""
Tests for the agent executor: retry classification, backoff, idempotency keys,
cancellation and health probes.
"""

import errno
import json
import threading

import pytest
import requests
from unittest.mock import MagicMock, patch

from formation.agents.executor import AgentExecutor
from formation.agents.types import (
    AgentError,
    AgentStatus,
    RequestOptions,
    RetryPolicy,
    merge_options,
)


def make_response(status=200, body=None, reason="OK"):
    response = requests.Response()
    response.status_code = status
    response.reason = reason
    response.url = "http://agent.test/"
    if body is None:
        response._content = b""
    else:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def executor(session):
    policy = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=3.0, backoff_multiplier=2.0)
    return AgentExecutor("test-agent", "http://agent.test/", api_key="secret-key",
                         timeout=5.0, retry_policy=policy, session=session)


@pytest.fixture
def sleep():
    with patch("formation.agents.executor.time.sleep") as mock_sleep:
        yield mock_sleep


class TestRetryPolicy:
    """Test backoff arithmetic and validation."""

    def test_delays(self):
        """Delay grows geometrically and is capped at max_delay."""
        policy = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=5.0, backoff_multiplier=2.0)
        assert [policy.delay_for_attempt(i) for i in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"initial_delay": -1},
        {"initial_delay": 20.0, "max_delay": 10.0},
        {"backoff_multiplier": 1.0},
    ])
    def test_invalid_policy(self, kwargs):
        """Nonsensical policies are rejected at construction."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRequests:
    """Test successful requests and response decoding."""

    def test_json_response(self, executor, session):
        """JSON bodies are decoded and the URL is joined to the base."""
        session.request.return_value = make_response(200, {"ok": True})

        assert executor.get("/status") == {"ok": True}

        args, kwargs = session.request.call_args
        assert args == ("GET", "http://agent.test/status")
        assert kwargs["timeout"] == 5.0
        assert kwargs["headers"]["Authorization"] == "Bearer secret-key"

    def test_empty_response(self, executor, session):
        """204 and empty bodies return None."""
        session.request.return_value = make_response(204)
        assert executor.delete("/thing") is None

    def test_non_json_response(self, executor, session):
        """A 200 with a non-JSON body is an INVALID_RESPONSE error."""
        response = make_response(200)
        response._content = b"<html>oops</html>"
        session.request.return_value = response

        with pytest.raises(AgentError) as exc_info:
            executor.get("/status")
        assert exc_info.value.code == "INVALID_RESPONSE"

    def test_per_call_timeout(self, executor, session):
        """RequestOptions.timeout overrides the executor timeout."""
        session.request.return_value = make_response(200, {})
        executor.post("/slow", {"a": 1}, RequestOptions(timeout=60.0))
        assert session.request.call_args[1]["timeout"] == 60.0
        assert session.request.call_args[1]["json"] == {"a": 1}


class TestRetries:
    """Test retry behaviour."""

    def test_exhaustion(self, executor, session, sleep):
        """Retryable failures are attempted max_attempts times with capped backoff."""
        session.request.return_value = make_response(503, {"message": "busy"}, "Service Unavailable")

        with pytest.raises(AgentError) as exc_info:
            executor.get("/flaky")

        assert session.request.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        error = exc_info.value
        assert error.retryable is True
        assert error.http_status == 503
        assert error.code == "HTTP_503"
        assert error.message == "busy"

    def test_client_error_not_retried(self, executor, session, sleep):
        """A 400 fails after a single attempt."""
        session.request.return_value = make_response(
            400, {"error": {"code": "VALIDATION_ERROR", "message": "bad name"}}, "Bad Request"
        )

        with pytest.raises(AgentError) as exc_info:
            executor.post("/check", {})

        assert session.request.call_count == 1
        sleep.assert_not_called()
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert exc_info.value.message == "bad name"
        assert exc_info.value.retryable is False

    def test_rate_limit_retried(self, executor, session, sleep):
        """429 is retried and a later success is returned."""
        session.request.side_effect = [make_response(429, {}), make_response(200, {"done": 1})]
        assert executor.get("/limited") == {"done": 1}
        assert session.request.call_count == 2

    def test_retryable_body_code(self, session, sleep):
        """An error code listed as retryable makes a 4xx retryable."""
        executor = AgentExecutor("test-agent", "http://agent.test", session=session,
                                 retry_policy=RetryPolicy(retryable_error_codes={"RATE_LIMITED"}))
        session.request.side_effect = [
            make_response(409, {"code": "RATE_LIMITED"}),
            make_response(200, {"ok": True}),
        ]
        assert executor.get("/x") == {"ok": True}

    def test_timeout_retried(self, executor, session, sleep):
        """Timeouts are normalized to TIMEOUT and retried."""
        session.request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(AgentError) as exc_info:
            executor.get("/slow")

        assert exc_info.value.code == "TIMEOUT"
        assert session.request.call_count == 3

    def test_connection_error_retried(self, executor, session, sleep):
        """Connection failures are NETWORK_ERROR and retryable."""
        cause = ConnectionRefusedError(errno.ECONNREFUSED, "refused")
        error = requests.exceptions.ConnectionError("refused")
        error.__cause__ = cause
        session.request.side_effect = [error, make_response(200, {"ok": True})]

        assert executor.get("/x") == {"ok": True}
        assert session.request.call_count == 2

    def test_unexpected_exception_normalized(self, executor, session, sleep):
        """Any other exception becomes a non-retryable UNKNOWN_ERROR."""
        session.request.side_effect = RuntimeError("boom")

        with pytest.raises(AgentError) as exc_info:
            executor.get("/p")

        assert exc_info.value.code == "UNKNOWN_ERROR"
        assert exc_info.value.retryable is False
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert session.request.call_count == 1
        sleep.assert_not_called()

    def test_skip_retry(self, executor, session, sleep):
        """skip_retry makes exactly one attempt even for retryable errors."""
        session.request.return_value = make_response(502, {})
        with pytest.raises(AgentError):
            executor.get("/x", RequestOptions(skip_retry=True))
        assert session.request.call_count == 1

    def test_idempotency_key_stable(self, executor, session, sleep):
        """Every retry of one call sends the same Idempotency-Key."""
        session.request.side_effect = [make_response(500, {}), make_response(500, {}), make_response(200, {})]

        executor.post("/payments/process", {}, RequestOptions(idempotency_key="payment-abc"))

        keys = [c.kwargs["headers"]["Idempotency-Key"] for c in session.request.call_args_list]
        assert keys == ["payment-abc"] * 3


class TestCancellation:
    """Test the cancel_event signal."""

    def test_cancelled_before_start(self, executor, session):
        """A set cancel_event stops the call before any attempt."""
        event = threading.Event()
        event.set()
        with pytest.raises(AgentError) as exc_info:
            executor.get("/x", RequestOptions(cancel_event=event))
        assert exc_info.value.code == "CANCELLED"
        session.request.assert_not_called()

    def test_cancel_during_backoff(self, executor, session):
        """Setting the event during backoff aborts the remaining retries."""
        event = threading.Event()

        def fail_and_cancel(*args, **kwargs):
            event.set()
            return make_response(503, {})

        session.request.side_effect = fail_and_cancel

        with pytest.raises(AgentError) as exc_info:
            executor.get("/x", RequestOptions(cancel_event=event))
        assert exc_info.value.code == "CANCELLED"
        assert session.request.call_count == 1


class TestOptions:
    """Test option merging used by the endpoint modules."""

    def test_defaults_fill_unset_fields(self):
        """Defaults apply only where the caller left a field unset."""
        merged = merge_options(RequestOptions(timeout=10.0), timeout=60.0, idempotency_key="k")
        assert merged.timeout == 10.0
        assert merged.idempotency_key == "k"

    def test_skip_retry_forced(self):
        """skip_retry from the endpoint always applies."""
        assert merge_options(None, skip_retry=True).skip_retry is True


class TestHealth:
    """Test health probes."""

    def test_online(self, executor, session):
        """A 200 from /health marks the agent online."""
        session.request.return_value = make_response(200, {"status": "ok"})
        health = executor.check_health()
        assert health.status == AgentStatus.ONLINE
        assert health.consecutive_failures == 0
        assert health.last_success_at is not None
        assert session.request.call_args.args[1] == "http://agent.test/health"

    def test_degraded(self, executor, session):
        """A body status of degraded is reported as degraded."""
        session.request.return_value = make_response(200, {"status": "degraded"})
        assert executor.check_health().status == AgentStatus.DEGRADED
        assert executor.check_connectivity() is True

    def test_offline_counts_failures(self, executor, session):
        """Failures never raise and increment the failure count."""
        session.request.return_value = make_response(200, {"status": "ok"})
        executor.check_health()
        session.request.side_effect = requests.exceptions.ConnectionError("down")

        first = executor.check_health()
        second = executor.check_health()

        assert second.status == AgentStatus.OFFLINE
        assert second.consecutive_failures == 2
        assert second.last_success_at == first.last_success_at
        assert executor.last_health is second
        assert executor.check_connectivity() is False

    def test_periodic_checks_stop(self, executor, session):
        """Background checking starts and stops cleanly."""
        session.request.return_value = make_response(200, {})
        executor.start_health_checking(0.01)
        assert executor.is_health_checking
        executor.stop_health_checking()
        executor.stop_health_checking()
        assert not executor.is_health_checking

    def test_invalid_interval(self, executor):
        """Non-positive intervals are rejected."""
        with pytest.raises(ValueError):
            executor.start_health_checking(-1)

    def test_destroy_keeps_injected_session(self, executor, session):
        """A session passed in by the caller is not closed."""
        executor.destroy()
        session.close.assert_not_called()
