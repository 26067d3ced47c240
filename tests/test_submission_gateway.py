"""
Tests for the regulator submission gateway.

Covers:
    - sandbox confirmations (SBX- / TEST- prefixes, deterministic per payload)
    - HTTP: retry on 5xx and transport errors, 4xx rejection without retry
    - explicit accepted=false in a 200 body
    - circuit breaker opening after repeated failures, window expiry, trial attempt
    - breaker updates from concurrent submissions do not interleave
    - factory selection from config
"""

import threading
import time
from unittest.mock import MagicMock

import requests

from filing_engine.integrations.submission_gateway import (
    EndpointBreaker,
    HttpSubmissionGateway,
    SandboxSubmissionGateway,
    SubmissionOptions,
    build_submission_gateway,
    compute_payload_hash,
)

PAYLOAD = {"form_type": "form_13f", "form_data": {"holdings": [{"cusip": "037833100"}]}}


def _response(status_code, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    resp.text = text
    return resp


def _gateway(session, **kwargs):
    return HttpSubmissionGateway("https://filings.example.test/api/", session=session,
                                 retry_backoff=(0,), **kwargs)


class TestSandbox:
    def test_confirmation_derived_from_payload(self):
        gateway = SandboxSubmissionGateway()
        first = gateway.submit(PAYLOAD, SubmissionOptions())
        second = gateway.submit(PAYLOAD, SubmissionOptions())
        assert first.success is True
        assert first.confirmation_number == second.confirmation_number
        assert first.confirmation_number == "SBX-" + compute_payload_hash(PAYLOAD)[:10].upper()

    def test_test_filing_prefix(self):
        result = SandboxSubmissionGateway().submit(PAYLOAD, SubmissionOptions(test_filing=True))
        assert result.confirmation_number.startswith("TEST-")

    def test_options_from_dict(self):
        options = SubmissionOptions.from_dict({"test_filing": 1, "attachments": None})
        assert options.test_filing is True
        assert options.expedited_processing is False
        assert options.attachments == []


class TestHttpGateway:
    def test_accepted(self):
        session = MagicMock()
        session.post.return_value = _response(200, {
            "confirmation_number": "0001234567-24-000001", "submission_id": "sub-1",
            "accepted_at": "2024-05-10T14:00:00Z"})
        result = _gateway(session, api_key="k-1").submit(PAYLOAD, SubmissionOptions())

        assert result.success is True
        assert result.confirmation_number == "0001234567-24-000001"
        call = session.post.call_args
        assert call.args[0] == "https://filings.example.test/api/filings"
        assert call.kwargs["headers"]["Authorization"] == "Bearer k-1"
        assert call.kwargs["headers"]["Idempotency-Key"] == compute_payload_hash(PAYLOAD)
        assert call.kwargs["json"]["filing"] == PAYLOAD

    def test_retries_on_503(self):
        session = MagicMock()
        session.post.side_effect = [
            _response(503, text="unavailable"),
            _response(200, {"confirmation_number": "C-1"}),
        ]
        result = _gateway(session).submit(PAYLOAD, SubmissionOptions())
        assert result.success is True
        assert session.post.call_count == 2

    def test_retries_on_transport_error(self):
        session = MagicMock()
        session.post.side_effect = [requests.Timeout(), _response(200, {"confirmation_number": "C-2"})]
        result = _gateway(session).submit(PAYLOAD, SubmissionOptions())
        assert result.confirmation_number == "C-2"

    def test_gives_up_after_retries(self):
        session = MagicMock()
        session.post.return_value = _response(502, text="bad gateway")
        result = _gateway(session).submit(PAYLOAD, SubmissionOptions())
        assert result.success is False
        assert session.post.call_count == 3
        assert result.errors == ["HTTP 502: bad gateway"]

    def test_client_error_is_rejection_without_retry(self):
        session = MagicMock()
        session.post.return_value = _response(422, {"errors": ["CIK not recognised"]})
        result = _gateway(session).submit(PAYLOAD, SubmissionOptions())
        assert result.success is False
        assert result.errors == ["CIK not recognised"]
        assert session.post.call_count == 1

    def test_explicit_not_accepted(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"accepted": False, "errors": ["Late filing window"]})
        result = _gateway(session).submit(PAYLOAD, SubmissionOptions())
        assert result.success is False
        assert result.errors == ["Late filing window"]

    def test_rejection_without_body(self):
        session = MagicMock()
        session.post.return_value = _response(400, text="malformed")
        result = _gateway(session).submit(PAYLOAD, SubmissionOptions())
        assert result.errors == ["HTTP 400: malformed"]


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class _PausingClock(_Clock):
    """Parks the first reading until released, holding a breaker mid-update."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self._paused = False

    def __call__(self):
        if not self._paused:
            self._paused = True
            self.entered.set()
            self.release.wait(timeout=5)
        return super().__call__()


class TestEndpointBreaker:
    def test_opens_at_threshold_then_allows_a_trial(self):
        clock = _Clock()
        breaker = EndpointBreaker("https://filings.example.test", clock=clock)
        for _ in range(EndpointBreaker.FAILURE_THRESHOLD):
            assert breaker.is_open is False
            breaker.record_failure()
        assert breaker.is_open is True

        clock.now += EndpointBreaker.OPEN_SECONDS
        assert breaker.is_open is False
        breaker.record_failure()
        assert breaker.is_open is True

    def test_old_failures_fall_out_of_window(self):
        clock = _Clock()
        breaker = EndpointBreaker("https://filings.example.test", clock=clock)
        for _ in range(EndpointBreaker.FAILURE_THRESHOLD - 1):
            breaker.record_failure()
        clock.now += EndpointBreaker.WINDOW_SECONDS + 1
        breaker.record_failure()
        assert breaker.is_open is False

    def test_success_waits_for_an_in_flight_failure(self):
        clock = _PausingClock()
        breaker = EndpointBreaker("https://filings.example.test", clock=clock)
        errors = []

        def run(call):
            try:
                call()
            except Exception as exc:
                errors.append(exc)

        failing = threading.Thread(target=run, args=(breaker.record_failure,))
        failing.start()
        assert clock.entered.wait(timeout=5)
        succeeding = threading.Thread(target=run, args=(breaker.record_success,))
        succeeding.start()
        time.sleep(0.05)
        assert succeeding.is_alive()

        clock.release.set()
        failing.join(timeout=5)
        succeeding.join(timeout=5)

        assert errors == []
        # the success landed last, so a fresh run of failures starts from zero
        for _ in range(EndpointBreaker.FAILURE_THRESHOLD - 1):
            breaker.record_failure()
        assert breaker.is_open is False

    def test_concurrent_success_and_failure_never_raise(self):
        breaker = EndpointBreaker("https://filings.example.test")
        errors = []

        def hammer(call):
            try:
                for _ in range(2000):
                    call()
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=hammer, args=(call,))
                   for call in (breaker.record_failure, breaker.record_success) * 4]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert errors == []


class TestCircuitBreaker:
    def test_opens_after_repeated_failures(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        gateway = _gateway(session)

        gateway.submit(PAYLOAD, SubmissionOptions())
        gateway.submit(PAYLOAD, SubmissionOptions())
        result = gateway.submit(PAYLOAD, SubmissionOptions())

        assert session.post.call_count == 6
        assert result.success is False
        assert "Circuit breaker open" in result.errors[0]

    def test_success_resets_failures(self):
        session = MagicMock()
        session.post.side_effect = [requests.ConnectionError("refused")] * 3 + [
            _response(200, {"confirmation_number": "C-3"})] + [requests.ConnectionError("refused")] * 3
        gateway = _gateway(session)

        gateway.submit(PAYLOAD, SubmissionOptions())
        assert gateway.submit(PAYLOAD, SubmissionOptions()).success is True
        gateway.submit(PAYLOAD, SubmissionOptions())
        assert session.post.call_count == 7

    def test_breakers_are_per_endpoint(self):
        failing = MagicMock()
        failing.post.side_effect = requests.ConnectionError("refused")
        for _ in range(2):
            _gateway(failing).submit(PAYLOAD, SubmissionOptions())

        healthy = MagicMock()
        healthy.post.return_value = _response(200, {"confirmation_number": "C-4"})
        other = HttpSubmissionGateway("https://backup.example.test", session=healthy, retry_backoff=(0,))
        assert other.submit(PAYLOAD, SubmissionOptions()).success is True


class TestFactory:
    def test_sandbox_without_url(self):
        assert isinstance(build_submission_gateway({"SUBMISSION_GATEWAY_URL": ""}),
                          SandboxSubmissionGateway)

    def test_http_with_url(self):
        gateway = build_submission_gateway({
            "SUBMISSION_GATEWAY_URL": "https://filings.example.test",
            "SUBMISSION_GATEWAY_API_KEY": "secret",
            "SUBMISSION_GATEWAY_TIMEOUT": 10,
        })
        assert isinstance(gateway, HttpSubmissionGateway)
        assert gateway.api_key == "secret"
        assert gateway.timeout == 10
