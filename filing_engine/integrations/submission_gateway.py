"""Regulator submission gateway.

Architecture:
  SubmissionGateway is the narrow interface FilingLifecycle depends on.
  Two implementations:
    - HttpSubmissionGateway    — JSON-over-HTTPS filing endpoint (requests)
    - SandboxSubmissionGateway — deterministic local acceptor for dev/test
  The HTTP path enforces: circuit breaker → auth header → idempotency key
  → retry on transport/5xx → structured log line.

Gateway constants:
  timeout    = configurable (default 30 s)
  retry_max  = 2     (transport errors and 502/503/504 only; 4xx is a rejection)
  backoff    = [1, 4] seconds
  breaker    = 5 failures in 60 s → refuse for 30 s, then one trial attempt

Every submit() returns a SubmissionResult. Transport failure is a normal
negative result, never an exception.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import requests

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = (1, 4)
_RETRYABLE_STATUS = frozenset({502, 503, 504})


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass
class SubmissionOptions:
    test_filing: bool = False
    expedited_processing: bool = False
    attachments: list[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "SubmissionOptions":
        data = data or {}
        return cls(
            test_filing=bool(data.get("test_filing", False)),
            expedited_processing=bool(data.get("expedited_processing", False)),
            attachments=list(data.get("attachments") or []),
        )

    def to_dict(self) -> dict:
        return {
            "test_filing": self.test_filing,
            "expedited_processing": self.expedited_processing,
            "attachments": self.attachments,
        }


@dataclass
class SubmissionResult:
    """Outcome of one submission attempt. Check .success before reading confirmation fields."""
    success: bool
    confirmation_number: str | None = None
    submission_id: str | None = None
    accepted_at: str | None = None
    filing_url: str | None = None
    errors: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    payload_hash: str | None = None

    def to_log_dict(self) -> dict:
        """Structured representation for audit logging."""
        return {
            "success": self.success,
            "confirmation_number": self.confirmation_number,
            "submission_id": self.submission_id,
            "errors": self.errors,
            "processing_time_ms": self.processing_time_ms,
            "payload_hash": self.payload_hash,
        }


def compute_payload_hash(payload: Any) -> str | None:
    if payload is None:
        return None
    try:
        raw = json.dumps(payload, sort_keys=True, default=str).encode()
    except (TypeError, ValueError):
        return None
    return hashlib.sha256(raw).hexdigest()[:16]


# ── Interface ─────────────────────────────────────────────────────────────────


class SubmissionGateway(ABC):
    """Black-box channel to the regulator."""

    @abstractmethod
    def submit(self, payload: dict, options: SubmissionOptions) -> SubmissionResult:
        """Send payload. Must return a SubmissionResult even when the transport fails."""


# ── Sandbox ───────────────────────────────────────────────────────────────────


class SandboxSubmissionGateway(SubmissionGateway):
    """Accepts every payload; confirmation number is derived from the payload hash."""

    def submit(self, payload, options):
        t0 = time.perf_counter()
        payload_hash = compute_payload_hash(payload) or "0" * 16
        now = datetime.now(timezone.utc)
        prefix = "TEST" if options.test_filing else "SBX"
        result = SubmissionResult(
            success=True,
            confirmation_number=f"{prefix}-{payload_hash[:10].upper()}",
            submission_id=f"sandbox-{payload_hash}",
            accepted_at=now.isoformat(),
            filing_url=f"sandbox://filings/{payload_hash}",
            processing_time_ms=int((time.perf_counter() - t0) * 1000),
            payload_hash=payload_hash,
        )
        logger.info("Sandbox submission accepted confirmation=%s", result.confirmation_number)
        return result


# ── Circuit breaker ───────────────────────────────────────────────────────────


class EndpointBreaker:
    """Failure window for one regulator endpoint.

    Opens once FAILURE_THRESHOLD failures fall inside WINDOW_SECONDS and
    refuses submissions for OPEN_SECONDS. After that one attempt goes
    through; another failure re-opens it, any definitive response clears it.
    """

    FAILURE_THRESHOLD = 5
    WINDOW_SECONDS = 60
    OPEN_SECONDS = 30

    def __init__(self, endpoint: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.endpoint = endpoint
        self._clock = clock
        self._failures: deque[float] = deque()
        self._open_until = 0.0
        # Shared by concurrent submissions to the same endpoint
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._clock() < self._open_until

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.WINDOW_SECONDS:
                self._failures.popleft()
            opened = len(self._failures) >= self.FAILURE_THRESHOLD and now >= self._open_until
            if opened:
                self._open_until = now + self.OPEN_SECONDS
            failures = len(self._failures)
        if opened:
            logger.warning("Submission circuit breaker opened endpoint=%s failures=%d",
                           self.endpoint, failures)

    def record_success(self) -> None:
        with self._lock:
            self._failures.clear()
            self._open_until = 0.0


# ── HTTP gateway ──────────────────────────────────────────────────────────────


class HttpSubmissionGateway(SubmissionGateway):
    """Submission over HTTPS with retry and a per-endpoint circuit breaker.

    Usage:
        gw = HttpSubmissionGateway(base_url, api_key="...")
        result = gw.submit(payload, SubmissionOptions())
        if result.success:
            ...

    Tests inject a mock session: ``HttpSubmissionGateway(url, session=MagicMock())``.
    """

    # Shared by every gateway instance pointed at the same base URL
    _breakers: dict[str, EndpointBreaker] = {}
    _breakers_guard = threading.Lock()

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        retry_backoff: tuple[int, ...] = _RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.retry_backoff = retry_backoff

    @property
    def submit_url(self) -> str:
        return f"{self.base_url}/filings"

    @property
    def breaker(self) -> EndpointBreaker:
        with self._breakers_guard:
            if self.base_url not in self._breakers:
                self._breakers[self.base_url] = EndpointBreaker(self.base_url)
            return self._breakers[self.base_url]

    @classmethod
    def reset_circuit_breakers(cls) -> None:
        with cls._breakers_guard:
            cls._breakers.clear()

    # ── Submit ────────────────────────────────────────────────────────────────

    def _headers(self, payload_hash: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if payload_hash:
            # Lets the regulator collapse a retried POST into the original submission
            headers["Idempotency-Key"] = payload_hash
        return headers

    def _parse_response(self, resp, payload_hash, duration_ms) -> SubmissionResult:
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        body = body if isinstance(body, dict) else {}

        accepted = resp.ok and body.get("accepted", True) is not False
        errors = [str(e) for e in body.get("errors") or []]
        if not accepted and not errors:
            errors = [f"HTTP {resp.status_code}: {resp.text[:500]}"]
        return SubmissionResult(
            success=accepted,
            confirmation_number=body.get("confirmation_number"),
            submission_id=body.get("submission_id"),
            accepted_at=body.get("accepted_at"),
            filing_url=body.get("filing_url"),
            errors=errors,
            processing_time_ms=duration_ms,
            payload_hash=payload_hash,
        )

    def _post_once(self, body: dict, payload_hash: str | None):
        """One POST. Returns ``(response, None)`` for a definitive answer,
        ``(None, error_text)`` for anything worth retrying."""
        try:
            resp = self.session.post(self.submit_url, json=body,
                                     headers=self._headers(payload_hash),
                                     timeout=self.timeout)
        except requests.Timeout:
            return None, f"Request timed out after {self.timeout}s"
        except requests.RequestException as exc:
            return None, str(exc)[:500]
        if resp.status_code in _RETRYABLE_STATUS:
            return None, f"HTTP {resp.status_code}: {resp.text[:500]}"
        return resp, None

    def submit(self, payload, options):
        breaker = self.breaker
        if breaker.is_open:
            return SubmissionResult(
                success=False,
                errors=["Circuit breaker open — regulator submissions temporarily suspended"],
            )

        payload_hash = compute_payload_hash(payload)
        body = {"filing": payload, "options": options.to_dict()}
        started = time.perf_counter()
        attempts = _RETRY_MAX + 1
        error = "Unknown error"

        for attempt in range(1, attempts + 1):
            resp, error = self._post_once(body, payload_hash)
            if resp is not None:
                breaker.record_success()
                result = self._parse_response(resp, payload_hash,
                                              int((time.perf_counter() - started) * 1000))
                if result.success:
                    logger.info("Regulator accepted submission confirmation=%s duration_ms=%d",
                                result.confirmation_number, result.processing_time_ms)
                else:
                    logger.warning("Regulator rejected submission status=%d errors=%s",
                                   resp.status_code, result.errors)
                return result

            breaker.record_failure()
            logger.warning("Submission attempt %d/%d to %s failed: %s",
                           attempt, attempts, self.base_url, error)
            if attempt < attempts and self.retry_backoff:
                delay = self.retry_backoff[min(attempt - 1, len(self.retry_backoff) - 1)]
                if delay:
                    time.sleep(delay)

        return SubmissionResult(
            success=False,
            errors=[error],
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            payload_hash=payload_hash,
        )


# ── Factory ───────────────────────────────────────────────────────────────────


def build_submission_gateway(app_config: dict) -> SubmissionGateway:
    """HTTP gateway when SUBMISSION_GATEWAY_URL is set, otherwise the sandbox."""
    url = app_config.get("SUBMISSION_GATEWAY_URL")
    if not url:
        return SandboxSubmissionGateway()
    return HttpSubmissionGateway(
        url,
        api_key=app_config.get("SUBMISSION_GATEWAY_API_KEY") or None,
        timeout=app_config.get("SUBMISSION_GATEWAY_TIMEOUT", _DEFAULT_TIMEOUT),
    )
