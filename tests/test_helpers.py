"""
Regulatory Filing Platform
Tests — shared helpers and request middleware.

Covers:
    - parse_date / parse_date_input formats
    - KeyedLocks serialization per key, entries dropped on release
    - request timing headers, request-id echo, log scope from URL
    - production config refuses to start without required settings
    - rate limit key resolution
    - JSON / readable log formatters, request-id filter
"""

import json
import logging
import threading
import time
from datetime import date, datetime

import pytest
from flask import g

from filing_engine.config import ProductionConfig
from filing_engine.core.exceptions import ValidationError
from filing_engine.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    RequestIdFilter,
    build_formatter,
)
from filing_engine.middleware.rate_limiter import tenant_rate_limit_key
from filing_engine.middleware.timing import _request_scope
from filing_engine.utils.helpers import KeyedLocks, parse_date, parse_date_input


class TestParseDate:
    @pytest.mark.parametrize("value", ["2024-03-31", "2024-03-31T17:30:00", "31.03.2024",
                                       date(2024, 3, 31), datetime(2024, 3, 31, 9, 0)])
    def test_accepted_formats(self, value):
        assert parse_date(value) == date(2024, 3, 31)

    def test_bad_input_is_none(self):
        assert parse_date("03/31/2024") is None
        assert parse_date("") is None
        assert parse_date(None) is None

    def test_strict_variant_raises(self):
        with pytest.raises(ValidationError) as exc:
            parse_date_input("soon", "reporting_period_end")
        assert exc.value.details == {"reporting_period_end": "soon"}


class TestKeyedLocks:
    def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        active = []
        overlaps = []

        def _work():
            with locks.hold("filing-1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=_work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            acquired = threading.Event()

            def _other():
                with locks.hold("b"):
                    acquired.set()

            t = threading.Thread(target=_other)
            t.start()
            assert acquired.wait(timeout=2)
            t.join()

    def test_try_hold_reports_busy(self):
        locks = KeyedLocks()
        with locks.hold("sweep"):
            with locks.try_hold("sweep") as acquired:
                assert acquired is False
        with locks.try_hold("sweep") as acquired:
            assert acquired is True

    def test_released_keys_are_dropped(self):
        locks = KeyedLocks()
        for n in range(1000):
            with locks.hold(f"filing-{n}"):
                assert len(locks) == 1
        with locks.try_hold("sweep"):
            pass
        assert len(locks) == 0

    def test_entry_kept_while_another_thread_waits(self):
        locks = KeyedLocks()
        waiting = threading.Event()
        done = threading.Event()

        def _waiter():
            waiting.set()
            with locks.hold("filing-1"):
                done.set()

        with locks.hold("filing-1"):
            t = threading.Thread(target=_waiter)
            t.start()
            waiting.wait(timeout=2)
            time.sleep(0.02)
        t.join(timeout=2)
        assert done.is_set()
        assert len(locks) == 0


class TestRequestTiming:
    def test_headers_present(self, client):
        res = client.get("/api/v1/health")
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0
        assert len(res.headers["X-Request-ID"]) == 12

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "trace-42"})
        assert res.headers["X-Request-ID"] == "trace-42"

    def test_scope_from_url_and_query(self, app):
        with app.test_request_context("/api/v1/filings/f-123/validate?tenant_id=4", method="POST"):
            assert _request_scope() == {"filing_id": "f-123", "tenant_id": 4}

    def test_scope_tenant_from_body(self, app):
        with app.test_request_context("/api/v1/workflows/w-9/executions", method="POST",
                                      json={"tenant_id": 2}):
            assert _request_scope() == {"workflow_id": "w-9", "tenant_id": 2}


class TestProductionConfig:
    def test_missing_settings_listed(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        monkeypatch.setattr(ProductionConfig, "SUBMISSION_GATEWAY_URL", "https://efts.example.test")
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL, SECRET_KEY"):
            ProductionConfig()

    def test_complete_settings_accepted(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", "postgresql://db/filings")
        monkeypatch.setattr(ProductionConfig, "SUBMISSION_GATEWAY_URL", "https://efts.example.test")
        monkeypatch.setenv("SECRET_KEY", "s3cret")
        assert ProductionConfig().SQLALCHEMY_ENGINE_OPTIONS["pool_size"] == 5


class TestRateLimitKey:
    def test_tenant_from_query(self, app):
        with app.test_request_context("/api/v1/filings?tenant_id=7"):
            assert tenant_rate_limit_key() == "tenant:7"

    def test_tenant_from_body(self, app):
        with app.test_request_context("/api/v1/filings", method="POST", json={"tenant_id": 3}):
            assert tenant_rate_limit_key() == "tenant:3"

    def test_falls_back_to_remote_addr(self, app):
        with app.test_request_context("/api/v1/filings", environ_base={"REMOTE_ADDR": "10.0.0.5"}):
            assert tenant_rate_limit_key() == "10.0.0.5"


class TestLogFormatters:
    @staticmethod
    def _record(level=logging.INFO, **extra):
        record = logging.LogRecord("filing_engine.services.filing_lifecycle", level, __file__, 10,
                                   "Filing %s filed", ("f-1",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_groups_domain_context(self):
        line = json.loads(JSONFormatter().format(self._record(filing_id="f-1", tenant_id=3,
                                                              request_id="abc")))
        assert line["msg"] == "Filing f-1 filed"
        assert line["context"] == {"tenant_id": 3, "filing_id": "f-1"}
        assert line["request_id"] == "abc"
        assert "where" not in line

    def test_json_warning_has_location(self):
        line = json.loads(JSONFormatter().format(self._record(level=logging.WARNING)))
        assert line["where"].endswith(":10")
        assert "context" not in line

    def test_readable_tags(self):
        text = ReadableFormatter().format(self._record(execution_id="e-9", step_id="review"))
        assert "[exec=e-9 step=review] Filing f-1 filed" in text
        assert "\033[" not in text

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError):
            build_formatter("xml")

    def test_request_id_filter(self, app):
        record = self._record()
        with app.test_request_context("/api/v1/health"):
            g.request_id = "req-1"
            RequestIdFilter().filter(record)
        assert record.request_id == "req-1"
