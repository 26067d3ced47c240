"""
Regulatory Filing Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())

Filing thresholds are keyed jurisdiction → form type → constant name and can
be overridden per deployment with FILING_THRESHOLDS_JSON, e.g.
    FILING_THRESHOLDS_JSON='{"SEC": {"form_13f": {"reporting_threshold": 120000000}}}'
"""

import copy
import json
import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'filing_platform_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


# ── Regulatory thresholds (USD) ──────────────────────────────────────────────

_SEC_THRESHOLDS = {
    "form_13f": {
        "reporting_threshold": 100_000_000,
    },
    "form_pf": {
        "reporting_threshold": 150_000_000,
        "section_4_threshold": 500_000_000,
        "large_fund_threshold": 1_500_000_000,
    },
    "form_adv": {
        "sec_registration_threshold": 100_000_000,
    },
    "best_execution": {
        "min_reportable_notional": 0,
        "venue_concentration_hhi": 2500,
    },
    "gips_composite": {
        "min_composite_assets": 0,
    },
}

DEFAULT_FILING_THRESHOLDS = {
    "SEC": _SEC_THRESHOLDS,
    "FINRA": copy.deepcopy(_SEC_THRESHOLDS),
    "FCA": {
        "best_execution": {"min_reportable_notional": 0, "venue_concentration_hhi": 2000},
        "gips_composite": {"min_composite_assets": 0},
    },
    "ESMA": {
        "best_execution": {"min_reportable_notional": 0, "venue_concentration_hhi": 2000},
        "gips_composite": {"min_composite_assets": 0},
    },
}

# Days after reporting period end, per form type and filing frequency.
# "default" applies when the frequency is not listed.
DEFAULT_DUE_DATE_RULES = {
    "form_13f": {"default": 45},
    "form_pf": {"annual": 120, "quarterly": 60, "default": 120},
    "form_adv": {"annual": 90, "default": 30},
    "best_execution": {"quarterly": 30, "annual": 60, "ad_hoc": 15, "default": 30},
    "gips_composite": {"default": 90},
}


def _deep_merge(base, overrides):
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_json_env(name, base):
    raw = os.getenv(name, "")
    if not raw:
        return copy.deepcopy(base)
    return _deep_merge(base, json.loads(raw))


def _database_url(env_var, fallback):
    # Railway/Heroku hand out postgres://; SQLAlchemy 2.0 only accepts postgresql://
    raw = os.getenv(env_var, "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else fallback


_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # Logging (unset → DEBUG/readable in dev and tests, INFO/json otherwise)
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Filing rules
    FILING_THRESHOLDS = _load_json_env("FILING_THRESHOLDS_JSON", DEFAULT_FILING_THRESHOLDS)
    FILING_DUE_DATE_RULES = _load_json_env("FILING_DUE_DATE_RULES_JSON", DEFAULT_DUE_DATE_RULES)

    # Regulator submission channel (blank URL → sandbox gateway)
    SUBMISSION_GATEWAY_URL = os.getenv("SUBMISSION_GATEWAY_URL", "")
    SUBMISSION_GATEWAY_API_KEY = os.getenv("SUBMISSION_GATEWAY_API_KEY", "")
    SUBMISSION_GATEWAY_TIMEOUT = int(os.getenv("SUBMISSION_GATEWAY_TIMEOUT", "30"))

    # Outbound events
    EVENT_QUEUE_MAXSIZE = int(os.getenv("EVENT_QUEUE_MAXSIZE", "1000"))
    EVENT_DISPATCH_MODE = os.getenv("EVENT_DISPATCH_MODE", "background")

    # Workflow scheduling
    WORKFLOW_SCHEDULE_BUFFER_DAYS = int(os.getenv("WORKFLOW_SCHEDULE_BUFFER_DAYS", "5"))
    WORKFLOW_HOURS_PER_DAY = int(os.getenv("WORKFLOW_HOURS_PER_DAY", "8"))

    # Background scheduler (reminder sweep)
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"
    REMINDER_SWEEP_INTERVAL_SECONDS = int(os.getenv("REMINDER_SWEEP_INTERVAL_SECONDS", "3600"))
    SCHEDULER_POLL_SECONDS = int(os.getenv("SCHEDULER_POLL_SECONDS", "30"))

    def __init__(self):
        self.check()

    def check(self):
        """Raise RuntimeError when a required setting is missing; no-op outside production."""


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    # Events are drained explicitly in tests
    EVENT_DISPATCH_MODE = "sync"
    SCHEDULER_ENABLED = False
    SUBMISSION_GATEWAY_URL = ""


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    # No wildcard default; origins must be listed
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def check(self):
        missing = [name for name, ok in (
            ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ("SUBMISSION_GATEWAY_URL", self.SUBMISSION_GATEWAY_URL),
        ) if not ok]
        if missing:
            raise RuntimeError(f"Production requires: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
