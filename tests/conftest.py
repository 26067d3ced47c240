"""
Shared pytest fixtures for the Regulatory Filing Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - publisher: The app's event publisher (sync dispatch in testing)
    - Raw form inputs for Form ADV and Form 13F
"""

import pytest

from filing_engine import create_app
from filing_engine.integrations.submission_gateway import HttpSubmissionGateway
from filing_engine.models import db as _db


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist. Returns the tenant."""
    from filing_engine.models.base import Tenant
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        app.extensions["event_publisher"].discard_pending()
        HttpSubmissionGateway.reset_circuit_breakers()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    from filing_engine.models.base import Tenant
    return Tenant.query.filter_by(slug="test-default").first()


@pytest.fixture()
def other_tenant():
    from filing_engine.models.base import Tenant
    t = Tenant(name="Other Adviser", slug="other-adviser")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def publisher(app):
    return app.extensions["event_publisher"]


# ── Form inputs ──────────────────────────────────────────────────────────


@pytest.fixture()
def adv_input():
    """Raw Form ADV input that validates cleanly at 100 % completion."""
    return {
        "filing_type": "annual",
        "firm": {
            "name": "Harbor Point Advisers LLC",
            "address": {"street": "100 Federal St", "city": "Boston", "state": "MA", "country": "US"},
            "executive_officers": [{"name": "Dana Reyes", "title": "Chief Compliance Officer"}],
            "owners_and_executives": [{"name": "Dana Reyes", "ownership": "75%"}],
            "aum": 250_000_000,
            "sec_registered": True,
        },
        "business_description": "Discretionary portfolio management for institutions",
        "fee_structure": "1.00% of assets under management, billed quarterly",
    }


@pytest.fixture()
def f13_input():
    """Raw Form 13F input above the $100M reporting threshold (dollar market values)."""
    return {
        "manager": {"name": "Harbor Point Capital", "cik": "0001234567"},
        "holdings": [
            {"cusip": "037833100", "name_of_issuer": "APPLE INC",
             "market_value": 80_000_000, "shares": 400_000},
            {"cusip": "594918104", "name_of_issuer": "MICROSOFT CORP",
             "market_value": 45_000_000, "shares": 120_000},
        ],
    }


@pytest.fixture()
def small_f13_input(f13_input):
    """Form 13F input whose portfolio is below the reporting threshold."""
    data = dict(f13_input)
    data["holdings"] = [
        {"cusip": "037833100", "name_of_issuer": "APPLE INC",
         "market_value": 30_000_000, "shares": 150_000},
        {"cusip": "594918104", "name_of_issuer": "MICROSOFT CORP",
         "market_value": 20_000_000, "shares": 50_000},
    ]
    return data
