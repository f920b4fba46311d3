"""
Pytest fixtures for billing ledger tests.

Provides test database setup, company (tenant) fixtures, and catalog helpers.
"""

from datetime import datetime

import pytest

from billing_core import create_app
from billing_core.extensions import db
from billing_core.models import Company
from billing_core.services import catalog_service

# Fixed clock for subscription tests
NOW = datetime(2026, 1, 10, 9, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def company(db_session):
    """Create Company A (first tenant)."""
    company = Company(name="Company A - Acme Corp", is_active=True)
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def other_company(db_session):
    """Create Company B (second tenant)."""
    company = Company(name="Company B - Beta Inc", is_active=True)
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def crm_app(db_session):
    """Subscription app at 150.00/month with the default trial."""
    return catalog_service.create_app_listing("crm", "CRM", "SUBSCRIPTION", 15000)


@pytest.fixture(scope='function')
def free_app(db_session):
    return catalog_service.create_app_listing("notes", "Notes", "FREE", 0, trial_days=7)


def add_app(slug, price_cents=10000, pricing_model="SUBSCRIPTION", trial_days=None, requires=None):
    """Helper to register a marketplace app."""
    return catalog_service.create_app_listing(
        slug, slug.title(), pricing_model, price_cents,
        trial_days=trial_days, required_slugs=requires,
    )
