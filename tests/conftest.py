"""Pytest configuration and fixtures for autopilot tests."""

from datetime import datetime, timezone

import pytest

from autopilot.audit import AuditRecorder
from autopilot.config import load_rules
from autopilot.store import InMemoryStore
from tests.mocks import FakeChannelExecutor, FakeTextProvider


@pytest.fixture(autouse=True)
def reload_rules():
    """Drop any rules cached by a test that pointed AUTOPILOT_RULES_PATH elsewhere."""
    yield
    load_rules(force_reload=True)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def audit(tmp_path):
    return AuditRecorder(db_path=tmp_path / "audit.db")


@pytest.fixture
def executor():
    return FakeChannelExecutor()


@pytest.fixture
def provider():
    return FakeTextProvider()


@pytest.fixture
def t0():
    # Monday 09:00 UTC
    return datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def lead_profile():
    return {
        "lead_id": "lead_1",
        "owner_id": "owner_1",
        "first_name": "Dana",
        "company": "Acme Analytics",
        "industry": "Technology",
        "company_size": 120,
        "email": "dana@acme.example",
        "phone": "+1 555 010 0199",
        "linkedin_url": "https://linkedin.example/in/dana",
        "has_opted_in": True,
    }
