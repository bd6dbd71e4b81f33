# backend/conftest.py
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Test defaults must be in the environment before backend.core.config is imported
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("NOTIFY_PUSH_URL", "")

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="function", autouse=True)
def fresh_db():
    """
    Every test starts on an empty schema with the default plan catalog seeded.

    Runs against in-memory SQLite unless TEST_DATABASE_URL points elsewhere.
    """
    from backend.core.database import reset_database
    from backend.core.metrics import METRICS
    from backend.features.billing import service as billing_service
    from backend.features.plans.service import seed_default_plans

    reset_database()
    seed_default_plans()
    METRICS.reset()
    billing_service.set_provider(None)
    yield
    billing_service.set_provider(None)


@pytest.fixture
def fake_provider():
    from backend.features.billing import service as billing_service
    from backend.tests.mocks import FakeProvider

    provider = FakeProvider()
    billing_service.set_provider(provider)
    return provider


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": os.environ["ADMIN_KEY"]}
