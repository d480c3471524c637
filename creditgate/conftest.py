"""Shared fixtures: a throwaway SQLite database, fake gateway and frozen clock."""
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from creditgate.core import database
from creditgate.core.config import Settings
from creditgate.core.container import build_services
from creditgate.tests.fakes import FakeGateway, FrozenClock, TEST_KEY_SECRET, TEST_PRO_PLAN_ID, TEST_WEBHOOK_SECRET


@pytest.fixture
def db(tmp_path):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so every pooled connection, including those
    opened from worker threads, sees the same data.
    """
    database.dispose_engine()
    database.init_engine(f"sqlite:///{tmp_path / 'creditgate.db'}")
    database.create_all_tables()
    yield database
    database.drop_all_tables()
    database.dispose_engine()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET=TEST_KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
        RAZORPAY_PRO_PLAN_ID=TEST_PRO_PLAN_ID,
        GATEWAY_RETRY_DELAY_SECONDS=0,
    )


@pytest.fixture
def services(db, gateway, clock, test_settings):
    return build_services(test_settings, gateway=gateway, clock=clock)


@pytest.fixture
def make_user(services):
    counter = {"n": 0}

    def _make(external_id=None, email=None):
        counter["n"] += 1
        ext = external_id or f"ext_user_{counter['n']}"
        return services.users.ensure_user(ext, email or f"{ext}@example.com")

    return _make
