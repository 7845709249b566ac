"""
tests/conftest.py

Pytest configuration and shared fixtures for the Elevate Engine test suite.

Every test runs with a clean, known environment: no DATABASE_URL, a fixed
webhook secret and admin key, and the default learn tags. Settings are
re-read per test so monkeypatched variables take effect.
"""

from __future__ import annotations

import os

# Keep a developer's local .env out of the test run
os.environ.setdefault("ENV_FILE", ".env.test-does-not-exist")

from typing import Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from elevate.config import reset_settings  # noqa: E402
from elevate.services.badges import BadgeEvaluator, BadgeRule, STARTER_BADGE  # noqa: E402
from elevate.services.points import PointsCatalog  # noqa: E402
from elevate.services.webhook_processor import WebhookProcessor  # noqa: E402
from tests.helpers import TAG_1, TAG_2, TEST_ADMIN_KEY, TEST_SECRET, FakeStore  # noqa: E402

# =============================================================================
# GLOBAL TEST CONFIGURATION
# =============================================================================

_MANAGED_ENV = (
    "DATABASE_URL",
    "ENVIRONMENT",
    "LOG_LEVEL",
    "LOG_JSON",
    "KAJABI_WEBHOOK_SECRET",
    "KAJABI_SIGNATURE_HEADER",
    "KAJABI_LEARN_TAGS",
    "KAJABI_TAG_POINTS",
    "LEARN_DEFAULT_POINTS",
    "INELIGIBLE_USER_TYPES",
    "WEBHOOK_MAX_EVENT_AGE_SECONDS",
    "WEBHOOK_TIMEOUT_SECONDS",
    "WEBHOOK_RATE_LIMIT_RPM",
    "BADGE_TIMEOUT_SECONDS",
    "ADMIN_API_KEY",
    "RECONCILE_INTERVAL_MINUTES",
    "RECONCILE_BATCH_SIZE",
)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring a live Postgres database",
    )


@pytest.fixture(autouse=True)
def test_env(monkeypatch: pytest.MonkeyPatch) -> Generator[pytest.MonkeyPatch, None, None]:
    """Known environment for every test; settings cache cleared around it."""
    for name in _MANAGED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("LOG_JSON", "false")
    monkeypatch.setenv("KAJABI_WEBHOOK_SECRET", TEST_SECRET)
    monkeypatch.setenv("ADMIN_API_KEY", TEST_ADMIN_KEY)
    monkeypatch.setenv("KAJABI_LEARN_TAGS", f"{TAG_1},{TAG_2}")

    reset_settings()
    yield monkeypatch
    reset_settings()


# =============================================================================
# PIPELINE FIXTURES
# =============================================================================


@pytest.fixture
def store() -> FakeStore:
    """Empty store with one educator (contact c1) and one student (contact s1)."""
    store = FakeStore()
    store.add_user("u1", "EDUCATOR", email="educator@example.org", contact_id="c1")
    store.add_user("s1", "STUDENT", email="student@example.org", contact_id="s1")
    return store


@pytest.fixture
def catalog() -> PointsCatalog:
    return PointsCatalog(learn_tags=frozenset({TAG_1, TAG_2}), default_points=20)


@pytest.fixture
def processor(store: FakeStore, catalog: PointsCatalog) -> WebhookProcessor:
    return WebhookProcessor(
        transaction=store.transaction,
        catalog=catalog,
        badges=BadgeEvaluator([BadgeRule(STARTER_BADGE, frozenset({TAG_1, TAG_2}))]),
        ineligible_user_types={"STUDENT"},
    )


@pytest.fixture
def client(processor: WebhookProcessor) -> TestClient:
    """
    TestClient over a fresh app with the in-memory processor installed.

    The lifespan is not run, so no pool or scheduler is started.
    """
    from elevate.main import create_app

    app = create_app()
    app.state.processor = processor
    return TestClient(app, raise_server_exceptions=False)
