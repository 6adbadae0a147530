"""
Shared test fixtures for the entitlements test suite.
"""

import pytest
import structlog
from fastapi.testclient import TestClient

_APP_STATE_SERVICES = (
    "supabase",
    "billing_service",
    "email_service",
    "paystack_service",
    "checkout_service",
    "webhook_processor",
    "renewal_scheduler",
    "commentary_generator",
)


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    monkeypatch.setenv("APP_URL", "https://app.textopsy.test")
    # Keep external services off unless a test turns them on
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("PAYSTACK__SECRET_KEY", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)
    monkeypatch.delenv("EMAIL__SMTP_HOST", raising=False)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application.

    The lifespan does not run, so tests attach the services they need to
    `client.app.state`; everything starts out unset.
    """
    # Clear the lru_cache so settings pick up test env vars
    from entitlements.config import get_settings

    get_settings.cache_clear()

    from entitlements.main import app

    for name in _APP_STATE_SERVICES:
        setattr(app.state, name, None)
    app.dependency_overrides.clear()

    return TestClient(app)
