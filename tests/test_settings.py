import pytest

from coordinator.domain.errors import ConfigurationError
from coordinator.settings import Settings


def test_production_defaults_are_strict():
    cfg = Settings(ENVIRONMENT="production", WEBHOOK_SECRET="whsec")
    assert cfg.RATE_LIMIT_FAIL_POLICY == "closed"
    assert cfg.WEBHOOK_REQUIRE_TIMESTAMP is True


def test_development_defaults_are_lenient():
    cfg = Settings(ENVIRONMENT="development")
    assert cfg.RATE_LIMIT_FAIL_POLICY == "open"
    assert cfg.WEBHOOK_REQUIRE_TIMESTAMP is False


def test_production_requires_a_webhook_secret():
    with pytest.raises(ConfigurationError):
        Settings(ENVIRONMENT="production", WEBHOOK_SECRET="")


def test_explicit_fail_policy_is_normalized():
    assert Settings(RATE_LIMIT_FAIL_POLICY=" CLOSED ").RATE_LIMIT_FAIL_POLICY == "closed"
    with pytest.raises(ValueError):
        Settings(RATE_LIMIT_FAIL_POLICY="sometimes")


@pytest.mark.parametrize("url", [
    "postgres://u:p@db:5432/app",
    "postgresql://u:p@db:5432/app",
])
def test_database_url_gets_the_async_driver(url):
    cfg = Settings(SQLALCHEMY_DATABASE_URI=url)
    assert cfg.SQLALCHEMY_DATABASE_URI == "postgresql+asyncpg://u:p@db:5432/app"
