import pytest

from socialflow.core.config import get_settings


def _set_minimum_production_env(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "prod-secret-key")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/socialflow")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://app.socialflow.io")
    monkeypatch.setenv("EMAIL_API_KEY", "re_prod_key")
    monkeypatch.setenv("EMAIL_FROM_ADDRESS", "approvals@socialflow.io")


def test_requires_secret_key_in_production(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/socialflow.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("REVIEW_LINK_TTL_HOURS", "24")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "development"
    assert settings.secret_key == "test-secret"
    assert settings.database_url.endswith("socialflow.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.review_link_ttl_hours == 24

    get_settings.cache_clear()


def test_production_accepts_complete_configuration(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    get_settings.cache_clear()

    assert get_settings().env == "production"

    get_settings.cache_clear()


def test_requires_all_mandatory_production_secrets(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("EMAIL_API_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="EMAIL_API_KEY"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_invalid_observability_limits(monkeypatch) -> None:
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "1.2")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()


def test_review_link_ttl_cannot_exceed_maximum(monkeypatch) -> None:
    monkeypatch.setenv("REVIEW_LINK_TTL_HOURS", "800")
    monkeypatch.setenv("REVIEW_LINK_MAX_TTL_HOURS", "720")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="REVIEW_LINK_TTL_HOURS"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_non_positive_notification_attempts(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFICATION_MAX_ATTEMPTS", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="NOTIFICATION_MAX_ATTEMPTS"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_non_positive_rate_limit_window(monkeypatch) -> None:
    monkeypatch.setenv("IP_RATE_LIMIT_WINDOW_SECONDS", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="IP_RATE_LIMIT_WINDOW_SECONDS"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_negative_role_defaults_cache_ttl(monkeypatch) -> None:
    monkeypatch.setenv("ROLE_DEFAULTS_CACHE_TTL_SECONDS", "-1")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="ROLE_DEFAULTS_CACHE_TTL_SECONDS"):
        get_settings()

    get_settings.cache_clear()
