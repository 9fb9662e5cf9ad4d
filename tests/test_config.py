import pytest

from storefront_auth.config import (
    ARGON_PROFILE_DEFAULTS,
    ConfigurationError,
    Environment,
    Settings,
    get_settings,
    reset_settings_cache,
)

STRONG = "x" * 40


class TestProductionSecrets:
    def test_missing_jwt_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            Settings(environment="production", refresh_token_pepper=STRONG)

    def test_missing_pepper_is_fatal(self):
        with pytest.raises(ConfigurationError):
            Settings(environment="production", jwt_secret=STRONG)

    def test_short_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            Settings(environment="production", jwt_secret="short", refresh_token_pepper=STRONG)

    def test_production_with_secrets(self):
        settings = Settings(
            environment="production", jwt_secret=STRONG, refresh_token_pepper=STRONG + "y"
        )
        assert settings.is_production
        assert settings.secure_cookies is True
        assert settings.action_token_secret == STRONG
        assert (
            settings.argon_memory_cost,
            settings.argon_time_cost,
            settings.argon_parallelism,
        ) == ARGON_PROFILE_DEFAULTS[Environment.PRODUCTION]


class TestDevelopmentDefaults:
    def test_generates_secrets_outside_production(self):
        settings = Settings(environment="development")
        assert settings.jwt_secret
        assert settings.refresh_token_pepper
        assert settings.jwt_secret != settings.refresh_token_pepper

    def test_generated_secrets_differ_per_instance(self):
        assert Settings().jwt_secret != Settings().jwt_secret

    def test_cookies_not_secure_by_default(self):
        assert Settings().secure_cookies is False
        assert Settings(force_secure_cookies=True).secure_cookies is True

    def test_environment_is_case_insensitive(self):
        assert Settings(environment=" TEST ").environment == Environment.TEST

    def test_access_token_lifetime_default(self):
        settings = Settings()
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 30


class TestValidation:
    def test_argon_time_cost_floor(self):
        with pytest.raises(ValueError):
            Settings(argon_time_cost=1)

    def test_lifetimes_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(access_token_ttl_minutes=0)

    def test_cors_origins_list(self):
        settings = Settings(cors_allow_origins="https://shop.example.com, https://admin.example.com,")
        assert settings.cors_origins_list == [
            "https://shop.example.com",
            "https://admin.example.com",
        ]


class TestFromEnv:
    def test_reads_named_env_vars(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REFRESH_TOKEN_COOKIE_MAX_AGE", "120")
        monkeypatch.setenv("ADMIN_EMAIL", "security@example.com")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.refresh_cookie_max_age_seconds == 120
        assert settings.security_alert_email == "security@example.com"

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "7")
        reset_settings_cache()
        assert get_settings().refresh_token_ttl_days == 7
        monkeypatch.delenv("REFRESH_TOKEN_TTL_DAYS")
        reset_settings_cache()
