import pytest

from src.shared.batch.config import EngineSettings
from src.shared.batch.models import QualityProfile, RequeuePolicy
from src.shared.db.connection import SupabaseConfig
from src.shared.utils.config_validator import (
    ConfigurationError,
    validate_bool_env,
    validate_choice_env,
    validate_config,
    validate_float_env,
    validate_int_env,
)

_ENGINE_VARS = (
    "BATCH_QUALITY_PROFILE",
    "BATCH_MAX_ATTEMPTS",
    "BATCH_REQUEST_TIMEOUT_SECONDS",
    "CIRCUIT_FAILURE_THRESHOLD",
    "CIRCUIT_COOL_DOWN_SECONDS",
    "QUOTA_TOKENS_PER_MINUTE",
    "QUOTA_SAFETY_BUFFER",
    "QUOTA_CALIBRATE",
    "CACHE_ENABLED",
    "CACHE_TTL_SECONDS",
    "BATCH_REQUEUE_POLICY",
    "BATCH_MAX_CIRCUIT_WAIT_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENGINE_VARS + ("SUPABASE_URL", "SUPABASE_KEY", "SOME_VALUE"):
        monkeypatch.delenv(name, raising=False)


def test_int_and_float_readers(monkeypatch):
    monkeypatch.setenv("SOME_VALUE", "7")
    assert validate_int_env("SOME_VALUE", 1, min_value=1, max_value=10) == 7
    assert validate_float_env("SOME_VALUE", 1.0) == 7.0

    monkeypatch.setenv("SOME_VALUE", "12")
    with pytest.raises(ConfigurationError, match="exceeds maximum"):
        validate_int_env("SOME_VALUE", 1, max_value=10)

    monkeypatch.setenv("SOME_VALUE", "seven")
    with pytest.raises(ConfigurationError, match="Invalid integer"):
        validate_int_env("SOME_VALUE", 1)


def test_missing_values_use_defaults_or_fail():
    assert validate_int_env("SOME_VALUE", 3) == 3
    assert validate_bool_env("SOME_VALUE", True) is True
    with pytest.raises(ConfigurationError, match="Missing required"):
        validate_float_env("SOME_VALUE")


@pytest.mark.parametrize("raw, expected", [("yes", True), ("TRUE", True), ("0", False), ("no", False)])
def test_bool_reader(monkeypatch, raw, expected):
    monkeypatch.setenv("SOME_VALUE", raw)
    assert validate_bool_env("SOME_VALUE") is expected


def test_choice_reader_normalises_case(monkeypatch):
    monkeypatch.setenv("SOME_VALUE", " Aggressive ")
    assert validate_choice_env("SOME_VALUE", ["balanced", "aggressive"]) == "aggressive"

    monkeypatch.setenv("SOME_VALUE", "turbo")
    with pytest.raises(ConfigurationError, match="Allowed values"):
        validate_choice_env("SOME_VALUE", ["balanced", "aggressive"])


def test_validate_config_reports_every_missing_variable(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    with pytest.raises(ConfigurationError, match="SUPABASE_KEY"):
        validate_config(["SUPABASE_URL", "SUPABASE_KEY"])

    values = validate_config(["SUPABASE_URL"], optional={"SOME_VALUE": "fallback"})
    assert values == {"SUPABASE_URL": "https://example.supabase.co", "SOME_VALUE": "fallback"}


def test_supabase_config_from_env(monkeypatch):
    with pytest.raises(ConfigurationError):
        SupabaseConfig.from_env()

    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "service-key")
    config = SupabaseConfig.from_env()
    assert (config.url, config.key) == ("https://example.supabase.co", "service-key")


def test_engine_settings_defaults():
    settings = EngineSettings.from_env()

    assert settings == EngineSettings()
    assert settings.quality_profile is QualityProfile.BALANCED
    assert settings.retry_policy().max_attempts == 3
    assert settings.quota_config().tokens_per_minute_limit == 200_000


def test_engine_settings_from_env(monkeypatch):
    monkeypatch.setenv("BATCH_QUALITY_PROFILE", "CONSERVATIVE")
    monkeypatch.setenv("BATCH_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CIRCUIT_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("QUOTA_TOKENS_PER_MINUTE", "90000")
    monkeypatch.setenv("CACHE_ENABLED", "false")
    monkeypatch.setenv("BATCH_REQUEUE_POLICY", "priority")

    settings = EngineSettings.from_env()
    scheduler = settings.build_scheduler(lambda item: None)

    assert settings.quality_profile is QualityProfile.CONSERVATIVE
    assert settings.requeue_policy is RequeuePolicy.PRIORITY
    assert scheduler.profile is QualityProfile.CONSERVATIVE
    assert scheduler.breaker.failure_threshold == 2
    assert scheduler.executor.policy.max_attempts == 5
    assert scheduler.quota.config.tokens_per_minute_limit == 90000
    assert scheduler.cache is None


def test_engine_settings_reject_invalid_values(monkeypatch):
    monkeypatch.setenv("BATCH_MAX_ATTEMPTS", "0")
    with pytest.raises(ConfigurationError):
        EngineSettings.from_env()


def test_circuit_wait_cap_is_read_from_env(monkeypatch):
    assert EngineSettings.from_env().max_circuit_wait_seconds is None

    monkeypatch.setenv("BATCH_MAX_CIRCUIT_WAIT_SECONDS", "12.5")
    settings = EngineSettings.from_env()
    scheduler = settings.build_scheduler(lambda item: None)

    assert settings.max_circuit_wait_seconds == 12.5
    assert scheduler.max_circuit_wait_seconds == 12.5

    monkeypatch.setenv("BATCH_MAX_CIRCUIT_WAIT_SECONDS", "-1")
    with pytest.raises(ConfigurationError, match="below minimum"):
        EngineSettings.from_env()
