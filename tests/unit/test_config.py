import pytest

from querystream.config import PipelineConfig, Settings, get_settings
from querystream.config_constants import CacheBackend, LogLevel


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("LLM__OPENROUTER_API_KEY", "test-key")
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


## test for import and loading settings
def test_get_settings(env):
    settings = get_settings()
    assert settings is not None
    assert settings.llm.openrouter_api_key == "test-key"
    assert settings.llm.sql_temperature >= 0.0
    assert settings.app.log_level in LogLevel


## test for singleton
def test_get_settings_singleton(env):
    settings1 = get_settings()
    settings2 = get_settings()
    assert settings1 is settings2


## nested variables use "__"
def test_nested_overrides(env):
    env.setenv("CACHE__BACKEND", "redis")
    env.setenv("CACHE__QUERY_TTL_MINUTES", "5")
    env.setenv("PIPELINE__RESULT_ROW_CAP", "25")

    settings = Settings(_env_file=None)

    assert settings.cache.backend == CacheBackend.REDIS
    assert settings.cache.query_ttl_minutes == 5
    assert settings.pipeline.result_row_cap == 25


def test_cache_and_pipeline_defaults(env):
    settings = Settings(_env_file=None)

    assert settings.cache.backend == CacheBackend.MEMORY
    assert settings.cache.schema_ttl_minutes == 120
    assert settings.cache.query_ttl_minutes == 30
    assert settings.pipeline == PipelineConfig()
    assert settings.pipeline.deep_analysis_cost == 3


def test_api_key_required(monkeypatch):
    monkeypatch.delenv("LLM__OPENROUTER_API_KEY", raising=False)
    with pytest.raises(ValueError):
        Settings(_env_file=None)
