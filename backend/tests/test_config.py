"""Tests for config.py -- settings loading and validation."""

import pytest
from pydantic import ValidationError

from config import Settings


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.cache_backend == "memory"
        assert settings.max_retries_per_task == 3
        assert settings.max_total_interventions == 10
        assert settings.llm_fallback_model is None

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_RETRIES_PER_TASK", "5")
        monkeypatch.setenv("CACHE_BACKEND", "redis")
        settings = Settings(_env_file=None)
        assert settings.max_retries_per_task == 5
        assert settings.cache_backend == "redis"

    @pytest.mark.parametrize("field", ["max_retries_per_task", "max_total_interventions", "runner_max_iterations"])
    def test_limits_must_be_positive(self, field: str) -> None:
        with pytest.raises(ValidationError, match="must be >= 1"):
            Settings(_env_file=None, **{field: 0})

    def test_unknown_cache_backend(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, cache_backend="memcached")
