"""
Unit tests for environment-driven settings.
"""

import pytest

from cellcluster.config.settings import Settings, get_settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run without CELLCLUSTER_* variables and outside any .env file."""
    for name in (
        "CELLCLUSTER_LOG_LEVEL",
        "CELLCLUSTER_DEFAULT_RESOLUTION",
        "CELLCLUSTER_DEFAULT_SEED",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.mark.unit
class TestSettings:
    """Test settings resolution."""

    def test_defaults(self, clean_env):
        settings = Settings()

        assert settings.LOG_LEVEL == "INFO"
        assert settings.DEFAULT_CLUSTER_RESOLUTION == 0.8
        assert settings.DEFAULT_SEED is None

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("CELLCLUSTER_LOG_LEVEL", "debug")
        clean_env.setenv("CELLCLUSTER_DEFAULT_RESOLUTION", "1.5")
        clean_env.setenv("CELLCLUSTER_DEFAULT_SEED", "123")

        settings = Settings()

        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.DEFAULT_CLUSTER_RESOLUTION == 1.5
        assert settings.DEFAULT_SEED == 123

    def test_explicit_none_seed(self, clean_env):
        clean_env.setenv("CELLCLUSTER_DEFAULT_SEED", "None")
        assert Settings().DEFAULT_SEED is None

    def test_invalid_seed(self, clean_env):
        clean_env.setenv("CELLCLUSTER_DEFAULT_SEED", "abc")
        with pytest.raises(ValueError):
            Settings()

    def test_get_all_settings(self, clean_env):
        values = Settings().get_all_settings()
        assert {"LOG_LEVEL", "DEFAULT_CLUSTER_RESOLUTION", "DEFAULT_SEED", "BASE_DIR"} <= set(values)

    def test_get_setting_default(self, clean_env):
        assert Settings().get_setting("MISSING", "fallback") == "fallback"

    def test_singleton(self):
        assert get_settings() is get_settings()
