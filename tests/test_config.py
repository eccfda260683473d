"""Tests for config file handling and engine settings precedence."""

from pathlib import Path

import pytest

from scriptvet import config as config_module
from scriptvet.config import (
    DEFAULT_MAX_DEPTH,
    ENGINE_ENV_VARS,
    EngineSettings,
    load_config,
    load_engine_settings,
    save_config,
)
from scriptvet.exceptions import ConfigError


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    config_dir = tmp_path / ".scriptvet"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_dir / "config.yaml")
    for name in ENGINE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return config_dir / "config.yaml"


class TestConfigFile:
    """Loading and saving ~/.scriptvet/config.yaml."""

    def test_missing_file(self):
        """No config file loads as an empty dict."""
        assert load_config() == {}

    def test_roundtrip(self, isolated_config):
        """Saved config loads back unchanged."""
        path = save_config({"llm": {"provider": "ollama"}, "engine": {"max_depth": 2}})
        assert path == isolated_config
        assert load_config() == {"llm": {"provider": "ollama"}, "engine": {"max_depth": 2}}

    def test_invalid_yaml(self, isolated_config):
        """Unparseable YAML loads as an empty dict."""
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text("llm: [unclosed\n")
        assert load_config() == {}

    def test_non_mapping(self, isolated_config):
        """A top-level list loads as an empty dict."""
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text("- a\n- b\n")
        assert load_config() == {}


class TestEngineSettings:
    """Precedence: defaults < config file < environment < overrides."""

    def test_defaults(self):
        """No sources give the default settings."""
        settings = load_engine_settings(config={})
        assert settings == EngineSettings()
        assert settings.max_depth == DEFAULT_MAX_DEPTH
        assert settings.registry_path is None

    def test_config_section(self):
        """The engine section of the config file applies."""
        settings = load_engine_settings(config={"engine": {"max_depth": 1, "fetch_timeout": 5}})
        assert settings.max_depth == 1
        assert settings.fetch_timeout == 5.0

    def test_env_beats_config(self, monkeypatch):
        """Environment variables beat the config file."""
        monkeypatch.setenv("SCRIPTVET_MAX_DEPTH", "5")
        settings = load_engine_settings(config={"engine": {"max_depth": 1}})
        assert settings.max_depth == 5

    def test_override_beats_env(self, monkeypatch):
        """Explicit overrides beat the environment."""
        monkeypatch.setenv("SCRIPTVET_MAX_DEPTH", "5")
        settings = load_engine_settings(overrides={"max_depth": 0}, config={})
        assert settings.max_depth == 0

    def test_none_override_falls_through(self, monkeypatch):
        """None overrides leave the lower layers in place."""
        monkeypatch.setenv("SCRIPTVET_MAX_CONCURRENT_FETCHES", "2")
        settings = load_engine_settings(
            overrides={"max_concurrent_fetches": None, "registry_path": None}, config={}
        )
        assert settings.max_concurrent_fetches == 2

    def test_registry_from_env(self, monkeypatch, tmp_path):
        """SCRIPTVET_REGISTRY sets the registry path."""
        monkeypatch.setenv("SCRIPTVET_REGISTRY", str(tmp_path / "known.yaml"))
        settings = load_engine_settings(config={})
        assert settings.registry_path == Path(tmp_path / "known.yaml")

    def test_reads_config_file_when_not_given(self):
        """The config file on disk is read when none is passed."""
        save_config({"engine": {"max_response_bytes": 4096}})
        assert load_engine_settings().max_response_bytes == 4096

    def test_non_mapping_engine_section_ignored(self):
        """A non-mapping engine section is ignored."""
        assert load_engine_settings(config={"engine": "deep"}) == EngineSettings()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_depth": -1},
            {"max_depth": 11},
            {"fetch_timeout": 0},
            {"max_concurrent_fetches": 0},
            {"max_response_bytes": 10},
            {"unknown_knob": 1},
        ],
    )
    def test_out_of_bounds(self, overrides):
        """Out-of-range values raise ConfigError."""
        with pytest.raises(ConfigError):
            load_engine_settings(overrides=overrides, config={})

    def test_bad_env_value(self, monkeypatch):
        """An unparseable environment value raises ConfigError."""
        monkeypatch.setenv("SCRIPTVET_FETCH_TIMEOUT", "soon")
        with pytest.raises(ConfigError):
            load_engine_settings(config={})
