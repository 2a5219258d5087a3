"""Tests for configuration loading and request validation helpers."""

import configparser
import logging

import pytest

from market_installer.exceptions import ConfigurationError, InvalidRequestError
from market_installer.models.config import MIB, InstallerConfig
from market_installer.storage.config_manager import ConfigManager
from market_installer.utils.path import sanitize_app_id, validate_app_id, validate_source_url


def write_ini(path, **values):
    parser = configparser.ConfigParser()
    parser["DEFAULT"] = {key: str(value) for key, value in values.items()}
    with open(path, "w", encoding="utf-8") as f:
        parser.write(f)
    return path


class TestConfigManager:
    """Defaults, INI file, environment and CLI layering."""

    def test_defaults_without_file(self, tmp_path):
        config = ConfigManager(tmp_path / "missing.ini", environ={}).load_config()

        assert config.max_artifact_bytes == 500 * MIB
        assert config.retry_max_attempts == 3
        assert config.apps_dir == config.marketplace_root / "apps"

    def test_file_overrides_defaults(self, tmp_path):
        ini = write_ini(
            tmp_path / "config.ini",
            marketplace_root=tmp_path / "market",
            retry_max_attempts=5,
            job_log_enabled="false",
        )

        config = ConfigManager(ini, environ={}).load_config()

        assert config.marketplace_root == tmp_path / "market"
        assert config.retry_max_attempts == 5
        assert config.job_log_enabled is False
        assert config.config_path == str(tmp_path)

    def test_environment_overrides_file(self, tmp_path):
        ini = write_ini(tmp_path / "config.ini", retry_max_attempts=5)
        environ = {"MARKETPLACE_RETRY_MAX_ATTEMPTS": "7", "MARKETPLACE_DIR": str(tmp_path)}

        config = ConfigManager(ini, environ=environ).load_config()

        assert config.retry_max_attempts == 7
        assert config.marketplace_root == tmp_path

    def test_cli_overrides_environment(self, tmp_path):
        environ = {"MARKETPLACE_STAGING_GRACE_SECONDS": "60"}
        manager = ConfigManager(None, environ=environ)

        assert manager.load_config({"staging_grace_seconds": 5}).staging_grace_seconds == 5
        # None means the option was not given on the command line.
        assert manager.load_config({"staging_grace_seconds": None}).staging_grace_seconds == 60

    def test_blank_environment_value_is_ignored(self):
        config = ConfigManager(None, environ={"MARKETPLACE_RETRY_MAX_ATTEMPTS": " "}).load_config()
        assert config.retry_max_attempts == 3

    @pytest.mark.parametrize(
        "values",
        [
            {"retry_max_attempts": 0},
            {"max_artifact_bytes": -1},
            {"lock_lease_seconds": 0},
            {"retry_base_delay": 10, "retry_max_delay": 1},
            {"max_artifact_bytes": 10 * MIB, "max_unpacked_bytes": MIB},
            {"max_connections": "many"},
        ],
    )
    def test_invalid_values_raise(self, tmp_path, values):
        ini = write_ini(tmp_path / "config.ini", **values)

        with pytest.raises(ConfigurationError, match="validation failed"):
            ConfigManager(ini, environ={}).load_config()

    def test_unparseable_file(self, tmp_path):
        ini = tmp_path / "config.ini"
        ini.write_text("this is not an ini file")

        with pytest.raises(ConfigurationError, match="parsing"):
            ConfigManager(ini, environ={}).load_config()

    def test_unknown_key_is_ignored_with_warning(self, tmp_path, caplog):
        ini = write_ini(tmp_path / "config.ini", colour="blue")

        with caplog.at_level(logging.WARNING):
            ConfigManager(ini, environ={}).load_config()

        assert "colour" in caplog.text

    def test_save_new_config_round_trip(self, tmp_path):
        ini = tmp_path / "nested" / "config.ini"
        manager = ConfigManager(ini, environ={})

        manager.save_new_config({"marketplace_root": str(tmp_path), "retry_max_attempts": 4})
        config = manager.load_config()

        assert config.marketplace_root == tmp_path
        assert config.retry_max_attempts == 4
        assert set(manager.get_effective_settings()) == InstallerConfig.get_ini_keys()

    def test_save_without_path(self):
        with pytest.raises(ConfigurationError):
            ConfigManager(None, environ={}).save_new_config({})


class TestRequestValidation:
    """Application ids and source URLs."""

    @pytest.mark.parametrize("app_id", ["notes", "Notes_2", "com.example.paint", "a-b"])
    def test_valid_app_ids(self, app_id):
        assert validate_app_id(app_id) == app_id

    @pytest.mark.parametrize(
        "app_id", ["", ".", "..", "../notes", "notes/evil", "with space", "x" * 101]
    )
    def test_invalid_app_ids(self, app_id):
        with pytest.raises(InvalidRequestError):
            validate_app_id(app_id)

    def test_sanitize_strips_unsafe_characters(self):
        assert sanitize_app_id("../no tes!") == "..notes"

    @pytest.mark.parametrize(
        "url", ["https://apps.example.com/notes.zip", "http://127.0.0.1:8080/a.tar.gz"]
    )
    def test_valid_urls(self, url):
        assert validate_source_url(url) == url

    @pytest.mark.parametrize(
        "url", ["", "notes.zip", "ftp://example.com/a.zip", "https://", "javascript:alert(1)"]
    )
    def test_invalid_urls(self, url):
        with pytest.raises(InvalidRequestError):
            validate_source_url(url)
