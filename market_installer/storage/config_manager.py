"""
Loads installer settings from defaults, an optional INI file, the environment
and command-line overrides, in that order of increasing priority.
"""

import configparser
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from market_installer.exceptions import ConfigurationError
from market_installer.models.config import ENV_VARS, InstallerConfig

log = logging.getLogger(__name__)


class ConfigManager:
    """Handles all operations related to the installer's configuration."""

    def __init__(
        self,
        config_file_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.config_file_path = config_file_path
        self.environ = os.environ if environ is None else environ
        self._parser = configparser.ConfigParser()

    def load_config(self, cli_options: dict[str, Any] | None = None) -> InstallerConfig:
        """
        Builds a validated configuration.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated InstallerConfig object.

        Raises:
            ConfigurationError: If the config file cannot be parsed or validation
            fails.
        """
        settings: dict[str, Any] = {}
        settings.update(self._get_file_settings())
        settings.update(self._get_env_settings())
        if cli_options:
            settings.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            config_path = str(self.config_file_path.parent) if self.config_file_path else ""
            return InstallerConfig(**settings, config_path=config_path)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file holding every known key.

        Args:
            settings: A dictionary of settings to save.
        """
        if self.config_file_path is None:
            raise ConfigurationError("No configuration file path was given.")

        config = configparser.ConfigParser()
        config["DEFAULT"] = {}
        defaults = InstallerConfig()

        for key in sorted(InstallerConfig.get_ini_keys()):
            value = settings.get(key, getattr(defaults, key, None))
            if isinstance(value, bool):
                config["DEFAULT"][key] = "true" if value else "false"
            elif value is not None:
                config["DEFAULT"][key] = str(value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def get_effective_settings(self) -> dict[str, Any]:
        """Returns the merged settings as plain values, for display."""
        config = self.load_config()
        return {key: getattr(config, key) for key in sorted(InstallerConfig.get_ini_keys())}

    def _get_file_settings(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file, if one exists."""
        if self.config_file_path is None or not self.config_file_path.is_file():
            return {}
        try:
            self._parser.read(self.config_file_path)
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e

        section = self._parser["DEFAULT"]
        known = InstallerConfig.get_ini_keys()
        unknown = set(section.keys()) - known
        for key in sorted(unknown):
            log.warning(f"[yellow]Ignoring unknown configuration key '{key}'.[/yellow]")
        return {key: section.get(key) for key in known if key in section}

    def _get_env_settings(self) -> dict[str, Any]:
        """Collects overrides from MARKETPLACE_* environment variables."""
        settings = {}
        for key, env_var in ENV_VARS.items():
            value = self.environ.get(env_var)
            if value is not None and value.strip():
                settings[key] = value.strip()
        return settings
