"""
BMSEX Configuration Management

This module provides configuration management for BMSEX.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Configure logging
logger = logging.getLogger(__name__)


class BMSEXConfig:
    """
    Manages system-wide configuration for BMSEX

    This class follows the singleton pattern so that the parser, sourcing
    engine, VIN decoder and batch registry all read the same settings.
    Defaults come from the packaged default_config.yaml; a user file at
    ~/.bmsex/config.yaml is merged on top when present.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, 'initialized'):
            self.config: Dict[str, Any] = self.load_defaults()

            self.config_file = Path.home() / '.bmsex' / 'config.yaml'
            if self.config_file.exists():
                self._load_config(self.config_file)

            self.initialized = True

    @staticmethod
    def load_defaults() -> Dict[str, Any]:
        """Load the packaged default configuration"""
        default_config_path = Path(__file__).parent / 'default_config.yaml'
        with open(default_config_path, 'r') as f:
            return yaml.safe_load(f)

    @classmethod
    def from_file(cls, config_path: str) -> 'BMSEXConfig':
        """Merge configuration from a YAML file into the shared instance

        Args:
            config_path: Path to configuration file

        Returns:
            BMSEXConfig instance
        """
        instance = cls()
        instance._load_config(Path(config_path))
        return instance

    @classmethod
    def reset(cls) -> None:
        """Drop the shared instance so the next access reloads defaults"""
        cls._instance = None

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def update(self, config: Dict[str, Any]) -> None:
        """Deep-merge a dictionary into the current configuration"""
        self._update_config_recursive(self.config, config)

    def get_all(self) -> Dict[str, Any]:
        """Get a copy of all configuration"""
        return copy.deepcopy(self.config)

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration"""
        return self.config.get('logging', {})

    def _load_config(self, path: Path) -> None:
        """Load configuration from file"""
        if not path.exists():
            raise RuntimeError(f"Configuration file not found: {path}")

        try:
            with open(path, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to load configuration from {path}: {e}")
            raise RuntimeError(f"Invalid YAML in configuration file: {e}") from e

        if file_config is None:
            return
        if not isinstance(file_config, dict):
            raise RuntimeError(f"Configuration must be a mapping: {path}")

        self._update_config_recursive(self.config, file_config)
        logger.info(f"Configuration loaded from {path}")

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value
