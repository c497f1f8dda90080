#!/usr/bin/env python3
"""
Configuration Manager for Batch Pusher
Loads and validates YAML configuration

Configuration is read once at startup. Thresholds, the root directory and
the S3 target cannot change while the process runs.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml

from batch_pusher.models import Thresholds
from batch_pusher.utils import parse_bytes

logger = logging.getLogger(__name__)

DEFAULT_FILE_STABLE_SECONDS = 5
NODE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    This exception is raised when the configuration file is malformed,
    missing required fields, or contains invalid values.
    """

    pass


class ConfigManager:
    """
    Manages system configuration from YAML file.

    Features:
    - Load and validate YAML config
    - Environment variable and ~ expansion in string values
    - Dot-notation access to nested values
    - Typed accessors for the values the pipeline needs

    Example:
        >>> config = ConfigManager('/etc/batch-pusher/config.yaml')
        >>> bucket = config.get('s3.bucket')
        >>> thresholds = config.get_thresholds()

    Attributes:
        config_path (Path): Path to the configuration file
        config (dict): Loaded configuration dictionary
    """

    def __init__(self, config_path: str):
        """
        Initialize config manager and load configuration.

        Args:
            config_path: Path to YAML config file

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML syntax is invalid
            ConfigValidationError: If validation fails
        """
        self.config_path = Path(config_path)
        self.config = {}
        self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load and validate configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            self.config = yaml.safe_load(f)

        if self.config is None:
            raise ConfigValidationError("Config file is empty or contains only whitespace")

        if not isinstance(self.config, dict):
            raise ConfigValidationError("Config file must contain a mapping at the top level")

        self.config = self._expand_env_vars(self.config)

        self.validate_config(self.config)
        logger.info(f"Loaded config from {self.config_path}")
        return self.config

    def _expand_env_vars(self, config: Any) -> Any:
        """
        Recursively expand environment variables in configuration values.

        Supports ${VAR_NAME}, $VAR and ~ expansion in strings.
        """
        if isinstance(config, dict):
            return {key: self._expand_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._expand_env_vars(item) for item in config]
        elif isinstance(config, str):
            expanded = os.path.expanduser(config)
            expanded = os.path.expandvars(expanded)
            return expanded
        else:
            return config

    def validate_config(self, config: Dict[str, Any]) -> bool:
        """Validate configuration schema and values."""
        required_keys = ["node_name", "root_directory", "archive", "s3"]
        for key in required_keys:
            if key not in config:
                raise ConfigValidationError(f"Missing required key: {key}")

        node_name = config["node_name"]
        if not isinstance(node_name, str) or not node_name:
            raise ConfigValidationError("node_name must be a non-empty string")
        if not NODE_NAME_PATTERN.match(node_name):
            raise ConfigValidationError(
                f"node_name must contain only letters, numbers, '.', '_' and '-'. Got: '{node_name}'"
            )

        root_directory = config["root_directory"]
        if not isinstance(root_directory, str) or not root_directory:
            raise ConfigValidationError("root_directory must be a non-empty string")
        if not os.path.isabs(root_directory):
            raise ConfigValidationError(
                f"root_directory must be an absolute path, got: {root_directory}"
            )

        self._validate_archive_config(config["archive"])
        self._validate_s3_config(config["s3"])

        if "monitor" in config:
            self._validate_monitor_config(config["monitor"])

        if "monitoring" in config:
            self._validate_monitoring_config(config["monitoring"])

        logger.info("Configuration validated successfully")
        return True

    def _validate_archive_config(self, archive_config: Dict[str, Any]) -> None:
        """Validate archive configuration section."""
        if not isinstance(archive_config, dict):
            raise ConfigValidationError("archive must be a mapping")

        if "size_threshold" not in archive_config:
            raise ConfigValidationError("Missing archive.size_threshold")

        try:
            size_threshold = parse_bytes(archive_config["size_threshold"])
        except ValueError as e:
            raise ConfigValidationError(f"archive.size_threshold: {e}")

        if size_threshold <= 0:
            raise ConfigValidationError("archive.size_threshold must be positive")

        if "age_threshold_seconds" not in archive_config:
            raise ConfigValidationError("Missing archive.age_threshold_seconds")

        age = archive_config["age_threshold_seconds"]
        if isinstance(age, bool) or not isinstance(age, (int, float)) or age <= 0:
            raise ConfigValidationError("archive.age_threshold_seconds must be a positive number")

    def _validate_s3_config(self, s3_config: Dict[str, Any]) -> None:
        """Validate S3 configuration section."""
        if not isinstance(s3_config, dict):
            raise ConfigValidationError("s3 must be a mapping")

        # Credentials are optional - AWS SDK will auto-discover them
        for key in ["bucket", "region"]:
            if key not in s3_config:
                raise ConfigValidationError(f"Missing s3.{key}")
            if not s3_config[key]:
                raise ConfigValidationError(f"s3.{key} cannot be empty")

        for key in ["key_prefix", "profile"]:
            if key in s3_config and s3_config[key] is not None and not isinstance(s3_config[key], str):
                raise ConfigValidationError(f"s3.{key} must be string")

    def _validate_monitor_config(self, monitor_config: Dict[str, Any]) -> None:
        """Validate file discovery configuration section."""
        if not isinstance(monitor_config, dict):
            raise ConfigValidationError("monitor must be a mapping")

        if "file_stable_seconds" in monitor_config:
            stable_secs = monitor_config["file_stable_seconds"]
            if isinstance(stable_secs, bool) or not isinstance(stable_secs, (int, float)) or stable_secs < 0:
                raise ConfigValidationError(
                    "monitor.file_stable_seconds must be a non-negative number"
                )

        if "scan_existing_files" in monitor_config:
            if not isinstance(monitor_config["scan_existing_files"], bool):
                raise ConfigValidationError("monitor.scan_existing_files must be boolean")

    def _validate_monitoring_config(self, monitoring_config: Dict[str, Any]) -> None:
        if not isinstance(monitoring_config, dict):
            raise ConfigValidationError("monitoring must be a mapping")

        if "cloudwatch_enabled" in monitoring_config:
            if not isinstance(monitoring_config["cloudwatch_enabled"], bool):
                raise ConfigValidationError("monitoring.cloudwatch_enabled must be boolean")

    def get(self, key: str, default=None) -> Any:
        """
        Get configuration value by dot-separated key path.

        Args:
            key: Dot-separated key path (e.g., 's3.bucket')
            default: Default value if key not found

        Returns:
            Configuration value or default if not found

        Examples:
            >>> config.get('node_name')  # 'pusher-01'
            >>> config.get('s3.bucket')  # 'data-batches'
            >>> config.get('missing.key', 'default')  # 'default'
        """
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_root_directory(self) -> str:
        """Root directory, normalized to end with a separator."""
        root_directory = self.get("root_directory")
        if not root_directory.endswith(os.sep):
            root_directory += os.sep
        return root_directory

    def get_thresholds(self) -> Thresholds:
        return Thresholds(
            size_threshold=parse_bytes(self.get("archive.size_threshold")),
            age_threshold=float(self.get("archive.age_threshold_seconds")),
        )
