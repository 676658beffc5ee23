# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Configuration loading and validation for the Code Property Graph engine."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .file_discovery import DEFAULT_EXCLUDE_PATTERNS, DEFAULT_INCLUDE_PATTERNS
from .logging_setup import DEFAULT_LOG_DIR_NAME, LOG_LEVELS

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".cpg_engine.yml"


class Config:
    """Configuration for the graph engine.

    Loads configuration from .cpg_engine.yml with validation and defaults.
    Invalid or unknown entries are logged and replaced by their defaults, so
    a broken file never prevents the engine from starting.
    """

    DEFAULTS: Dict[str, Any] = {
        "include_patterns": list(DEFAULT_INCLUDE_PATTERNS),
        "exclude_patterns": list(DEFAULT_EXCLUDE_PATTERNS),
        # Empty list means every language with a registered extractor
        "languages": [],
        "max_workers": 4,
        "max_file_size_bytes": 1_000_000,
        "dependency_max_depth": 5,
        "path_max_depth": 10,
        "impact_max_depth": 3,
        "fuzzy_threshold": 0.3,
        "search_limit": 50,
        "snapshot_cache_max_entries": 8,
        "version_commit_retries": 3,
        # JSON log file under log_dir (relative paths resolve against the project root)
        "enable_file_logging": False,
        "log_dir": DEFAULT_LOG_DIR_NAME,
        "log_level": "INFO",
    }

    _POSITIVE_INTS = (
        "max_workers",
        "max_file_size_bytes",
        "dependency_max_depth",
        "path_max_depth",
        "impact_max_depth",
        "search_limit",
        "snapshot_cache_max_entries",
        "version_commit_retries",
    )

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses default location.
        """
        if config_path is None:
            config_path = Path.cwd() / CONFIG_FILE_NAME

        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._load_config()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "Config":
        """Build a configuration from in-memory values, validated like a file."""
        config = cls.__new__(cls)
        config.config_path = None
        config._config = cls._defaults()
        config._validate_and_merge(values)
        return config

    @classmethod
    def _defaults(cls) -> Dict[str, Any]:
        # Copy list values so callers never mutate DEFAULTS
        return {k: list(v) if isinstance(v, list) else v for k, v in cls.DEFAULTS.items()}

    def _load_config(self) -> None:
        """Load and validate configuration from file."""
        if not self.config_path.exists():
            logger.info(f"Configuration file not found at {self.config_path}, using defaults")
            self._config = self._defaults()
            return

        try:
            with open(self.config_path, encoding="utf-8") as f:
                loaded_config = yaml.safe_load(f)

            if loaded_config is None:
                logger.warning("Configuration file is empty, using defaults")
                self._config = self._defaults()
                return

            if not isinstance(loaded_config, dict):
                logger.warning(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(loaded_config)}, using defaults"
                )
                self._config = self._defaults()
                return

            self._config = self._defaults()
            self._validate_and_merge(loaded_config)

        except yaml.YAMLError as e:
            logger.warning(
                f"Error parsing configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self._defaults()
        except OSError as e:
            logger.warning(
                f"Unable to read configuration file {self.config_path}: {e}, using defaults"
            )
            self._config = self._defaults()

    def _validate_and_merge(self, loaded_config: Dict[str, Any]) -> None:
        """Validate loaded configuration and merge with defaults.

        Invalid parameters are logged as warnings and defaults are used.
        """
        for key, value in loaded_config.items():
            if key not in self.DEFAULTS:
                logger.warning(f"Unknown configuration parameter '{key}', ignoring")
                continue

            if not self._validate_parameter(key, value):
                logger.warning(
                    f"Invalid value for '{key}': {value}, using default {self.DEFAULTS[key]}"
                )
                continue

            self._config[key] = list(value) if isinstance(value, list) else value

    def _validate_parameter(self, key: str, value: Any) -> bool:
        """Validate a configuration parameter.

        Returns:
            True if valid, False if invalid
        """
        default = self.DEFAULTS[key]

        # bool is an int subclass; never accept it for numeric keys
        if isinstance(value, bool) and not isinstance(default, bool):
            return False

        if key == "fuzzy_threshold":
            return isinstance(value, (int, float)) and 0.0 <= value <= 1.0

        if not isinstance(value, type(default)):
            return False

        if key in self._POSITIVE_INTS:
            return value > 0
        if key in ("include_patterns", "exclude_patterns", "languages"):
            return all(isinstance(item, str) and item.strip() for item in value)
        if key == "log_dir":
            return bool(value.strip())
        if key == "log_level":
            return value.upper() in LOG_LEVELS

        return True

    def get(self, key: str) -> Any:
        """Raw access to a configuration value."""
        return self._config[key]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._config)

    @property
    def include_patterns(self) -> List[str]:
        """Glob patterns selecting source files for a build."""
        value = self._config["include_patterns"]
        assert isinstance(value, list)
        return value

    @property
    def exclude_patterns(self) -> List[str]:
        """Glob patterns removing dependency/build directories and test files."""
        value = self._config["exclude_patterns"]
        assert isinstance(value, list)
        return value

    @property
    def languages(self) -> List[str]:
        value = self._config["languages"]
        assert isinstance(value, list)
        return value

    @property
    def max_workers(self) -> int:
        """Thread pool size for parallel extraction."""
        value = self._config["max_workers"]
        assert isinstance(value, int)
        return value

    @property
    def max_file_size_bytes(self) -> int:
        """Files larger than this are skipped and reported as errors."""
        value = self._config["max_file_size_bytes"]
        assert isinstance(value, int)
        return value

    @property
    def dependency_max_depth(self) -> int:
        value = self._config["dependency_max_depth"]
        assert isinstance(value, int)
        return value

    @property
    def path_max_depth(self) -> int:
        value = self._config["path_max_depth"]
        assert isinstance(value, int)
        return value

    @property
    def impact_max_depth(self) -> int:
        """Hop bound for the indirect set of impact analysis."""
        value = self._config["impact_max_depth"]
        assert isinstance(value, int)
        return value

    @property
    def fuzzy_threshold(self) -> float:
        value = self._config["fuzzy_threshold"]
        assert isinstance(value, (int, float))
        return float(value)

    @property
    def search_limit(self) -> int:
        value = self._config["search_limit"]
        assert isinstance(value, int)
        return value

    @property
    def snapshot_cache_max_entries(self) -> int:
        """Maximum number of materialised version snapshots kept by the query engine.

        When the cache reaches this limit, least recently used snapshots
        are evicted.
        """
        value = self._config["snapshot_cache_max_entries"]
        assert isinstance(value, int)
        return value

    @property
    def version_commit_retries(self) -> int:
        """Attempts at allocating a version number before giving up."""
        value = self._config["version_commit_retries"]
        assert isinstance(value, int)
        return value

    @property
    def enable_file_logging(self) -> bool:
        """Whether CodeGraphService installs the structured JSON log file."""
        value = self._config["enable_file_logging"]
        assert isinstance(value, bool)
        return value

    @property
    def log_dir(self) -> str:
        value = self._config["log_dir"]
        assert isinstance(value, str)
        return value

    @property
    def log_level(self) -> str:
        value = self._config["log_level"]
        assert isinstance(value, str)
        return value.upper()
