"""
Configuration Loader for perfwatch

Implements precedence: overrides > Environment variables > Config file > Defaults

Supports:
- YAML and JSON configuration files
- Environment variable mapping (PERFWATCH_*, ``__`` between nesting levels)
- Schema validation via Pydantic
- Config merging with deep dictionary updates
"""

import json
import logging
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..errors import ConfigurationError
from .schema import MonitoringConfig

logger = logging.getLogger(__name__)


class ConfigLoader:
    """
    Configuration loader with multi-source precedence.

    Precedence order (highest to lowest):
    1. Explicit overrides (e.g. parsed CLI arguments)
    2. Environment variables (PERFWATCH_*)
    3. Config file (YAML/JSON)
    4. Schema defaults
    """

    ENV_PREFIX = "PERFWATCH_"
    ENV_NESTING = "__"

    def __init__(
        self,
        config_file: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize configuration loader.

        Args:
            config_file: Path to YAML/JSON config file
            overrides: Overrides with the highest precedence
            environ: Environment mapping (defaults to ``os.environ``)
        """
        self.config_file = Path(config_file) if config_file else None
        self.overrides = overrides or {}
        self.environ = environ if environ is not None else os.environ

    def load(self) -> MonitoringConfig:
        """
        Load configuration with full precedence chain.

        Returns:
            Validated MonitoringConfig instance

        Raises:
            FileNotFoundError: If the config file does not exist
            ConfigurationError: If the config file format or layout is unsupported
            pydantic.ValidationError: If the merged values are invalid
        """
        config_dict = self._load_defaults()

        if self.config_file:
            file_config = self._load_config_file(self.config_file)
            config_dict = self._deep_merge(config_dict, file_config)
            logger.debug(f"Loaded configuration file {self.config_file}")

        env_config = self._load_from_environment()
        if env_config:
            config_dict = self._deep_merge(config_dict, env_config)
            logger.debug(f"Applied environment overrides: {sorted(env_config)}")

        config_dict = self._deep_merge(config_dict, self.overrides)

        return MonitoringConfig(**config_dict)

    def _load_defaults(self) -> Dict[str, Any]:
        """
        Schema defaults as a plain dictionary.

        Files and environment are merged on top, so a partial section such
        as ``thresholds.cpu.warning`` keeps the remaining defaults.
        """
        return MonitoringConfig().model_dump()

    def _load_config_file(self, config_file: Path) -> Dict[str, Any]:
        """
        Load configuration from YAML or JSON file.

        Args:
            config_file: Path to config file

        Returns:
            Configuration dictionary
        """
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")

        suffix = config_file.suffix.lower()

        if suffix in [".yaml", ".yml"]:
            data = self._load_yaml_file(config_file)
        elif suffix == ".json":
            data = self._load_json_file(config_file)
        else:
            raise ConfigurationError(
                f"Unsupported config file format: {suffix}. "
                "Use .yaml, .yml, or .json"
            )

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a mapping at top level")
        return data

    def _load_yaml_file(self, file_path: Path) -> Any:
        with open(file_path, "r") as f:
            return yaml.safe_load(f) or {}

    def _load_json_file(self, file_path: Path) -> Any:
        with open(file_path, "r") as f:
            return json.load(f)

    def _load_from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Environment variable mapping:
        - PERFWATCH_COLLECTION__INTERVAL_MS -> collection.interval_ms
        - PERFWATCH_ANOMALY__ALGORITHM -> anomaly.algorithm
        - PERFWATCH_THRESHOLDS__CPU__WARNING -> thresholds.cpu.warning
        - PERFWATCH_LOGGING__LEVEL -> logging.level

        Returns:
            Configuration dictionary from environment variables
        """
        config_dict: Dict[str, Any] = {}

        for key, value in self.environ.items():
            if not key.startswith(self.ENV_PREFIX):
                continue

            key_parts = [p for p in key[len(self.ENV_PREFIX):].split(self.ENV_NESTING) if p]
            if not key_parts:
                continue

            current = config_dict
            for part in key_parts[:-1]:
                current = current.setdefault(self._normalize_key(part), {})
                if not isinstance(current, dict):
                    raise ConfigurationError(f"Environment variable {key} conflicts with a scalar value")

            current[self._normalize_key(key_parts[-1])] = self._convert_env_value(value)

        return config_dict

    @staticmethod
    def _normalize_key(part: str) -> str:
        # Mixed-case segments (metric names like errorRate) are kept as written
        return part.lower() if part.isupper() else part

    def _convert_env_value(self, value: str) -> Any:
        """
        Convert environment variable string to appropriate type.

        Args:
            value: Environment variable string value

        Returns:
            Converted value (bool, int, float, list, dict or str)
        """
        if value.lower() in ["true", "false"]:
            return value.lower() == "true"

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        if value.startswith("[") or value.startswith("{"):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def _deep_merge(
        self,
        base: Dict[str, Any],
        override: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Override dictionary (takes precedence)

        Returns:
            Merged dictionary
        """
        result = deepcopy(base)

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = deepcopy(value)

        return result


def load_config(
    config_file: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MonitoringConfig:
    """
    Convenience function to load perfwatch configuration.

    Args:
        config_file: Path to YAML/JSON config file
        overrides: Overrides with the highest precedence
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated MonitoringConfig instance

    Example:
        >>> config = load_config(
        ...     config_file=Path("config/perfwatch.yaml"),
        ...     overrides={"collection": {"interval_ms": 1000}}
        ... )
    """
    loader = ConfigLoader(config_file=config_file, overrides=overrides, environ=environ)
    return loader.load()
