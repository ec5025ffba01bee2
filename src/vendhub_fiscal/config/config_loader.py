"""
Configuration Loader
Reads fiscal core settings from a JSON file, FISCAL_* environment
variables and programmatic overrides, then validates the merged result
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from vendhub_fiscal.config.fiscal_config import (
    FiscalConfig,
    PartialFiscalConfig,
    ENV_VAR_MAPPING,
    ConfigDefaults,
)
from vendhub_fiscal.config.config_validator import ConfigValidator
from vendhub_fiscal.exceptions import ConfigError


# Settings holding file paths; relative values in a file are anchored to it
PATH_FIELDS = ("audit_log_path", "state_store_path")

TRUE_VALUES = ("true", "1", "yes", "on")


class ConfigLoader:
    """
    Loads and merges fiscal core configuration

    Example:
        >>> config = ConfigLoader().load(file="fiscal.json", config={"worker_count": 2})
        >>> config.worker_count
        2
    """

    def __init__(self) -> None:
        self._validator = ConfigValidator()

    def from_file(self, path: Union[str, Path]) -> Dict[str, Any]:
        """
        Load configuration from a JSON file

        Raises:
            ConfigError: If the file is missing, is not a JSON object or has unknown keys
        """
        file_path = Path(path).resolve()

        if not file_path.exists():
            raise ConfigError(
                f"Configuration file not found: {file_path}",
                code="CONFIG_FILE_NOT_FOUND"
            )

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(
                f"Invalid JSON in configuration file: {file_path}",
                code="CONFIG_PARSE_ERROR"
            ) from e

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must hold a JSON object: {file_path}",
                code="CONFIG_PARSE_ERROR"
            )

        self._check_keys(config, str(file_path))
        return self._anchor_paths(config, file_path.parent)

    def from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from FISCAL_* environment variables

        Empty variables are ignored.

        Raises:
            ConfigError: If a numeric variable does not parse
        """
        config: Dict[str, Any] = {}

        for env_var, key in ENV_VAR_MAPPING.items():
            value = os.environ.get(env_var, "").strip()
            if value:
                config[key] = self._parse_env_value(env_var, key, value)

        return config

    def from_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Take programmatic configuration

        Returns:
            A copy without None values

        Raises:
            ConfigError: If the dictionary has unknown keys
        """
        self._check_keys(config, "programmatic configuration")
        return {k: v for k, v in config.items() if v is not None}

    def merge(self, *sources: Dict[str, Any]) -> Dict[str, Any]:
        """Merge sources in order; later sources win and None never overrides"""
        merged: Dict[str, Any] = {}
        for source in sources:
            merged.update((k, v) for k, v in source.items() if v is not None)
        return merged

    def resolve(self, config: Dict[str, Any]) -> FiscalConfig:
        """
        Validate a merged dictionary and build the configuration

        Raises:
            ValidationError: If configuration is invalid
        """
        self._validator.validate_or_raise(config)
        return FiscalConfig(**config)

    def load(
        self,
        file: Optional[Union[str, Path]] = None,
        env: bool = True,
        config: Optional[Dict[str, Any]] = None,
    ) -> FiscalConfig:
        """
        Load, merge and resolve configuration

        Precedence, lowest first: file, environment, programmatic config.
        """
        sources: List[Dict[str, Any]] = []

        if file is not None:
            sources.append(self.from_file(file))
        if env:
            sources.append(self.from_environment())
        if config is not None:
            sources.append(self.from_dict(config))

        return self.resolve(self.merge(*sources))

    def create_template(self, path: Union[str, Path]) -> None:
        """Write a JSON template with every setting at its default"""
        template = FiscalConfig().model_dump(exclude={"vault_secret"})
        template.update({
            "enable_audit_log": True,
            "audit_log_path": "./logs/fiscal-audit.log",
            "state_store_path": "./data/fiscal-state.json",
            "vault_secret": "CHANGE_ME_VAULT_SECRET",
            "priorities": dict(ConfigDefaults.PRIORITIES),
        })

        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(template, f, indent=2)

    # ============ Private Helper Methods ============

    @staticmethod
    def _check_keys(config: Dict[str, Any], source: str) -> None:
        unknown = set(config) - set(PartialFiscalConfig.model_fields)
        if unknown:
            raise ConfigError(
                f"Unknown configuration keys in {source}: {', '.join(sorted(unknown))}",
                code="CONFIG_UNKNOWN_KEY"
            )

    @staticmethod
    def _parse_env_value(env_var: str, key: str, value: str) -> Any:
        """Convert a variable to the type of its FiscalConfig field"""
        field_type = FiscalConfig.model_fields[key].annotation

        if field_type is bool:
            return value.lower() in TRUE_VALUES

        if field_type in (int, float):
            try:
                return field_type(value)
            except ValueError as e:
                raise ConfigError(
                    f"{env_var} must be a {field_type.__name__}, got {value!r}",
                    code="CONFIG_ENV_PARSE_ERROR"
                ) from e

        return value

    @staticmethod
    def _anchor_paths(config: Dict[str, Any], base_path: Path) -> Dict[str, Any]:
        processed = dict(config)
        for key in PATH_FIELDS:
            value = processed.get(key)
            if isinstance(value, str) and value and not Path(value).is_absolute():
                processed[key] = str(base_path / value)
        return processed
