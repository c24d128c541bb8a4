"""YAML configuration loader with environment variable resolution."""
import logging
import os
import re
import yaml
from typing import Any, Dict, FrozenSet, Mapping
from pathlib import Path

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Load and parse YAML documents with environment variable support."""

    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')

    @classmethod
    def resolve_env_vars(cls, value: Any, skip_keys: FrozenSet[str] = frozenset()) -> Any:
        """
        Resolve environment variables in configuration values.

        Supports ${ENV_VAR} and ${ENV_VAR:-default} syntax. Unknown variables
        without a default are left untouched.

        Args:
            value: Configuration value (str, dict, list, or other)
            skip_keys: Mapping keys whose values are passed through verbatim

        Returns:
            Resolved value
        """
        if isinstance(value, str):
            def replace_env(match):
                var_name, default = match.group(1), match.group(2)
                env_value = os.environ.get(var_name)
                if env_value is not None:
                    return env_value
                if default is not None:
                    return default
                return match.group(0)

            return cls.ENV_VAR_PATTERN.sub(replace_env, value)

        elif isinstance(value, dict):
            return {
                k: v if k in skip_keys else cls.resolve_env_vars(v, skip_keys)
                for k, v in value.items()
            }

        elif isinstance(value, list):
            return [cls.resolve_env_vars(item, skip_keys) for item in value]

        else:
            return value

    @classmethod
    def expand_vars(cls, value: str, variables: Mapping[str, str]) -> str:
        """Expand ${VAR} / ${VAR:-default} from `variables`; unknown names stay as written."""
        def replace(match):
            var_name, default = match.group(1), match.group(2)
            if var_name in variables:
                return variables[var_name]
            return default if default is not None else match.group(0)

        return cls.ENV_VAR_PATTERN.sub(replace, value)

    @classmethod
    def load_yaml(
        cls,
        config_path: Path,
        resolve_env: bool = True,
        skip_keys: FrozenSet[str] = frozenset(),
    ) -> Dict[str, Any]:
        """
        Load a YAML mapping, optionally resolving environment variables.

        Args:
            config_path: Path to YAML file
            resolve_env: Whether to substitute ${VAR} references
            skip_keys: Keys left unresolved (see resolve_env_vars)

        Returns:
            Parsed configuration dict

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If the document is not a mapping
            yaml.YAMLError: If YAML is malformed
        """
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f)

        if raw_config is None:
            raw_config = {}
        if not isinstance(raw_config, dict):
            raise ValueError(f"Expected a mapping at the top of {config_path}, got {type(raw_config).__name__}")

        logger.debug(f"Loaded YAML from {config_path}")
        return cls.resolve_env_vars(raw_config, skip_keys) if resolve_env else raw_config
