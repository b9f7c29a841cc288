"""
Configuration file loading.

A deployment is described by one YAML file (``input:`` and ``logging:`` sections),
optionally overlaid by ``<name>.<env>.yaml`` next to it.
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from bucketfeed.config.resolver import resolve_config
from bucketfeed.exceptions import ConfigurationError


class Config:
    """BucketFeed configuration container with dict-like access."""

    def __init__(self, data: dict[str, Any], path: Path | None = None):
        self.data = data
        self.path = path
        self.input = data.get("input", {})
        self.logging = data.get("logging", {})

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation."""
        value = self.data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default
        return value

    def __getitem__(self, key: str) -> Any:
        if "." in key:
            return self.get(key)
        if key in self.data:
            return self.data[key]
        raise KeyError(f"Config key '{key}' not found")

    def __contains__(self, key: str) -> bool:
        value = self.data
        for k in key.split("."):
            if not isinstance(value, dict) or k not in value:
                return False
            value = value[k]
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def validate(self) -> None:
        """Validate the top-level structure; section contents are checked by InputSettings."""
        errors = []
        for section in ("input", "logging"):
            value = self.data.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Configuration '{section}' must be a mapping, got {type(value).__name__}")
        if "input" not in self.data:
            errors.append("Configuration requires an 'input' section")
        if errors:
            raise ConfigurationError("\n".join(errors), details={"path": str(self.path) if self.path else None})


def load_config(config_path: str | Path, env: str | None = None) -> Config:
    """
    Load BucketFeed configuration.

    Args:
        config_path: Path to the YAML file
        env: Environment name; ``<stem>.<env>.yaml`` beside the file is merged over it

    Returns:
        Config instance with merged and resolved configuration

    Raises:
        ConfigurationError: Missing file, unreadable file or invalid YAML
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}\n"
            f"  Suggestion: pass --config pointing at a YAML file with an 'input:' section"
        )
    if not config_path.is_file():
        raise ConfigurationError(f"Configuration path is not a file: {config_path}")

    config_data = _read_yaml(config_path)

    if env:
        env_config_path = config_path.with_name(f"{config_path.stem}.{env}{config_path.suffix}")
        if env_config_path.exists():
            _merge_dict(config_data, _read_yaml(env_config_path))

    config_data = resolve_config(config_data, env or "dev")

    config = Config(config_data, path=config_path)
    config.validate()
    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                mark = getattr(e, "problem_mark", None)
                if mark is not None:
                    raise ConfigurationError(
                        f"Error parsing {path.name} at line {mark.line + 1}, column {mark.column + 1}:\n"
                        f"  {e}\n"
                        f"  File: {path}\n"
                        f"  Suggestion: Check YAML syntax, ensure proper indentation and quotes"
                    ) from e
                raise ConfigurationError(f"Error parsing {path.name}: {e}\n  File: {path}") from e
    except PermissionError as e:
        raise ConfigurationError(
            f"Permission denied reading {path}\n  Error: {e}\n  Suggestion: Check file permissions"
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration must be a mapping, got {type(data).__name__}\n  File: {path}")
    return data


def _merge_dict(base: dict, override: dict):
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dict(base[key], value)
        else:
            base[key] = value
