"""
Placeholder substitution for loaded configuration.

Two forms are recognised inside string values:

- ``${NAME}`` / ``${NAME:-fallback}``: process environment, so credentials and
  bucket names can stay out of the YAML file. An unset variable without a
  fallback is left exactly as written.
- ``{env}``: the environment name passed to ``load_config``, typically used to
  split prefixes per deployment (``prefix: "{env}/logs/"``).

Mapping keys are never rewritten.
"""

import os
import re
from typing import Any

_ENV_VAR = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}")


def resolve_config(config_data: dict[str, Any], env: str = "dev") -> dict[str, Any]:
    """
    Return a copy of ``config_data`` with placeholders substituted.

    Args:
        config_data: Parsed YAML document
        env: Value for ``{env}``

    Returns:
        Resolved configuration
    """
    return _resolve_value(config_data, env)


def _substitute_env(match: re.Match[str]) -> str:
    value = os.environ.get(match.group("name"))
    if value is not None:
        return value
    fallback = match.group("fallback")
    return fallback if fallback is not None else match.group(0)


def _resolve_value(value: Any, env: str) -> Any:
    if isinstance(value, dict):
        return {k: _resolve_value(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_value(item, env) for item in value]
    if isinstance(value, str):
        return _ENV_VAR.sub(_substitute_env, value).replace("{env}", env)
    return value
