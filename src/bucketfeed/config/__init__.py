"""
Configuration management.

YAML file loading, environment resolution and input settings validation.
"""

from bucketfeed.config.loader import Config, load_config
from bucketfeed.config.resolver import resolve_config
from bucketfeed.config.settings import InputSettings, StartValue, parse_timestamp

__all__ = [
    "load_config",
    "Config",
    "resolve_config",
    "InputSettings",
    "StartValue",
    "parse_timestamp",
]
