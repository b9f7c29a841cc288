"""
Shared command setup: configuration, logging and settings.
"""

from pathlib import Path

import typer

from bucketfeed.config import Config, InputSettings, load_config
from bucketfeed.exceptions import ConfigurationError
from bucketfeed.utils.logging import get_logger, setup_logging_from_config

logger = get_logger("bucketfeed.cli")

# Exit codes
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2


def initialize(config_path: Path, env: str | None = None, verbose: bool = False) -> tuple[Config, InputSettings]:
    """
    Load the configuration, set up logging and validate the input section.

    Exits with code 2 on configuration errors.
    """
    try:
        config = load_config(config_path, env=env)
        logging_config = dict(config.logging)
        if verbose:
            logging_config["level"] = "DEBUG"
        setup_logging_from_config({"logging": logging_config}, project_dir=config_path.parent)
        settings = InputSettings.from_dict(config.input)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIGURATION) from e
    return config, settings
