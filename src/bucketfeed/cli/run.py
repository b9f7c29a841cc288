"""
bucketfeed run - Poll the bucket and print every line as JSON.
"""

import signal
import sys
from pathlib import Path

import typer

from bucketfeed.cli.initialization import EXIT_FAILURE, initialize
from bucketfeed.exceptions import BucketFeedError, PersistenceError
from bucketfeed.ingest.pipeline import S3Input, json_lines_sink
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.cli.run")

app = typer.Typer(name="run", help="Run the S3 input", invoke_without_command=True)


@app.callback()
def run(
    config_path: Path = typer.Option(..., "--config", "-c", help="Path to the YAML configuration file"),
    env: str | None = typer.Option(None, help="Environment overlay (config.<env>.yaml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """
    Poll the configured bucket and write one JSON record per line to stdout.

    SIGINT/SIGTERM stop gracefully: in-flight objects finish and the ledger is flushed.
    """
    _, settings = initialize(config_path, env=env, verbose=verbose)
    s3_input = S3Input(settings, json_lines_sink(sys.stdout))

    # One-shot administrative actions, then exit
    if settings.purge_sincedb:
        s3_input.purge_sincedb()
        typer.echo(f"Purged sincedb {s3_input.sincedb_path}", err=True)
        return
    if settings.sincedb_start_value is not None:
        try:
            s3_input.reseed_sincedb()
        except PersistenceError as e:
            logger.error(f"Reseeding sincedb failed: {e}")
            raise typer.Exit(EXIT_FAILURE) from e
        typer.echo(f"Reseeded sincedb {s3_input.sincedb_path}", err=True)
        return

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        s3_input.stop()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}

    try:
        s3_input.run()
    except PersistenceError as e:
        logger.critical(f"SinceDB could not be persisted: {e}")
        raise typer.Exit(EXIT_FAILURE) from e
    except BucketFeedError as e:
        logger.error(f"S3 input failed: {e}")
        raise typer.Exit(EXIT_FAILURE) from e
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
