"""
bucketfeed sincedb - Administrative operations on the processed-objects ledger.
"""

from pathlib import Path

import typer

from bucketfeed.cli.initialization import EXIT_CONFIGURATION, EXIT_FAILURE, initialize
from bucketfeed.config import parse_timestamp
from bucketfeed.exceptions import ConfigurationError, PersistenceError
from bucketfeed.ingest.pipeline import S3Input
from bucketfeed.ingest.types import RemoteObjectDescriptor

app = typer.Typer(name="sincedb", help="Manage the sincedb ledger")


def _discard(line: bytes, metadata: dict) -> None:
    pass


@app.command()
def purge(
    config_path: Path = typer.Option(..., "--config", "-c", help="Path to the YAML configuration file"),
    env: str | None = typer.Option(None, help="Environment overlay (config.<env>.yaml)"),
) -> None:
    """Delete the ledger file: every object in the bucket becomes eligible again."""
    _, settings = initialize(config_path, env=env)
    s3_input = S3Input(settings, _discard)
    if s3_input.purge_sincedb():
        typer.echo(f"Purged {s3_input.sincedb_path}")
    else:
        typer.echo(f"No sincedb at {s3_input.sincedb_path}")


@app.command()
def reseed(
    config_path: Path = typer.Option(..., "--config", "-c", help="Path to the YAML configuration file"),
    key: str = typer.Option(..., "--key", help="Object key to record"),
    last_modified: str = typer.Option(..., "--last-modified", help="ISO 8601 timestamp of the object"),
    etag: str = typer.Option("", "--etag", help="Object etag"),
    env: str | None = typer.Option(None, help="Environment overlay (config.<env>.yaml)"),
) -> None:
    """Replace the ledger with a single entry, moving the watermark to KEY."""
    _, settings = initialize(config_path, env=env)
    try:
        modified = parse_timestamp(last_modified)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIGURATION) from e

    s3_input = S3Input(settings, _discard)
    descriptor = RemoteObjectDescriptor(
        key=key, etag=etag.strip('"'), bucket_name=settings.bucket, size=0, last_modified=modified
    )
    try:
        s3_input.reseed_sincedb(descriptor)
    except PersistenceError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_FAILURE) from e
    typer.echo(f"Reseeded {s3_input.sincedb_path} with {key} ({modified.isoformat()})")
