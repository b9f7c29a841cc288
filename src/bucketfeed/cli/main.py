"""
Main CLI entry point.
"""

import typer

from bucketfeed import __version__
from bucketfeed.cli import run, sincedb


def version_callback(value: bool):
    """Callback to display version and exit."""
    if value:
        typer.echo(f"bucketfeed version {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="bucketfeed",
    help="BucketFeed - stream the lines of new S3 objects downstream",
    add_completion=True,
)

# Register subcommands
app.add_typer(run.app, name="run")
app.add_typer(sincedb.app, name="sincedb")


@app.callback(invoke_without_command=True)
def entrypoint(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
):
    """
    BucketFeed - stream the lines of new S3 objects downstream.

    Run 'bucketfeed <command> --help' for help on a specific command.
    """
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
