"""CLI entry point for Flood, the staged S3 uploader.

Commands:
    flood serve     recover, then watch the inbox and upload arrivals
    flood cp        stage a local file or directory for upload
    flood status    stage counts and recent attempt outcomes
"""

import asyncio
import logging
import sys
from pathlib import Path

import click

from flood.config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_JITTER_SECONDS,
    CREDENTIALS_FILE,
    LEDGER_DB_PATH,
    MAX_ATTEMPTS,
    SERVER_DIR,
    SETTLE_SECONDS,
)


def _require_server_dir(server_dir: str) -> Path:
    """Fail loudly if the server directory is unset."""
    if not server_dir:
        click.echo("Error: --server-dir is required (or set FLOOD_SERVER_DIR).", err=True)
        sys.exit(1)
    return Path(server_dir)


def _load_registry(credentials_file: str):
    """Load profiles or abort: configuration errors are fatal at startup."""
    from flood.credentials import ConfigurationError, find_credentials_file, load_profiles

    try:
        return load_profiles(find_credentials_file(credentials_file or None))
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Flood: move files from a staged directory tree into S3 buckets."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


# ------------------------------------------------------------------
# flood serve
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--server-dir",
    default=SERVER_DIR,
    show_default=True,
    help="Root of the staging/inbox/processing/failed/completed tree.",
)
@click.option(
    "--credentials",
    "credentials_file",
    default=CREDENTIALS_FILE,
    help="Credentials file (falls back to AWS_SHARED_CREDENTIALS_FILE, ~/.aws/credentials).",
)
@click.option("--ledger", "ledger_path", default=LEDGER_DB_PATH, show_default=True, help="SQLite ledger path.")
@click.option("--once", is_flag=True, help="Drain processing and inbox, then exit (no continuous watch).")
def serve(server_dir: str, credentials_file: str, ledger_path: str, once: bool) -> None:
    """Recover interrupted uploads, then upload inbox arrivals."""
    server_path = _require_server_dir(server_dir)
    profiles = _load_registry(credentials_file)
    asyncio.run(_serve_async(server_path, profiles, ledger_path, once))


async def _serve_async(server_path: Path, profiles, ledger_path: str, once: bool) -> None:
    from flood.integrations.s3 import S3Gateway
    from flood.schemas.transfer import Stage
    from flood.staging.layout import StageLayout
    from flood.transfer.executor import RetryPolicy, UploadExecutor
    from flood.transfer.ledger import RetryLedger
    from flood.watcher.ingest import Ingestor
    from flood.watcher.watcher import run_server

    layout = StageLayout(server_path)
    layout.purge_staging()
    layout.ensure_layout(profiles.names())

    gateways = {profile.name: S3Gateway.for_profile(profile) for profile in profiles}
    policy = RetryPolicy(
        max_attempts=MAX_ATTEMPTS,
        base_delay=BACKOFF_BASE_SECONDS,
        jitter=BACKOFF_JITTER_SECONDS,
    )

    with RetryLedger(ledger_path) as ledger:
        executor = UploadExecutor(layout=layout, ledger=ledger, gateways=gateways, policy=policy)
        ingestor = Ingestor(layout, executor)

        if once:
            click.echo(f"Draining {server_path} (once mode)…")
        else:
            click.echo(f"Serving {server_path} (Ctrl+C to stop)…")
            click.echo(f"  Profiles: {profiles.names()}")

        results = await run_server(
            ingestor,
            layout.root(Stage.INBOX),
            once=once,
            settle_seconds=SETTLE_SECONDS,
        )

        if once:
            completed = sum(1 for r in results if r.final_stage == Stage.COMPLETED)
            failed = sum(1 for r in results if r.final_stage == Stage.FAILED)
            skipped = sum(1 for r in results if r.skipped_upload)
            stuck = sum(1 for r in results if r.final_stage is None)
            click.echo(
                f"Done. Files: {len(results)}, Completed: {completed}, "
                f"Skipped: {skipped}, Failed: {failed}, Left in place: {stuck}"
            )


# ------------------------------------------------------------------
# flood cp
# ------------------------------------------------------------------


@cli.command("cp")
@click.argument("source", type=click.Path(exists=True, path_type=Path))
@click.argument("destination")
@click.option("--recursive", "-r", is_flag=True, help="Copy a directory and all its contents.")
@click.option("--server-dir", default=SERVER_DIR, show_default=True, help="Server root to stage into.")
@click.option("--credentials", "credentials_file", default=CREDENTIALS_FILE, help="Credentials file.")
def copy(source: Path, destination: str, recursive: bool, server_dir: str, credentials_file: str) -> None:
    """Stage SOURCE for upload to DESTINATION (s3://<profile>/<bucket>/<key>)."""
    from flood.credentials import UnknownProfileError
    from flood.staging.addressing import MalformedPathError
    from flood.staging.copy import CopyError, stage_copy
    from flood.staging.layout import StageLayout

    server_path = _require_server_dir(server_dir)
    profiles = _load_registry(credentials_file)

    try:
        staged = stage_copy(
            source,
            destination,
            layout=StageLayout(server_path),
            profiles=profiles,
            recursive=recursive,
        )
    except (MalformedPathError, CopyError, UnknownProfileError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Staged {len(staged)} file(s) into the inbox.")
    for path in staged:
        click.echo(f"  {path}")


# ------------------------------------------------------------------
# flood status
# ------------------------------------------------------------------


@cli.command()
@click.option("--server-dir", default=SERVER_DIR, show_default=True, help="Server root to inspect.")
@click.option("--ledger", "ledger_path", default=LEDGER_DB_PATH, show_default=True, help="SQLite ledger path.")
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours.")
def status(server_dir: str, ledger_path: str, hours: int) -> None:
    """Quick overview of stage contents and recent attempts."""
    from flood.schemas.transfer import AttemptOutcome, Stage
    from flood.staging.layout import StageLayout
    from flood.transfer.ledger import RetryLedger

    layout = StageLayout(_require_server_dir(server_dir))

    click.echo("Flood Status")
    for stage in Stage:
        click.echo(f"  {stage.value + ':':<20}{layout.count_files(stage)}")

    with RetryLedger(ledger_path) as ledger:
        counts = ledger.count_outcomes(hours=hours)
    click.echo(f"Attempts ({hours}h)")
    for outcome in AttemptOutcome:
        click.echo(f"  {outcome.value + ':':<20}{counts[outcome]}")
