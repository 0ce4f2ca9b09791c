"""roster_sync.cli

CLI entrypoint for the registration sheet sync.

Modes (--mode):
  sync          — read the spreadsheet and upsert tournaments, teams, players
  init_headers  — write canonical header rows into missing or empty sheets

Usage (sync from the live spreadsheet):
    GOOGLE_SERVICE_ACCOUNT_EMAIL=... GOOGLE_PRIVATE_KEY=... \\
    python -m roster_sync.cli \\
        --mode sync \\
        --db-dsn "$DB_DSN" \\
        --spreadsheet-id "$SPREADSHEET_ID"

Usage (sync from a directory of CSV exports):
    python -m roster_sync.cli \\
        --mode sync \\
        --db-dsn "$DB_DSN" \\
        --csv-dir exports/2025-spring \\
        --rejects-path artifacts/rejects/sync_rejects.csv
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click

from roster_sync.config import (
    ENV_ALIAS_FILE,
    ENV_CHUNK_SIZE,
    ENV_CSV_DIR,
    ENV_DB_DSN,
    ENV_SERVICE_ACCOUNT_FILE,
    ENV_SPREADSHEET_ID,
    SyncConfig,
)
from roster_sync.orchestrator import run_sync
from roster_sync.shared import (
    DEFAULT_CHUNK_SIZE,
    ConfigurationError,
    RejectWriter,
    SourceReadError,
    build_sync_report,
    write_run_report,
)
from roster_sync.source import init_headers


@click.command()
@click.option(
    "--mode",
    type=click.Choice(["sync", "init_headers"]),
    default="sync",
    show_default=True,
)
@click.option("--db-dsn", envvar=ENV_DB_DSN, default=None, help="PostgreSQL DSN")
@click.option("--spreadsheet-id", envvar=ENV_SPREADSHEET_ID, default=None, help="Google spreadsheet id")
@click.option("--csv-dir", envvar=ENV_CSV_DIR, default=None, type=click.Path(), help="Directory of '<sheet>.csv' exports")
@click.option(
    "--service-account-file",
    envvar=ENV_SERVICE_ACCOUNT_FILE,
    default=None,
    type=click.Path(),
    help="Service-account JSON key (used when GOOGLE_SERVICE_ACCOUNT_EMAIL/GOOGLE_PRIVATE_KEY are unset)",
)
@click.option("--alias-file", envvar=ENV_ALIAS_FILE, default=None, type=click.Path(), help="YAML header/sheet alias overrides")
@click.option("--chunk-size", envvar=ENV_CHUNK_SIZE, default=DEFAULT_CHUNK_SIZE, type=int, show_default=True)
@click.option("--request-timeout", default=None, type=float, help="[sync] Sheets API timeout in seconds")
@click.option("--rejects-path", default=None, type=click.Path(), help="[sync] CSV receiving skipped rows")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--no-report", is_flag=True, default=False, help="[sync] Do not write the JSON run report")
@click.option("--verbose", is_flag=True, default=False)
def main(
    mode: str,
    db_dsn: str | None,
    spreadsheet_id: str | None,
    csv_dir: str | None,
    service_account_file: str | None,
    alias_file: str | None,
    chunk_size: int,
    request_timeout: float | None,
    rejects_path: str | None,
    run_id: str | None,
    no_report: bool,
    verbose: bool,
) -> None:
    """Registration spreadsheet → PostgreSQL sync CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    config = SyncConfig(
        db_dsn=db_dsn,
        spreadsheet_id=spreadsheet_id,
        csv_dir=csv_dir,
        service_account_file=service_account_file,
        chunk_size=chunk_size,
        alias_file=alias_file,
        request_timeout=request_timeout,
    )

    click.echo(f"[{run_id}] Starting {mode} run")

    if mode == "init_headers":
        try:
            config.validate(need_store=False)
            aliases = config.load_aliases()
            source = config.build_source(write_access=True)
            written = init_headers(source, candidates=aliases.sheets)
        except (ConfigurationError, SourceReadError) as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)
        if written:
            click.echo(f"[{run_id}] Headers written: {', '.join(written)}")
        else:
            click.echo(f"[{run_id}] All sheets already have headers.")
        return

    try:
        config.validate()
        aliases = config.load_aliases()
        source = config.build_source()
        store = config.build_store()
    except ConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    rejects = RejectWriter(Path(rejects_path)) if rejects_path else None
    try:
        result = run_sync(
            source, store,
            chunk_size=config.chunk_size,
            aliases=aliases,
            rejects=rejects,
        )
    finally:
        store.close()
        if rejects:
            rejects.close()

    for line in result.logs:
        click.echo(f"[{run_id}] {line}")
    click.echo(build_sync_report(result.counters, result.success, result.error))

    if not no_report:
        report_path = write_run_report(
            run_id, started_at, mode,
            {"spreadsheet_id": spreadsheet_id or "", "csv_dir": csv_dir or ""},
            result.to_dict(),
            result.counters,
        )
        click.echo(f"[{run_id}] Run report: {report_path}")

    if not result.success:
        click.echo(f"[{run_id}] FATAL: {result.error}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
