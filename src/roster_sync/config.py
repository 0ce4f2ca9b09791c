"""roster_sync.config

Process configuration for a sync run.

Connection targets come from CLI flags or environment variables; Google
credentials are read from the environment (or a key file) only, never from
CLI arguments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import psycopg
import yaml

from roster_sync.headers import AliasConfig, AliasFileValidationError, load_alias_file
from roster_sync.shared import DEFAULT_CHUNK_SIZE, ConfigurationError
from roster_sync.source import (
    CsvDirectorySource,
    GoogleSheetsSource,
    TabularSource,
    build_sheets_session,
    load_google_credentials,
)
from roster_sync.store import PostgresStore

ENV_DB_DSN = "ROSTER_SYNC_DB_DSN"
ENV_SPREADSHEET_ID = "ROSTER_SYNC_SPREADSHEET_ID"
ENV_CSV_DIR = "ROSTER_SYNC_CSV_DIR"
ENV_SERVICE_ACCOUNT_FILE = "GOOGLE_SERVICE_ACCOUNT_FILE"
ENV_CHUNK_SIZE = "ROSTER_SYNC_CHUNK_SIZE"
ENV_ALIAS_FILE = "ROSTER_SYNC_ALIAS_FILE"


@dataclass
class SyncConfig:
    db_dsn: str | None = None
    spreadsheet_id: str | None = None
    csv_dir: str | None = None
    service_account_file: str | None = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    alias_file: str | None = None
    request_timeout: float | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] = os.environ) -> "SyncConfig":
        raw_chunk = env.get(ENV_CHUNK_SIZE, "")
        try:
            chunk_size = int(raw_chunk) if raw_chunk else DEFAULT_CHUNK_SIZE
        except ValueError as exc:
            raise ConfigurationError(f"{ENV_CHUNK_SIZE} must be an integer, got {raw_chunk!r}") from exc
        return cls(
            db_dsn=env.get(ENV_DB_DSN) or None,
            spreadsheet_id=env.get(ENV_SPREADSHEET_ID) or None,
            csv_dir=env.get(ENV_CSV_DIR) or None,
            service_account_file=env.get(ENV_SERVICE_ACCOUNT_FILE) or None,
            chunk_size=chunk_size,
            alias_file=env.get(ENV_ALIAS_FILE) or None,
        )

    def validate(self, need_store: bool = True) -> None:
        """Raise ConfigurationError before any stage runs."""
        if need_store and not self.db_dsn:
            raise ConfigurationError(f"database DSN missing (--db-dsn or {ENV_DB_DSN})")
        if not self.spreadsheet_id and not self.csv_dir:
            raise ConfigurationError(
                f"no source: give --spreadsheet-id ({ENV_SPREADSHEET_ID}) "
                f"or --csv-dir ({ENV_CSV_DIR})"
            )
        if self.spreadsheet_id and self.csv_dir:
            raise ConfigurationError("--spreadsheet-id and --csv-dir are mutually exclusive")
        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk size must be positive, got {self.chunk_size}")

    def build_source(
        self,
        env: Mapping[str, str] = os.environ,
        write_access: bool = False,
    ) -> TabularSource:
        if self.csv_dir:
            return CsvDirectorySource(Path(self.csv_dir))
        key_path = Path(self.service_account_file) if self.service_account_file else None
        credentials = load_google_credentials(key_path, env=env, write_access=write_access)
        return GoogleSheetsSource(
            self.spreadsheet_id or "",
            build_sheets_session(credentials),
            timeout=self.request_timeout,
        )

    def build_store(self) -> PostgresStore:
        if not self.db_dsn:
            raise ConfigurationError(f"database DSN missing (--db-dsn or {ENV_DB_DSN})")
        try:
            return PostgresStore.connect(self.db_dsn)
        except psycopg.Error as exc:
            raise ConfigurationError(f"cannot connect to database: {exc}") from exc

    def load_aliases(self) -> AliasConfig:
        if not self.alias_file:
            return AliasConfig()
        path = Path(self.alias_file)
        if not path.exists():
            raise ConfigurationError(f"alias file not found: {path}")
        try:
            return load_alias_file(path)
        except (AliasFileValidationError, yaml.YAMLError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"invalid alias file {path}: {exc}") from exc
