"""roster_sync.store

Relational store client for the sync engine (PostgreSQL via psycopg 3).

Upsert contract:
  record with 'id'    → INSERT ... ON CONFLICT (id) DO UPDATE (full overwrite)
  record without 'id' → INSERT, the store generates the key

Each upsert_batch call commits on its own; nothing spans two calls.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol, Sequence

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from roster_sync.shared import StoreWriteError

log = logging.getLogger(__name__)

# Arbitrary constant shared by every sync run (pg advisory lock key space)
SYNC_LOCK_KEY = 727_401

TABLE_COLUMNS: dict[str, frozenset[str]] = {
    "tournaments": frozenset({
        "id", "legacy_id", "name", "status", "start_date", "end_date",
        "reg_start_at", "reg_end_at", "details_url", "divs", "div_caps",
    }),
    "teams": frozenset({
        "id", "tournament_id", "name_ko", "name_en", "manager_name",
        "manager_phone", "category", "division", "uniform_home",
        "uniform_away", "payment_status", "status",
    }),
    "players": frozenset({
        "id", "team_id", "name", "back_number", "position", "birth_date",
        "is_elite",
    }),
}


class RecordStore(Protocol):
    def select(self, table: str, columns: Sequence[str]) -> list[dict[str, Any]]:
        ...

    def upsert_batch(self, table: str, records: Sequence[dict[str, Any]]) -> None:
        ...

    def acquire_sync_lock(self) -> bool:
        ...

    def release_sync_lock(self) -> None:
        ...


def _check_columns(table: str, columns: Sequence[str]) -> None:
    known = TABLE_COLUMNS.get(table)
    if known is None:
        raise ValueError(f"unknown table {table!r}")
    unknown = set(columns) - known
    if unknown:
        raise ValueError(f"unknown columns for {table}: {sorted(unknown)}")


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


class PostgresStore:
    """RecordStore backed by one psycopg connection (autocommit off)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @classmethod
    def connect(cls, dsn: str) -> "PostgresStore":
        return cls(psycopg.connect(dsn, autocommit=False))

    @property
    def conn(self) -> psycopg.Connection:
        return self._conn

    def close(self) -> None:
        if not self._conn.closed:
            self._conn.close()

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def select(self, table: str, columns: Sequence[str]) -> list[dict[str, Any]]:
        _check_columns(table, columns)
        query = sql.SQL("SELECT {cols} FROM {table}").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            table=sql.Identifier(table),
        )
        rows = self._conn.execute(query).fetchall()
        self._conn.commit()
        return [
            {c: (str(v) if isinstance(v, uuid.UUID) else v) for c, v in zip(columns, row)}
            for row in rows
        ]

    # ------------------------------------------------------------------ #
    # Writes                                                               #
    # ------------------------------------------------------------------ #

    def _upsert_statement(self, table: str, columns: Sequence[str]) -> sql.Composed:
        insert = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals})").format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        if "id" not in columns:
            return insert
        updates = [c for c in columns if c != "id"]
        return insert + sql.SQL(" ON CONFLICT (id) DO UPDATE SET {sets}").format(
            sets=sql.SQL(", ").join(
                sql.SQL("{c} = EXCLUDED.{c}").format(c=sql.Identifier(c))
                for c in updates
            )
        )

    def upsert_batch(self, table: str, records: Sequence[dict[str, Any]]) -> None:
        if not records:
            return
        # Group by column set; update and insert records differ by 'id'
        groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for rec in records:
            groups.setdefault(tuple(sorted(rec)), []).append(rec)
        for columns in groups:
            _check_columns(table, columns)

        try:
            with self._conn.cursor() as cur:
                for columns, recs in groups.items():
                    cur.executemany(
                        self._upsert_statement(table, columns),
                        [[_adapt(r[c]) for c in columns] for r in recs],
                    )
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise StoreWriteError(f"{table} upsert of {len(records)} records failed: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Run lock                                                             #
    # ------------------------------------------------------------------ #

    def acquire_sync_lock(self) -> bool:
        row = self._conn.execute(
            "SELECT pg_try_advisory_lock(%s)", (SYNC_LOCK_KEY,)
        ).fetchone()
        self._conn.commit()
        return bool(row[0])

    def release_sync_lock(self) -> None:
        if self._conn.closed:
            return
        # a failed read leaves the transaction aborted
        self._conn.rollback()
        self._conn.execute("SELECT pg_advisory_unlock(%s)", (SYNC_LOCK_KEY,))
        self._conn.commit()
