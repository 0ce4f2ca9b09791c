"""roster_sync.source

Tabular source readers: the registration spreadsheet, or a directory of
CSV exports of the same sheets.

Every reader exposes the same four calls:
  sheet_titles()                 → every sheet title in the document
  find_sheet(candidates)         → first candidate title present, or None
  read_rows(title, range_spec)   → raw string matrix, row 0 is the header row
  write_headers(title, headers)  → create the sheet if needed, write row 1

Readers never interpret cell values; that is the stages' job.
"""

from __future__ import annotations

import csv
import logging
import os
import urllib.parse
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

import requests

from roster_sync.headers import SHEET_CANDIDATES, SHEET_HEADERS
from roster_sync.shared import ConfigurationError, SourceReadError

log = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SCOPE_READONLY = "https://www.googleapis.com/auth/spreadsheets.readonly"
SCOPE_READWRITE = "https://www.googleapis.com/auth/spreadsheets"
DEFAULT_RANGE = "A1:Z"
DEFAULT_SERVICE_ACCOUNT_FILE = "service-account.json"
_TOKEN_URI = "https://oauth2.googleapis.com/token"


class TabularSource(Protocol):
    def sheet_titles(self) -> list[str]:
        ...

    def find_sheet(self, candidates: Sequence[str]) -> str | None:
        ...

    def read_rows(self, sheet_title: str, range_spec: str = DEFAULT_RANGE) -> list[list[str]]:
        ...

    def write_headers(self, sheet_title: str, headers: Sequence[str]) -> None:
        ...


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def load_google_credentials(
    key_path: Path | None = None,
    env: Mapping[str, str] = os.environ,
    write_access: bool = False,
) -> Any:
    """Return google-auth credentials for the Sheets API.

    Lookup order:
      1. GOOGLE_SERVICE_ACCOUNT_EMAIL + GOOGLE_PRIVATE_KEY (service account
         given inline; escaped '\\n' sequences become newlines)
      2. GOOGLE_OAUTH_ACCESS_TOKEN (delegated user token)
      3. a service-account JSON key file (key_path, default
         ./service-account.json)

    Raises:
        ConfigurationError: If none of the above is available.
    """
    from google.oauth2 import credentials as user_credentials
    from google.oauth2 import service_account

    scopes = [SCOPE_READWRITE if write_access else SCOPE_READONLY]

    email = env.get("GOOGLE_SERVICE_ACCOUNT_EMAIL", "")
    private_key = env.get("GOOGLE_PRIVATE_KEY", "")
    if email and private_key:
        info = {
            "client_email": email,
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": _TOKEN_URI,
        }
        return service_account.Credentials.from_service_account_info(info, scopes=scopes)

    token = env.get("GOOGLE_OAUTH_ACCESS_TOKEN", "")
    if token:
        return user_credentials.Credentials(token=token, scopes=scopes)

    path = key_path or Path.cwd() / DEFAULT_SERVICE_ACCOUNT_FILE
    if path.exists():
        return service_account.Credentials.from_service_account_file(str(path), scopes=scopes)

    raise ConfigurationError(
        "Google credentials not found: set GOOGLE_SERVICE_ACCOUNT_EMAIL and "
        f"GOOGLE_PRIVATE_KEY, GOOGLE_OAUTH_ACCESS_TOKEN, or provide {path}"
    )


def build_sheets_session(credentials: Any) -> requests.Session:
    """Wrap credentials in a requests session that refreshes tokens itself."""
    from google.auth.transport.requests import AuthorizedSession

    return AuthorizedSession(credentials)


def _a1(sheet_title: str, range_spec: str) -> str:
    quoted = sheet_title.replace("'", "''")
    return f"'{quoted}'!{range_spec}"


# ---------------------------------------------------------------------------
# Google Sheets reader
# ---------------------------------------------------------------------------

class GoogleSheetsSource:
    """Sheets v4 REST reader over an authorized requests session."""

    def __init__(
        self,
        spreadsheet_id: str,
        session: requests.Session,
        timeout: float | None = None,
    ) -> None:
        if not spreadsheet_id:
            raise ConfigurationError("spreadsheet id is required")
        self.spreadsheet_id = spreadsheet_id
        self._session = session
        self._timeout = timeout
        self._titles: list[str] | None = None

    def _url(self, suffix: str = "") -> str:
        return f"{SHEETS_API_BASE}/{self.spreadsheet_id}{suffix}"

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise SourceReadError(f"{method} {url} failed: {exc}") from exc
        return resp.json() if resp.content else {}

    def sheet_titles(self) -> list[str]:
        if self._titles is None:
            data = self._request(
                "GET", self._url(), params={"fields": "sheets.properties.title"}
            )
            self._titles = [
                s["properties"]["title"] for s in data.get("sheets", [])
            ]
        return list(self._titles)

    def find_sheet(self, candidates: Sequence[str]) -> str | None:
        titles = self.sheet_titles()
        for cand in candidates:
            if cand in titles:
                return cand
        return None

    def read_rows(self, sheet_title: str, range_spec: str = DEFAULT_RANGE) -> list[list[str]]:
        a1 = urllib.parse.quote(_a1(sheet_title, range_spec), safe="")
        data = self._request("GET", self._url(f"/values/{a1}"))
        return [[str(c) for c in row] for row in data.get("values", [])]

    def write_headers(self, sheet_title: str, headers: Sequence[str]) -> None:
        if sheet_title not in self.sheet_titles():
            self._request(
                "POST",
                self._url(":batchUpdate"),
                json={"requests": [{"addSheet": {"properties": {"title": sheet_title}}}]},
            )
            self._titles = None
        a1 = urllib.parse.quote(_a1(sheet_title, "A1"), safe="")
        self._request(
            "PUT",
            self._url(f"/values/{a1}"),
            params={"valueInputOption": "RAW"},
            json={"values": [list(headers)]},
        )


# ---------------------------------------------------------------------------
# CSV directory reader
# ---------------------------------------------------------------------------

class CsvDirectorySource:
    """One '<sheet title>.csv' file per sheet, as exported from the spreadsheet."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise ConfigurationError(f"CSV directory not found: {self.directory}")

    def _path(self, sheet_title: str) -> Path:
        return self.directory / f"{sheet_title}.csv"

    def sheet_titles(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob("*.csv"))

    def find_sheet(self, candidates: Sequence[str]) -> str | None:
        for cand in candidates:
            if self._path(cand).exists():
                return cand
        return None

    def read_rows(self, sheet_title: str, range_spec: str = DEFAULT_RANGE) -> list[list[str]]:
        path = self._path(sheet_title)
        try:
            with path.open(encoding="utf-8-sig", newline="") as fh:
                return [row for row in csv.reader(fh)]
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            raise SourceReadError(f"cannot read {path}: {exc}") from exc

    def write_headers(self, sheet_title: str, headers: Sequence[str]) -> None:
        path = self._path(sheet_title)
        rows = self.read_rows(sheet_title) if path.exists() else []
        rows = [list(headers)] + rows[1:]
        with path.open("w", encoding="utf-8", newline="") as fh:
            csv.writer(fh).writerows(rows)


# ---------------------------------------------------------------------------
# In-memory reader
# ---------------------------------------------------------------------------

class StaticSource:
    """Sheets held in memory (used in tests)."""

    def __init__(self, sheets: dict[str, list[list[str]]] | None = None) -> None:
        self.sheets: dict[str, list[list[str]]] = dict(sheets or {})

    def sheet_titles(self) -> list[str]:
        return list(self.sheets)

    def find_sheet(self, candidates: Sequence[str]) -> str | None:
        for cand in candidates:
            if cand in self.sheets:
                return cand
        return None

    def read_rows(self, sheet_title: str, range_spec: str = DEFAULT_RANGE) -> list[list[str]]:
        if sheet_title not in self.sheets:
            raise SourceReadError(f"no such sheet: {sheet_title}")
        return [list(r) for r in self.sheets[sheet_title]]

    def write_headers(self, sheet_title: str, headers: Sequence[str]) -> None:
        rows = self.sheets.get(sheet_title, [])
        self.sheets[sheet_title] = [list(headers)] + rows[1:]


# ---------------------------------------------------------------------------
# Header initialization
# ---------------------------------------------------------------------------

def _find_sheet_loose(source: TabularSource, candidates: Sequence[str]) -> str | None:
    found = source.find_sheet(candidates)
    if found:
        return found
    lowered = {c.lower() for c in candidates}
    for title in source.sheet_titles():
        if title.lower() in lowered:
            return title
    return None


def init_headers(
    source: TabularSource,
    headers: Mapping[str, Sequence[str]] = SHEET_HEADERS,
    candidates: Mapping[str, Sequence[str]] = SHEET_CANDIDATES,
) -> list[str]:
    """Write canonical header rows into missing or empty sheets.

    A sheet is created under its second candidate title (the capitalized
    English one) when no candidate exists. Sheets whose first row already
    has content are left alone.

    Returns the sheet titles that were written.
    """
    written: list[str] = []
    for sheet, header_row in headers.items():
        names = candidates[sheet]
        title = _find_sheet_loose(source, names)
        if title is None:
            title = names[1] if len(names) > 1 else names[0]
            log.info("Creating sheet %s", title)
        else:
            existing = source.read_rows(title, "A1:Z1")
            if existing and any((c or "").strip() for c in existing[0]):
                log.info("Sheet %s already has headers; skipping", title)
                continue
        source.write_headers(title, header_row)
        written.append(title)
    return written


def read_sheet(
    source: TabularSource,
    candidates: Sequence[str],
    range_spec: str = DEFAULT_RANGE,
) -> tuple[str, list[list[str]]]:
    """Locate the first existing candidate sheet and read it.

    Raises:
        SourceReadError: If no candidate exists or the read fails.
    """
    title = source.find_sheet(candidates)
    if title is None:
        raise SourceReadError(f"sheet not found (tried {list(candidates)})")
    return title, source.read_rows(title, range_spec)
