"""roster_sync.headers

Header alias resolution for registration spreadsheets.

Sheet authors label the same column in several ways (Korean labels typed by
organizers, camelCase keys written by the header-init tool). Every canonical
field key maps to an ordered list of accepted header spellings; the first
spelling present in the header row wins.

Absence is never an error: a missing column or a blank cell both yield None
so the caller can apply its default.

Usage:
    from roster_sync.headers import RowAccessor

    accessor = RowAccessor(rows[0])
    for row in rows[1:]:
        phone = accessor.get(row, "managerPhone") or PLACEHOLDER_PHONE
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from roster_sync.normalize import trim

# ---------------------------------------------------------------------------
# Alias tables
# ---------------------------------------------------------------------------

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    # Events
    "tourId":        ("tourId", "TourID", "대회id", "ID", "Id", "id"),
    "name":          ("name", "대회명"),
    "url":           ("url", "안내페이지 url", "안내URL", "pageUrl"),
    "start":         ("start", "대회시작", "event.start", "eventStart"),
    "end":           ("end", "대회종료", "event.end", "eventEnd"),
    "regStart":      ("regStart", "reg.start", "reg_start", "regStartDate",
                      "reg.start.date", "접수시작"),
    "regEnd":        ("regEnd", "reg.end", "reg_end", "regEndDate",
                      "reg.end.date", "접수종료"),
    "status":        ("status", "상태"),
    "divs":          ("divs", "종별", "divisions", "divs_json"),
    "divCaps":       ("divCaps", "div_caps", "divCapsJson", "div_caps_json"),
    # Rosters
    "teamId":        ("teamId", "TeamID", "id", "팀id"),
    "teamNameKo":    ("teamNameKo", "teamName", "팀명", "팀명(한글)"),
    "teamNameEn":    ("teamNameEn", "팀명(영문)", "team_en"),
    "managerName":   ("managerName", "담당자", "대표자", "manager"),
    "managerPhone":  ("managerPhone", "연락처", "phone", "tel"),
    "category":      ("category", "종별"),
    "division":      ("division", "디비전"),
    "uniformHome":   ("uniformHome", "homeColor", "홈유니폼"),
    "uniformAway":   ("uniformAway", "awayColor", "원정유니폼"),
    "paymentStatus": ("입금확인", "paymentStatus"),
    # Participants
    "playerName":    ("선수이름", "name", "PlayerName", "playerName", "이름"),
    "backNumber":    ("backNumber", "등번호", "back_number"),
    "position":      ("position", "포지션"),
    "birth":         ("birth", "생년월일", "birthDate", "만나이"),
    "isElite":       ("isElite", "선출여부", "선출", "is_elite"),
}

# Logical sheet → ordered sheet-title candidates
SHEET_CANDIDATES: dict[str, tuple[str, ...]] = {
    "events":       ("tournaments", "Tournaments", "대회"),
    "rosters":      ("teams", "Teams", "신청", "신청팀", "접수"),
    "participants": ("players", "Players", "선수", "선수명단"),
}

# Canonical header rows written by init_headers
SHEET_HEADERS: dict[str, tuple[str, ...]] = {
    "events": (
        "tourId", "name", "status", "start", "end", "regStart", "regEnd",
        "url", "divs", "divCaps",
    ),
    "rosters": (
        "tourId", "teamId", "teamNameKo", "teamNameEn", "managerName",
        "managerPhone", "category", "division", "uniformHome", "uniformAway",
        "paymentStatus", "status",
    ),
    "participants": (
        "tourId", "teamId", "teamName", "playerName", "backNumber",
        "position", "birth", "isElite",
    ),
}

_ALIAS_FILE_KEYS = frozenset({"aliases", "sheets"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AliasFileValidationError(ValueError):
    """Raised when a YAML alias file fails schema validation."""


# ---------------------------------------------------------------------------
# Stateless lookup
# ---------------------------------------------------------------------------

def resolve_column(
    header_row: Sequence[str],
    canonical_key: str,
    aliases: Mapping[str, Sequence[str]] = HEADER_ALIASES,
) -> int | None:
    """Return the index of the first accepted spelling present, else None.

    A key with no alias entry is looked up under its own name.
    """
    headers = [(h or "").strip() for h in header_row]
    for candidate in aliases.get(canonical_key, (canonical_key,)):
        if candidate in headers:
            return headers.index(candidate)
    return None


def extract(
    data_row: Sequence[str],
    header_row: Sequence[str],
    canonical_key: str,
    aliases: Mapping[str, Sequence[str]] = HEADER_ALIASES,
) -> str | None:
    """Trimmed cell value for canonical_key, or None when absent/blank."""
    idx = resolve_column(header_row, canonical_key, aliases)
    if idx is None or idx >= len(data_row):
        return None
    return trim(data_row[idx])


# ---------------------------------------------------------------------------
# RowAccessor
# ---------------------------------------------------------------------------

class RowAccessor:
    """Resolves canonical keys against one sheet's header row.

    Column indices are resolved on first use and cached, so per-row access
    is a plain list index.
    """

    def __init__(
        self,
        header_row: Sequence[str],
        aliases: Mapping[str, Sequence[str]] = HEADER_ALIASES,
    ) -> None:
        self._headers = [(h or "").strip() for h in header_row]
        self._aliases = aliases
        self._index: dict[str, int | None] = {}

    @property
    def headers(self) -> list[str]:
        return list(self._headers)

    def column(self, key: str) -> int | None:
        if key not in self._index:
            self._index[key] = resolve_column(self._headers, key, self._aliases)
        return self._index[key]

    def has(self, key: str) -> bool:
        return self.column(key) is not None

    def get(self, row: Sequence[str], key: str) -> str | None:
        idx = self.column(key)
        if idx is None or idx >= len(row):
            return None
        return trim(row[idx])

    def as_dict(self, row: Sequence[str]) -> dict[str, str]:
        """Header → raw cell mapping, used when writing rejected rows."""
        return {
            h: (row[i] if i < len(row) else "")
            for i, h in enumerate(self._headers)
            if h
        }


# ---------------------------------------------------------------------------
# YAML alias overrides
# ---------------------------------------------------------------------------

@dataclass
class AliasConfig:
    """Effective alias and sheet-candidate tables for one run."""

    aliases: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(HEADER_ALIASES)
    )
    sheets: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(SHEET_CANDIDATES)
    )


def load_alias_file(yaml_path: Path) -> AliasConfig:
    """Load a YAML file that extends the built-in alias tables.

    Expected shape:
        aliases:
          managerPhone: ["휴대폰"]
        sheets:
          rosters: ["2025 신청"]

    Entries from the file are tried before the built-in spellings.

    Raises:
        AliasFileValidationError: If the file shape is invalid.
        yaml.YAMLError: If the file is not valid YAML.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: Any = yaml.safe_load(raw) or {}
    validate_alias_data(data)

    config = AliasConfig()
    for key, spellings in (data.get("aliases") or {}).items():
        config.aliases[key] = _merge(spellings, config.aliases.get(key, ()))
    for sheet, titles in (data.get("sheets") or {}).items():
        config.sheets[sheet] = _merge(titles, config.sheets[sheet])
    return config


def validate_alias_data(data: Any) -> None:
    """Raise AliasFileValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise AliasFileValidationError("alias file must be a mapping")
    unknown = set(data) - _ALIAS_FILE_KEYS
    if unknown:
        raise AliasFileValidationError(f"unknown top-level keys: {sorted(unknown)}")
    for section in _ALIAS_FILE_KEYS:
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise AliasFileValidationError(f"{section!r} must be a mapping")
        for key, values in entries.items():
            if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                raise AliasFileValidationError(
                    f"{section}.{key} must be a list of strings"
                )
    for sheet in (data.get("sheets") or {}):
        if sheet not in SHEET_CANDIDATES:
            raise AliasFileValidationError(
                f"unknown sheet {sheet!r}; expected one of {sorted(SHEET_CANDIDATES)}"
            )


def _merge(first: Sequence[str], rest: Sequence[str]) -> tuple[str, ...]:
    out: list[str] = []
    for v in [*first, *rest]:
        if v not in out:
            out.append(v)
    return tuple(out)
