"""Normalization functions for spreadsheet cell values.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import json
import re
from typing import Any

# Markers the registration sheets use for a checked boolean cell
_TRUTHY_FLAGS = frozenset({"TRUE", "true", "O", "선출"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: parse_json_mapping
# ---------------------------------------------------------------------------

def parse_json_mapping(value: str | None) -> dict[str, Any] | list[Any]:
    """Parse a JSON-encoded cell (divisions, per-division caps).

    Blank input, malformed JSON and scalar JSON all yield {}.
    """
    v = trim(value)
    if v is None:
        return {}
    try:
        data = json.loads(v)
    except (json.JSONDecodeError, ValueError):
        return {}
    if isinstance(data, (dict, list)):
        return data
    return {}


# ---------------------------------------------------------------------------
# Rule 4: parse_flag
# ---------------------------------------------------------------------------

def parse_flag(value: str | None) -> bool:
    """Return True only for the sheet's checked markers ('TRUE', 'O', ...)."""
    v = trim(value)
    return v in _TRUTHY_FLAGS if v else False
