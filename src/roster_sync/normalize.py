"""Normalization functions for member export ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from typing import Iterable

_MARKDOWN_MAILTO_RE = re.compile(r"^\[([^\]]*)\]\(mailto:[^)]*\)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
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
# Rule 3: unwrap_markdown_email
# ---------------------------------------------------------------------------

def unwrap_markdown_email(value: str | None) -> str | None:
    """Extract the address from '[a@b.nz](mailto:a@b.nz)' style values.

    The export tool occasionally renders email cells as markdown links.
    Anything else is returned unchanged.
    """
    if value is None:
        return None
    m = _MARKDOWN_MAILTO_RE.match(value.strip())
    if m:
        return m.group(1)
    return value


# ---------------------------------------------------------------------------
# Rule 4: build_display_name
# ---------------------------------------------------------------------------

def build_display_name(
    first_name: str | None,
    last_name: str | None,
    membership_number: str,
) -> str:
    """'First Last', else whichever part exists, else 'Member <number>'."""
    parts = [p for p in (normalize_space(first_name), normalize_space(last_name)) if p]
    if parts:
        return " ".join(parts)
    return f"Member {membership_number}"


# ---------------------------------------------------------------------------
# Rule 5: contact validity flags
# ---------------------------------------------------------------------------

def is_valid_email(
    value: str | None,
    placeholder_patterns: Iterable[re.Pattern[str]] = (),
) -> bool:
    """False for blank addresses and generated placeholder addresses."""
    v = trim(value)
    if v is None:
        return False
    return not any(p.search(v) for p in placeholder_patterns)


def is_valid_mobile(value: str | None, min_length: int = 8) -> bool:
    """False for blank numbers and numbers shorter than min_length."""
    v = trim(value)
    if v is None:
        return False
    return len(v) >= min_length
