"""roster_sync.corruption

Corruption guard for raw export text.

A handful of stray control bytes in a 20 MB export can be stripped and the
rest trusted.  A response where control bytes make up a visible share of
the text is broken upstream and must not be repaired: the guard samples the
head of the document and refuses anything above the configured ratio.

Characters treated as corrupt:
  U+0000            NUL
  U+0001 - U+0008   C0 controls below TAB
  U+000E - U+001F   C0 controls above CR
  U+FFFD            replacement character (lossy decode upstream)
TAB, LF, VT, FF and CR are legitimate JSON whitespace neighbours and kept.
"""

from __future__ import annotations

import json
import logging
import re

from roster_sync.config import SyncSettings
from roster_sync.shared import CorruptionError

log = logging.getLogger(__name__)

_CORRUPT_RE = re.compile(r"[\x00-\x08\x0e-\x1f\ufffd]")

EXCERPT_LEN = 200


def is_corrupt_char(c: str) -> bool:
    return _CORRUPT_RE.match(c) is not None


def corruption_ratio(text: str, sample_size: int) -> float:
    """Fraction of corrupt characters in the first sample_size characters."""
    sample = text[:sample_size]
    if not sample:
        return 0.0
    return len(_CORRUPT_RE.findall(sample)) / len(sample)


def strip_corrupt_chars(text: str) -> str:
    return _CORRUPT_RE.sub("", text)


def excerpt(text: str, length: int = EXCERPT_LEN) -> str:
    """Printable head of text, control characters escaped."""
    head = text[:length]
    return head.encode("unicode_escape").decode("ascii")


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def trim_preamble(text: str, window: int) -> str:
    """Drop any leading non-JSON text before the first '{' or '['.

    Only the first `window` characters are scanned.
    """
    if text[:1] in ("{", "["):
        return text
    for idx, c in enumerate(text[:window]):
        if c in ("{", "["):
            log.info("Trimmed %d leading characters before JSON start", idx)
            return text[idx:]
    raise CorruptionError(
        f"no JSON start found in first {window} characters",
        excerpt=excerpt(text),
    )


def clean_response(text: str, settings: SyncSettings) -> str:
    """Return text unchanged if it parses; otherwise validate, strip, and trim.

    Raises CorruptionError when the sampled corruption ratio exceeds
    settings.corruption_max_ratio, or when no JSON start can be found.
    """
    if not text or not text.strip():
        raise CorruptionError("empty response")

    if settings.min_response_chars and len(text) < settings.min_response_chars:
        raise CorruptionError(
            f"response too small ({len(text)} chars < {settings.min_response_chars}); "
            "possible truncation",
            excerpt=excerpt(text),
        )

    if _parses(text):
        log.debug("Response is valid JSON; no cleaning needed")
        return text

    sample_len = min(len(text), settings.corruption_sample_size)
    ratio = corruption_ratio(text, settings.corruption_sample_size)
    if ratio > settings.corruption_max_ratio:
        sample_excerpt = excerpt(text)
        log.error(
            "Export is severely corrupted: %.2f%% corrupt characters in a %d-char sample "
            "(limit %.2f%%). Excerpt: %s",
            ratio * 100, sample_len, settings.corruption_max_ratio * 100, sample_excerpt,
        )
        raise CorruptionError(
            f"export corrupted: {ratio:.2%} of sampled characters are invalid",
            ratio=ratio,
            excerpt=sample_excerpt,
        )

    stripped = strip_corrupt_chars(text)
    removed = len(text) - len(stripped)
    if removed:
        log.info(
            "Stripped %d corrupt characters (sample ratio %.4f%%)", removed, ratio * 100
        )
    return trim_preamble(stripped.strip(), settings.preamble_scan_window)
