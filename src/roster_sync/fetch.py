"""roster_sync.fetch

HTTP fetcher for the member export endpoint.

The export is a single large JSON document (tens of thousands of records,
no pagination) served by an endpoint that occasionally drops connections
or mixes character sets.  Requests ask for an uncompressed body, the body
is decoded per its declared charset (UTF-8 unless labelled ISO-8859-1), and
transport failures are retried a fixed number of times with a fixed pause.
"""

from __future__ import annotations

import logging
import time
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

import requests

from roster_sync.config import SyncSettings
from roster_sync.shared import FetchError

log = logging.getLogger(__name__)


def redact_url(url: str) -> str:
    """Drop the query string (which carries the access token) for logging."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "<redacted>", ""))


def request_headers(settings: SyncSettings) -> dict[str, str]:
    return {
        "Accept": "application/json",
        "Accept-Encoding": "identity",
        "Accept-Charset": "utf-8, iso-8859-1",
        "User-Agent": settings.user_agent,
    }


LATIN1_CHARSETS = frozenset({"iso-8859-1", "iso8859-1", "latin-1", "latin1"})


def declared_charset(content_type: str) -> str | None:
    """Return the charset parameter of a Content-Type header, lower-cased."""
    for param in content_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.strip().lower() == "charset":
            return value.strip("\"' ").lower() or None
    return None


def decode_body(content: bytes, charset: str | None = None) -> str:
    """Decode the response body.

    A body the server labels ISO-8859-1 is decoded as such.  Anything else
    is UTF-8; undecodable bytes become U+FFFD so the corruption guard
    counts them rather than letting them through as plausible letters.
    """
    if charset in LATIN1_CHARSETS:
        log.info("Response declared charset %s; decoding as ISO-8859-1", charset)
        return content.decode("iso-8859-1")
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as exc:
        text = content.decode("utf-8", errors="replace")
        log.warning(
            "Response is not valid UTF-8 (first bad byte at %d); "
            "%d undecodable sequences replaced with U+FFFD",
            exc.start, text.count("\ufffd"),
        )
        return text


def fetch_export(
    url: str,
    settings: SyncSettings,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """GET url and return the body text.

    Retries transport errors, non-200 responses, and empty bodies up to
    settings.fetch_max_attempts total attempts.  Raises FetchError once
    attempts are exhausted.
    """
    own_session = session is None
    if session is None:
        session = requests.Session()
    safe_url = redact_url(url)
    headers = request_headers(settings)
    last_reason = ""

    try:
        for attempt in range(1, settings.fetch_max_attempts + 1):
            if attempt > 1:
                log.warning(
                    "Attempt %d/%d failed for %s: %s. Retrying in %.1fs",
                    attempt - 1, settings.fetch_max_attempts, safe_url,
                    last_reason, settings.fetch_retry_delay_seconds,
                )
                sleep(settings.fetch_retry_delay_seconds)

            log.info(
                "Fetching export (attempt %d/%d, timeout %.0fs): %s",
                attempt, settings.fetch_max_attempts,
                settings.fetch_timeout_seconds, safe_url,
            )
            try:
                resp = session.get(
                    url,
                    headers=headers,
                    timeout=settings.fetch_timeout_seconds,
                )
            except requests.RequestException as exc:
                last_reason = f"{type(exc).__name__}: {exc}"
                continue

            if resp.status_code != 200:
                last_reason = f"HTTP {resp.status_code}"
                continue

            body = decode_body(
                resp.content or b"",
                declared_charset(resp.headers.get("Content-Type", "")),
            )
            if not body.strip():
                last_reason = "empty response body"
                continue

            log.info("Fetched %d characters from %s", len(body), safe_url)
            return body
    finally:
        if own_session:
            session.close()

    log.error(
        "Failed to fetch %s after %d attempts: %s",
        safe_url, settings.fetch_max_attempts, last_reason,
    )
    raise FetchError(
        f"fetch failed after {settings.fetch_max_attempts} attempts: {last_reason}",
        attempts=settings.fetch_max_attempts,
    )
