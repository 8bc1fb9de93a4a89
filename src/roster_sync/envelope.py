"""roster_sync.envelope

Locate the record array inside the export's JSON envelope.

The export endpoint has returned a bare array, {"data": [...]},
{"results": [...]}, {"records": [...]} and {"items": [...]} at different
times, with no version marker.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from roster_sync.config import DEFAULT_ENVELOPE_KEYS
from roster_sync.shared import EnvelopeError

log = logging.getLogger(__name__)


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise EnvelopeError(f"response is not valid JSON: {exc}") from exc


def find_record_array(root: Any, keys: Sequence[str] = DEFAULT_ENVELOPE_KEYS) -> list[Any]:
    """Return the record list from a parsed envelope.

    A root array is the record set.  For a root object the first key in
    `keys` holding an array wins.
    """
    if isinstance(root, list):
        log.info("Envelope: root array with %d records", len(root))
        return root
    if isinstance(root, dict):
        for key in keys:
            value = root.get(key)
            if isinstance(value, list):
                log.info("Envelope: found %d records under %r", len(value), key)
                return value
        raise EnvelopeError(
            f"no record array under any of {list(keys)}; "
            f"top-level keys: {sorted(root.keys())[:20]}"
        )
    raise EnvelopeError(f"JSON root is {type(root).__name__}, expected array or object")


def extract_records(text: str, keys: Sequence[str] = DEFAULT_ENVELOPE_KEYS) -> list[Any]:
    return find_record_array(parse_json(text), keys)
