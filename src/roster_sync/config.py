"""roster_sync.config

Tunable settings for a sync run.

Defaults reproduce the values the pipeline has been operated with.  Any
subset may be overridden from a YAML file:

    chunk_size: 1000
    max_failed_chunks: 10
    corruption_max_ratio: 0.02
    placeholder_email_patterns:
      - "@temp-email\\.etu\\.nz$"
      - "@noemail\\."
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from roster_sync.shared import SyncError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EVENT_TYPES = frozenset({
    "GENERAL_MEETING",
    "SPECIAL_CONFERENCE",
    "SURVEY_MEETING",
    "BMM_VOTING",
    "BALLOT_VOTING",
    "ANNUAL_MEETING",
    "WORKSHOP",
    "UNION_MEETING",
})

DEFAULT_ENVELOPE_KEYS = ("data", "results", "records", "items")

MAX_CHUNK_SIZE = 10000


class SettingsValidationError(SyncError):
    """Raised when a settings file is malformed or out of range."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncSettings:
    # Fetcher
    fetch_timeout_seconds: float = 600.0
    fetch_max_attempts: int = 3
    fetch_retry_delay_seconds: float = 5.0
    user_agent: str = "roster-sync/1.0"
    # Corruption guard
    corruption_sample_size: int = 10000
    corruption_max_ratio: float = 0.01
    preamble_scan_window: int = 1000
    min_response_chars: int = 0
    # Envelope
    envelope_keys: tuple[str, ...] = DEFAULT_ENVELOPE_KEYS
    # Batch orchestration
    chunk_size: int = 500
    max_failed_chunks: int = 20
    chunk_pause_seconds: float = 0.5
    progress_interval: int = 2500
    # Target resolution
    target_event_type: str = "BMM_VOTING"
    default_event_code: str = "BMM_AUTO"
    default_event_name: str = "BMM - Auto Created"
    # Record mapping
    placeholder_email_patterns: tuple[str, ...] = (r"@temp-email\.etu\.nz$",)
    min_mobile_length: int = 8

    _compiled_placeholders: tuple[re.Pattern[str], ...] = field(
        default=(), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.placeholder_email_patterns)
        object.__setattr__(self, "_compiled_placeholders", compiled)

    @property
    def placeholder_regexes(self) -> tuple[re.Pattern[str], ...]:
        return self._compiled_placeholders


_INT_KEYS = {
    "fetch_max_attempts": 1,
    "corruption_sample_size": 1,
    "preamble_scan_window": 1,
    "min_response_chars": 0,
    "chunk_size": 1,
    "max_failed_chunks": 0,
    "progress_interval": 1,
    "min_mobile_length": 0,
}
_FLOAT_KEYS = {
    "fetch_timeout_seconds": 1.0,
    "fetch_retry_delay_seconds": 0.0,
    "chunk_pause_seconds": 0.0,
}
_STR_KEYS = {"user_agent", "target_event_type", "default_event_code", "default_event_name"}
_LIST_KEYS = {"envelope_keys", "placeholder_email_patterns"}


def _known_keys() -> set[str]:
    return {f.name for f in fields(SyncSettings) if f.init}


# ---------------------------------------------------------------------------
# Loading + validation
# ---------------------------------------------------------------------------

def load_settings(yaml_path: Path | None = None) -> SyncSettings:
    """Return default settings, overridden by the YAML file when given.

    Raises:
        SettingsValidationError: If the file content is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return SyncSettings()
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        return SyncSettings()
    validate_settings(data)
    overrides: dict[str, Any] = {}
    for key, val in data.items():
        if key in _INT_KEYS:
            overrides[key] = int(val)
        elif key in _FLOAT_KEYS:
            overrides[key] = float(val)
        elif key in _LIST_KEYS:
            overrides[key] = tuple(str(v) for v in val)
        elif key == "corruption_max_ratio":
            overrides[key] = float(val)
        else:
            overrides[key] = str(val)
    return replace(SyncSettings(), **overrides)


def validate_settings(data: dict[str, Any]) -> None:
    """Raise SettingsValidationError if data does not match the settings schema.

    Validates:
      - root is a mapping with only known keys
      - numeric values parse and respect their lower bounds
      - corruption_max_ratio is within [0.0, 1.0]
      - chunk_size does not exceed MAX_CHUNK_SIZE
      - target_event_type is a known event type
      - list values are non-empty lists; email patterns compile
    """
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - _known_keys()
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    for key, minimum in _INT_KEYS.items():
        if key not in data:
            continue
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int):
            raise SettingsValidationError(f"Setting '{key}' value '{val}' is not an integer.")
        if val < minimum:
            raise SettingsValidationError(f"Setting '{key}' value {val} must be >= {minimum}.")

    for key, minimum in _FLOAT_KEYS.items():
        if key not in data:
            continue
        try:
            fval = float(data[key])
        except (TypeError, ValueError):
            raise SettingsValidationError(f"Setting '{key}' value '{data[key]}' is not numeric.")
        if fval < minimum:
            raise SettingsValidationError(f"Setting '{key}' value {fval} must be >= {minimum}.")

    if "corruption_max_ratio" in data:
        try:
            ratio = float(data["corruption_max_ratio"])
        except (TypeError, ValueError):
            raise SettingsValidationError(
                f"Setting 'corruption_max_ratio' value '{data['corruption_max_ratio']}' is not numeric."
            )
        if not (0.0 <= ratio <= 1.0):
            raise SettingsValidationError(
                f"Setting 'corruption_max_ratio' value {ratio} must be in [0.0, 1.0]."
            )

    if "chunk_size" in data and data["chunk_size"] > MAX_CHUNK_SIZE:
        raise SettingsValidationError(
            f"Setting 'chunk_size' value {data['chunk_size']} must be <= {MAX_CHUNK_SIZE}."
        )

    for key in _STR_KEYS:
        if key in data and not str(data[key] or "").strip():
            raise SettingsValidationError(f"Setting '{key}' must not be empty.")

    if "target_event_type" in data and data["target_event_type"] not in EVENT_TYPES:
        raise SettingsValidationError(
            f"Invalid target_event_type '{data['target_event_type']}'. "
            f"Must be one of {sorted(EVENT_TYPES)}."
        )

    for key in _LIST_KEYS:
        if key not in data:
            continue
        val = data[key]
        if not isinstance(val, list):
            raise SettingsValidationError(f"Setting '{key}' must be a list.")
        if key == "envelope_keys" and not val:
            raise SettingsValidationError("'envelope_keys' must not be empty.")

    for pattern in data.get("placeholder_email_patterns") or []:
        try:
            re.compile(str(pattern))
        except re.error as exc:
            raise SettingsValidationError(
                f"placeholder_email_patterns entry {pattern!r} is not a valid regex: {exc}"
            )
