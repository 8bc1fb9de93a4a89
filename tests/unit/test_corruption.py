"""Unit tests for the export corruption guard."""

from __future__ import annotations

import json

import pytest

from roster_sync.config import SyncSettings
from roster_sync.corruption import (
    clean_response,
    corruption_ratio,
    excerpt,
    is_corrupt_char,
    strip_corrupt_chars,
    trim_preamble,
)
from roster_sync.shared import CorruptionError

SETTINGS = SyncSettings()


class TestIsCorruptChar:
    @pytest.mark.parametrize("c", ["\x00", "\x01", "\x08", "\x0e", "\x1f", "\ufffd"])
    def test_corrupt(self, c):
        assert is_corrupt_char(c) is True

    @pytest.mark.parametrize("c", ["\t", "\n", "\x0b", "\x0c", "\r", " ", "a", "{", "é"])
    def test_allowed(self, c):
        assert is_corrupt_char(c) is False


class TestCorruptionRatio:
    def test_clean_text(self):
        assert corruption_ratio('{"a": 1}', 100) == 0.0

    def test_half_corrupt(self):
        assert corruption_ratio("ab\x00\x00", 100) == 0.5

    def test_only_sample_counted(self):
        text = "a" * 10 + "\x00" * 10
        assert corruption_ratio(text, 10) == 0.0

    def test_empty(self):
        assert corruption_ratio("", 100) == 0.0


def test_strip_corrupt_chars_keeps_whitespace():
    assert strip_corrupt_chars("a\x00b\tc\n\ufffdd") == "ab\tc\nd"


def test_excerpt_escapes_controls():
    out = excerpt("ab\x00cd")
    assert "\\x00" in out
    assert "\x00" not in out


class TestTrimPreamble:
    def test_already_json(self):
        assert trim_preamble('[1]', 100) == '[1]'

    def test_drops_preamble(self):
        assert trim_preamble('garbage{"a":1}', 100) == '{"a":1}'

    def test_no_json_start_in_window(self):
        with pytest.raises(CorruptionError):
            trim_preamble("x" * 50 + "[1]", 10)


class TestCleanResponse:
    def test_valid_json_unchanged(self):
        text = '{"data": [{"membershipNumber": "1"}]}'
        assert clean_response(text, SETTINGS) is text

    def test_empty_rejected(self):
        with pytest.raises(CorruptionError):
            clean_response("   ", SETTINGS)

    def test_light_corruption_stripped(self):
        records = [{"membershipNumber": str(i), "fore1": "Jo"} for i in range(50)]
        text = json.dumps(records)
        # fewer than 1% of the characters
        dirty = text[:20] + "\x00" + text[20:40] + "\ufffd" + text[40:]
        cleaned = clean_response(dirty, SETTINGS)
        assert json.loads(cleaned) == records

    def test_heavy_corruption_rejected(self):
        text = '{"data": [' + "\x00" * 200 + ']}'
        with pytest.raises(CorruptionError) as exc_info:
            clean_response(text, SETTINGS)
        assert exc_info.value.ratio > 0.5
        assert "\\x00" in exc_info.value.excerpt

    def test_preamble_removed_after_strip(self):
        body = json.dumps([{"membershipNumber": "1"}] * 100)
        cleaned = clean_response("\x00OK " + body, SETTINGS)
        assert json.loads(cleaned)[0]["membershipNumber"] == "1"

    def test_min_response_chars(self):
        settings = SyncSettings(min_response_chars=100)
        with pytest.raises(CorruptionError, match="too small"):
            clean_response("[]", settings)
