"""Tests for payload sizing and human-readable sizes."""

import pytest

from DESKTOPFLOW_REPORT import human_size, utf16_size


class TestUtf16Size:
    def test_ascii_is_two_bytes_per_char(self):
        assert utf16_size("hello") == 10

    def test_empty_and_none(self):
        assert utf16_size("") == 0
        assert utf16_size(None) == 0

    def test_not_utf8_length(self):
        # 'é' is 2 bytes in UTF-8 but one UTF-16 code unit
        assert utf16_size("é") == 2
        assert utf16_size("€") == 2

    def test_astral_char_counts_two_code_units(self):
        assert utf16_size("😀") == 4
        assert utf16_size("a😀b") == 8

    def test_lone_surrogate_from_json(self):
        assert utf16_size("\ud83d") == 2


class TestHumanSize:
    @pytest.mark.parametrize("count,expected", [
        (0, "0B"),
        (1, "1B"),
        (1023, "1023B"),
        (1024, "1KB"),
        (1536, "1.5KB"),
        (1048576, "1MB"),
        (-2048, "-2KB"),
        (-1, "-1B"),
    ])
    def test_literals(self, count, expected):
        assert human_size(count) == expected

    def test_rounds_to_one_decimal(self):
        assert human_size(1100) == "1.1KB"
        assert human_size(10 * 1024 + 300) == "10.3KB"

    def test_exact_powers_never_drop_a_unit(self):
        assert human_size(1024 ** 3) == "1GB"
        assert human_size(1024 ** 4) == "1TB"
        assert human_size(1024 ** 5) == "1PB"
        assert human_size(1024 ** 6) == "1EB"

    def test_just_below_a_power_rounds_up_in_lower_unit(self):
        assert human_size(1024 ** 2 - 1) == "1024KB"

    def test_clamped_to_exabytes(self):
        assert human_size(1024 ** 7) == "1024EB"
