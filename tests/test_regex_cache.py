"""Tests for the compiled pattern cache."""

import re

import pytest

from registry_edge.regex_cache import RegexCache, get_regex_cache


class TestRegexCache:

    def test_compiles_once(self):
        cache = RegexCache()

        first = cache.get(r"^10\.")
        second = cache.get(r"^10\.")

        assert first is second
        assert len(cache) == 1

    def test_flags_are_part_of_key(self):
        cache = RegexCache()

        assert cache.get("curl") is not cache.get("curl", re.IGNORECASE)
        assert len(cache) == 2

    def test_optional_pattern(self):
        cache = RegexCache()

        assert cache.get_optional(None) is None
        assert cache.get_optional("") is None
        assert cache.get_optional("^/v2/").search("/v2/x")

    def test_invalid_pattern_raises(self):
        with pytest.raises(re.error):
            RegexCache().get("(unclosed")

    def test_shared_cache(self):
        assert get_regex_cache() is get_regex_cache()
