"""Memoized regular expression compilation."""

import logging
import re
from typing import AnyStr, Optional, Pattern

logger = logging.getLogger(__name__)


class RegexCache:
    """Compiles patterns once and hands out the shared compiled object.

    Entries are keyed by (pattern, flags) and never evicted, so only
    operator-configured patterns belong here.
    """

    def __init__(self):
        self._patterns: dict[tuple, Pattern] = {}

    def get(self, pattern: AnyStr, flags: int = 0) -> Pattern[AnyStr]:
        """Return the compiled pattern, compiling on first use.

        Raises:
            re.error: If the pattern does not compile.
        """
        key = (pattern, flags)
        compiled = self._patterns.get(key)
        if compiled is None:
            compiled = self._patterns.setdefault(key, re.compile(pattern, flags))
            logger.debug(f"Compiled pattern {pattern!r}")
        return compiled

    def get_optional(self, pattern: Optional[str], flags: int = 0) -> Optional[Pattern[str]]:
        """Like get(), but an absent pattern yields None."""
        if not pattern:
            return None
        return self.get(pattern, flags)

    def __len__(self) -> int:
        return len(self._patterns)


# Global cache instance
_cache = RegexCache()


def get_regex_cache() -> RegexCache:
    """Get the process-wide regex cache."""
    return _cache
