"""Whole-word hostname substitution for headers and streamed bodies.

All hostname rewriting in the proxy goes through HostnameRewriter so the
boundary rules live in one place. A hostname only matches when it is not
preceded by a hostname character or a dot, and not followed by a hostname
character or by a dot that continues the name. "docker.io" therefore
matches in "https://docker.io/v2" but not in "notdocker.io" or
"registry.docker.io".
"""

import functools
import re
import string
from typing import AsyncIterator, Pattern

_HOSTNAME_CHARS = frozenset((string.ascii_letters + string.digits + "_.-").encode())

# The origin hostname comes from the client Host header, so compiled
# hostname patterns live in a bounded LRU rather than the RegexCache
HOSTNAME_PATTERN_CACHE_SIZE = 256


def _hostname_pattern(hostname: str) -> str:
    return rf"(?<![\w.-]){re.escape(hostname)}(?![\w-]|\.\w)"


@functools.lru_cache(maxsize=HOSTNAME_PATTERN_CACHE_SIZE)
def compile_hostname(hostname: str) -> tuple[Pattern[str], Pattern[bytes]]:
    """Compile the text and bytes whole-word patterns for a hostname."""
    pattern = _hostname_pattern(hostname)
    return re.compile(pattern), re.compile(pattern.encode("utf-8"))


class HostnameRewriter:
    """Replaces one hostname with another as a whole word."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target

        self._text_pattern, self._bytes_pattern = compile_hostname(source)
        self._source_bytes = source.encode("utf-8")
        self._target_bytes = target.encode("utf-8")

        # Bytes that can never sit inside a match of the source hostname
        inside = _HOSTNAME_CHARS | frozenset(self._source_bytes)
        self._separators = frozenset(b for b in range(256) if b not in inside)

    @property
    def active(self) -> bool:
        return bool(self.source) and self.source != self.target

    def rewrite(self, text: str) -> str:
        """Rewrite a text value such as a header."""
        if not self.active or self.source not in text:
            return text
        return self._text_pattern.sub(lambda _: self.target, text)

    def rewrite_bytes(self, data: bytes) -> bytes:
        """Rewrite a byte string such as a body fragment."""
        if not self.active or self._source_bytes not in data:
            return data
        return self._bytes_pattern.sub(lambda _: self._target_bytes, data)

    def last_separator(self, data) -> int:
        """Index just past the last byte that cannot be part of a match.

        Cutting a buffer there never splits a hostname, and rewriting both
        halves separately gives the same result as rewriting the whole.
        Returns 0 when no such byte exists.
        """
        for index in range(len(data) - 1, -1, -1):
            if data[index] in self._separators:
                return index + 1
        return 0


class StreamRewriter:
    """Incremental body rewriter with a bounded working buffer.

    on_chunk() appends input and returns whatever can safely be emitted;
    on_end() flushes the remainder. Output is held back until MIN_FLUSH bytes
    are buffered, then cut at the last newline. Without a newline the buffer
    is cut at the last separator once it reaches SOFT_LIMIT, and flushed
    whole at HARD_LIMIT.
    """

    MIN_FLUSH = 512
    SOFT_LIMIT = 1024
    HARD_LIMIT = 64 * 1024

    def __init__(
        self,
        rewriter: HostnameRewriter,
        min_flush: int = MIN_FLUSH,
        soft_limit: int = SOFT_LIMIT,
        hard_limit: int = HARD_LIMIT,
    ):
        self.rewriter = rewriter
        self.min_flush = min_flush
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def on_chunk(self, chunk: bytes) -> bytes:
        self._buffer += chunk

        split = self._split_point()
        if split <= 0:
            return b""

        head = bytes(self._buffer[:split])
        del self._buffer[:split]
        return self.rewriter.rewrite_bytes(head)

    def on_end(self) -> bytes:
        remaining = bytes(self._buffer)
        self._buffer.clear()
        return self.rewriter.rewrite_bytes(remaining)

    def _split_point(self) -> int:
        size = len(self._buffer)
        if size < self.min_flush:
            return 0

        newline = self._buffer.rfind(b"\n")
        if newline != -1:
            return newline + 1

        if size < self.soft_limit:
            return 0

        split = self.rewriter.last_separator(self._buffer)
        if split:
            return split

        if size >= self.hard_limit:
            return size
        return 0


async def rewrite_stream(
    chunks: AsyncIterator[bytes], rewriter: HostnameRewriter
) -> AsyncIterator[bytes]:
    """Rewrite hostnames in a byte stream without buffering it whole.

    Pulls the next input chunk only when the consumer asks for more output.
    """
    state = StreamRewriter(rewriter)

    async for chunk in chunks:
        output = state.on_chunk(chunk)
        if output:
            yield output

    tail = state.on_end()
    if tail:
        yield tail
