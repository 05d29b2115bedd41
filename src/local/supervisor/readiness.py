"""
Readiness detection for supervised processes.

A process is considered ready when a line of its output matches one of an
ordered list of patterns. Each handle owns one ReadinessDetector whose future
resolves at most once, with whatever the matching pattern captured.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Pattern, Tuple

log = logging.getLogger(__name__)

Extractor = Callable[["re.Match[str]"], Any]


def first_group(match: "re.Match[str]") -> Optional[str]:
    """Returns the first captured group, or None for patterns without groups."""
    return match.group(1) if match.re.groups else None


def port_from_match(match: "re.Match[str]") -> int:
    """Extracts a port number from the first captured group."""
    return int(match.group(1))


@dataclass(frozen=True)
class ReadinessMatcher:
    """A readiness pattern and the function that turns a match into a payload."""
    pattern: Pattern[str]
    extractor: Extractor = first_group

    def match(self, line: str) -> Tuple[bool, Any]:
        m = self.pattern.search(line)
        if m is None:
            return False, None
        return True, self.extractor(m)


def build_matchers(patterns: Iterable[str], extractor: Extractor = first_group) -> List[ReadinessMatcher]:
    """Compiles pattern strings into an ordered list of matchers sharing one extractor."""
    return [ReadinessMatcher(re.compile(p), extractor) for p in patterns]


class LineBuffer:
    """
    Splits a stream of byte chunks into complete text lines.

    Pipes deliver arbitrary chunks, so a readiness line can arrive split across
    two reads. Partial data is held until its newline arrives or the stream
    ends.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._pending = b""

    def feed(self, chunk: bytes) -> List[str]:
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return [self._decode(raw) for raw in complete]

    def flush(self) -> List[str]:
        """Returns the trailing unterminated line, if any, and clears the buffer."""
        if not self._pending:
            return []
        raw, self._pending = self._pending, b""
        return [self._decode(raw)]

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace").rstrip("\r")


def _consume_exception(future: "asyncio.Future[Any]") -> None:
    # Keeps asyncio from warning about a rejection nobody awaited, e.g. an
    # exit during shutdown.
    if not future.cancelled():
        future.exception()


class ReadinessDetector:
    """
    Single-resolution readiness signal fed line by line.

    The first line matching any matcher resolves the future. Later matches are
    ignored. ``fail()`` rejects the future if it is still pending.
    """

    def __init__(self, matchers: Iterable[ReadinessMatcher], loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.matchers: List[ReadinessMatcher] = list(matchers)
        self._future: "asyncio.Future[Any]" = (loop or asyncio.get_running_loop()).create_future()
        self._future.add_done_callback(_consume_exception)

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def resolved(self) -> bool:
        """True only if readiness was actually observed (not rejected)."""
        return self._future.done() and not self._future.cancelled() and self._future.exception() is None

    @property
    def payload(self) -> Any:
        """The captured readiness value, or None while unresolved."""
        return self._future.result() if self.resolved else None

    def scan(self, line: str) -> bool:
        """
        Checks one line against the matchers.

        :return: True if this line resolved readiness, False otherwise.
        """
        if self._future.done():
            return False
        for matcher in self.matchers:
            matched, payload = matcher.match(line)
            if matched:
                self._future.set_result(payload)
                return True
        return False

    def fail(self, error: BaseException) -> bool:
        """Rejects the pending future. Returns False if it was already settled."""
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    async def wait(self, timeout: Optional[float] = None) -> Any:
        """
        Waits for the readiness payload.

        :param timeout: Seconds to wait, or None to wait forever.
        :raises asyncio.TimeoutError: If the timeout elapses first.
        """
        # Shield so a timeout does not cancel the shared future.
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)
