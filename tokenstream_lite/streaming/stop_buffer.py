"""
Streaming stop-sequence filter.

Generated text is released downstream as early as possible while holding
back any tail that could still grow into a stop marker. Released text never
contains a marker and never ends in a partial one.

Known limitation: the scan keys on the single leading character shared by
all markers, and that character must not recur inside a marker. Other
marker sets need a multi-pattern streaming matcher (e.g. Aho-Corasick) and
are rejected here rather than handled approximately.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

from tokenstream_lite.config import DEFAULT_STOP_MARKERS


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan.

    Attributes:
        emit: Text to release downstream now
        released: New released offset into the buffer
        stopped: A full marker is present; the stream must end
    """
    emit: str
    released: int
    stopped: bool


def leading_character(markers: Sequence[str]) -> str:
    """Return the leading character shared by every marker.

    Raises:
        ValueError: If there are no markers, a marker is empty, the markers
            do not share one leading character, or that character also
            occurs inside a marker
    """
    if not markers:
        raise ValueError("At least one stop marker is required")
    if any(not marker for marker in markers):
        raise ValueError("Stop markers cannot be empty")

    lead = markers[0][0]
    if any(marker[0] != lead for marker in markers):
        raise ValueError(
            f"Stop markers must share a leading character, got {list(markers)}"
        )
    if any(lead in marker[1:] for marker in markers):
        raise ValueError(
            f"The leading character {lead!r} may appear only at the start of each marker"
        )
    return lead


def scan(buffer: str, released: int, markers: Sequence[str], lead: str) -> ScanResult:
    """Decide how much of the unreleased part of ``buffer`` is safe to emit."""
    if any(marker in buffer for marker in markers):
        return ScanResult("", released, True)

    fresh = buffer[released:]
    i = fresh.rfind(lead)
    if i == -1:
        return ScanResult(fresh, len(buffer), False)

    tail = fresh[i:]
    if any(len(tail) < len(marker) and marker.startswith(tail) for marker in markers):
        # tail may still complete into a marker; hold it back
        return ScanResult(fresh[:i], released + i, False)

    return ScanResult(fresh, len(buffer), False)


class StopSequenceBuffer:
    """Accumulates generated fragments and releases only marker-safe text.

    Args:
        markers: Literal stop markers sharing one leading character

    Example:
        >>> buf = StopSequenceBuffer()
        >>> buf.feed("Hi <|im")
        'Hi '
        >>> buf.feed("_end|>")
        ''
        >>> buf.stopped
        True
    """

    def __init__(self, markers: Sequence[str] = DEFAULT_STOP_MARKERS):
        self.markers: Tuple[str, ...] = tuple(markers)
        self.lead = leading_character(self.markers)
        self._text = ""
        self._released = 0
        self._stopped = False

    @property
    def text(self) -> str:
        """Everything generated so far."""
        return self._text

    @property
    def released(self) -> int:
        """Offset up to which text has been emitted."""
        return self._released

    @property
    def pending(self) -> str:
        """Text held back because it may be the start of a marker."""
        if self._stopped:
            return ""
        return self._text[self._released:]

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def max_holdback(self) -> int:
        """Upper bound on characters held back at any time."""
        return max(len(marker) for marker in self.markers) - 1

    def feed(self, fragment: str) -> str:
        """Append ``fragment`` and return the text that may be emitted now."""
        if self._stopped:
            return ""

        self._text += fragment
        result = scan(self._text, self._released, self.markers, self.lead)
        self._released = result.released
        self._stopped = result.stopped
        return result.emit

    def reset(self) -> None:
        self._text = ""
        self._released = 0
        self._stopped = False
