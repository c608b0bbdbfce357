"""
TranscriptLog: the session's ordered, append-only list of transcript segments.

- PARTIAL: a revision for an utterance id replaces the previous partial in place
  (same position, same id); may change.
- FINAL: once a segment is final it is never replaced; later updates for that id are ignored,
  also after clear() (finalized ids are remembered for the whole session).
- Order is first-seen order of each id, which is chronological order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from callscribe.diarization.models import SpeakerLabel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptSegment:
    """One utterance as shown to the client. timestamp in seconds (unix)."""

    id: str
    speaker: SpeakerLabel
    text: str
    timestamp: float
    is_final: bool


class TranscriptLog:
    """Holds at most one live revision per id; finals are immutable."""

    def __init__(self) -> None:
        self._segments: list[TranscriptSegment] = []
        self._index: dict[str, int] = {}
        self._finalized: set[str] = set()

    def apply(
        self,
        segment_id: str,
        text: str,
        speaker: SpeakerLabel,
        timestamp: float,
        is_final: bool,
    ) -> TranscriptSegment | None:
        """Record a revision. Returns the stored segment, or None if the id is already final."""
        segment = TranscriptSegment(
            id=segment_id, speaker=speaker, text=text, timestamp=timestamp, is_final=is_final
        )
        if segment_id in self._finalized:
            logger.debug("Ignoring update for finalized segment %s", segment_id)
            return None
        if is_final:
            self._finalized.add(segment_id)
        pos = self._index.get(segment_id)
        if pos is None:
            self._index[segment_id] = len(self._segments)
            self._segments.append(segment)
            return segment
        self._segments[pos] = segment
        return segment

    def clear(self) -> None:
        """Drop all segments. Finalized ids stay closed."""
        self._segments.clear()
        self._index.clear()

    def get(self, segment_id: str) -> TranscriptSegment | None:
        pos = self._index.get(segment_id)
        return self._segments[pos] if pos is not None else None

    @property
    def segments(self) -> tuple[TranscriptSegment, ...]:
        return tuple(self._segments)

    def text(self) -> str:
        """All segment text in order, space-joined."""
        return " ".join(s.text for s in self._segments if s.text)

    def __len__(self) -> int:
        return len(self._segments)
