"""Transcript handling: partial revisions vs final segments."""
from .log import TranscriptLog, TranscriptSegment

__all__ = ["TranscriptLog", "TranscriptSegment"]
