"""
Speaker labels and volume samples for volume-based diarization.

Limitations (diarization by channel energy only):
- Labels come from which channel is loud, not from voice prints.
- With a single channel (presential capture) speakers cannot be told apart; label is always unknown.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SpeakerLabel(str, Enum):
    RECRUITER = "recruiter"  # remote / system audio
    CANDIDATE = "candidate"  # local microphone
    UNKNOWN = "unknown"
    OVERLAP = "overlap"


class CaptureMode(str, Enum):
    """call: mic + system audio are both observable. presential: mic only."""

    CALL = "call"
    PRESENTIAL = "presential"


@dataclass(frozen=True)
class VolumeSample:
    """One coarse level reading per channel. Levels are RMS in [0, 1]; timestamp in seconds."""

    microphone_level: float
    system_level: float
    timestamp: float

    def __post_init__(self) -> None:
        if self.microphone_level < 0 or self.system_level < 0:
            raise ValueError(
                f"volume levels must be >= 0, got mic={self.microphone_level} system={self.system_level}"
            )
