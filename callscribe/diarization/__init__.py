"""
Volume-based diarization.

- Labels by channel energy: local mic -> candidate, remote/system audio -> recruiter.
- No voice-print matching; presential (mic only) capture always reports unknown.
"""
from __future__ import annotations

from callscribe.diarization.models import CaptureMode, SpeakerLabel, VolumeSample
from callscribe.diarization.speaker_tracker import SpeakerTracker, detect_speaker

__all__ = ["CaptureMode", "SpeakerLabel", "SpeakerTracker", "VolumeSample", "detect_speaker"]
