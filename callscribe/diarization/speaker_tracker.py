"""
Speaker tracking from two-channel volume levels.

- call mode: mic active -> candidate, system active -> recruiter, both -> overlap, neither -> unknown.
- presential mode: always unknown (one channel cannot separate speakers).
- Smoothing: policy is applied to the average of a sliding window (default 500ms),
  not to the instantaneous reading, so single-frame spikes at speech/silence
  boundaries do not flip the label.
- Label history: every label change is kept for SPEAKER_HISTORY_SECONDS so the
  session can ask for the label as of a transcript event's timestamp.
"""
from __future__ import annotations

import bisect
import logging
import time
from collections import deque
from typing import Callable

from callscribe.config import get_settings
from callscribe.diarization.models import CaptureMode, SpeakerLabel, VolumeSample

logger = logging.getLogger(__name__)


def detect_speaker(
    mic_level: float,
    system_level: float,
    mode: CaptureMode,
    mic_threshold: float,
    system_threshold: float,
) -> SpeakerLabel:
    """Apply the per-mode policy to one pair of levels."""
    if mode is CaptureMode.CALL:
        mic_active = mic_level > mic_threshold
        sys_active = system_level > system_threshold
        if mic_active and sys_active:
            return SpeakerLabel.OVERLAP
        if mic_active:
            return SpeakerLabel.CANDIDATE
        if sys_active:
            return SpeakerLabel.RECRUITER
        return SpeakerLabel.UNKNOWN
    return SpeakerLabel.UNKNOWN


class SpeakerTracker:
    """
    Sliding-window smoother over VolumeSamples. One tracker per session;
    push() is cheap (window is a few samples) and never awaits.
    """

    def __init__(
        self,
        mode: CaptureMode = CaptureMode.CALL,
        window_ms: int | None = None,
        mic_threshold: float | None = None,
        system_threshold: float | None = None,
        history_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._mode = CaptureMode(mode)
        self._window_sec = (window_ms if window_ms is not None else settings.SPEAKER_WINDOW_MS) / 1000.0
        self._mic_threshold = mic_threshold if mic_threshold is not None else settings.SPEAKER_MIC_THRESHOLD
        self._system_threshold = (
            system_threshold if system_threshold is not None else settings.SPEAKER_SYSTEM_THRESHOLD
        )
        self._history_sec = history_seconds if history_seconds is not None else settings.SPEAKER_HISTORY_SECONDS
        self._clock = clock
        if self._window_sec <= 0:
            raise ValueError(f"window must be positive, got {self._window_sec * 1000:.0f}ms")

        self._window: deque[VolumeSample] = deque()
        self._label = SpeakerLabel.UNKNOWN
        # Parallel lists: timestamp of each label change, label from then on
        self._change_times: list[float] = []
        self._change_labels: list[SpeakerLabel] = []

    def push(self, mic_level: float, system_level: float, timestamp: float | None = None) -> SpeakerLabel:
        """Add one reading; return the smoothed label."""
        ts = timestamp if timestamp is not None else self._clock()
        sample = VolumeSample(microphone_level=mic_level, system_level=system_level, timestamp=ts)
        self._window.append(sample)
        self._evict(ts)

        count = len(self._window)
        avg_mic = sum(s.microphone_level for s in self._window) / count
        avg_sys = sum(s.system_level for s in self._window) / count
        label = detect_speaker(avg_mic, avg_sys, self._mode, self._mic_threshold, self._system_threshold)
        self._record(label, ts)
        return label

    def _evict(self, now: float) -> None:
        while self._window and now - self._window[0].timestamp >= self._window_sec:
            self._window.popleft()

    def _record(self, label: SpeakerLabel, ts: float) -> None:
        if label is self._label and self._change_times:
            return
        if label is not self._label:
            logger.debug("Speaker %s -> %s", self._label.value, label.value)
        self._label = label
        self._change_times.append(ts)
        self._change_labels.append(label)
        # Keep the newest entry even when it is older than the horizon
        horizon = ts - self._history_sec
        drop = bisect.bisect_left(self._change_times, horizon)
        drop = min(drop, len(self._change_times) - 1)
        if drop > 0:
            del self._change_times[:drop]
            del self._change_labels[:drop]

    def label_at(self, timestamp: float) -> SpeakerLabel:
        """Last known label as of timestamp (unknown before the first reading)."""
        idx = bisect.bisect_right(self._change_times, timestamp)
        if idx == 0:
            return SpeakerLabel.UNKNOWN
        return self._change_labels[idx - 1]

    def set_mode(self, mode: CaptureMode) -> None:
        """Change policy; window history is kept."""
        self._mode = CaptureMode(mode)

    def reset(self) -> None:
        """Clear window and label history (recording restarted)."""
        self._window.clear()
        self._change_times.clear()
        self._change_labels.clear()
        self._label = SpeakerLabel.UNKNOWN

    @property
    def label(self) -> SpeakerLabel:
        return self._label

    @property
    def mode(self) -> CaptureMode:
        return self._mode

    @property
    def window(self) -> tuple[VolumeSample, ...]:
        return tuple(self._window)
