"""
AudioFrameBuffer: accumulates float samples delivered in arbitrary-sized chunks into fixed-size frames.

- Capacity: FRAME_SAMPLES (default 4096 samples).
- A frame is emitted whenever the accumulator fills; partial frames only on flush().
- Frames carry PCM16 samples, a gap-free sequence number and a capture timestamp.
- No I/O and no awaits; safe to call from the capture path.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

import numpy as np

from callscribe.audio.pcm import float32_to_pcm16
from callscribe.config import get_settings


@dataclass(frozen=True, eq=False)
class AudioFrame:
    """One block of PCM16 samples. samples is a read-only int16 array."""

    sequence: int
    samples: np.ndarray = field(repr=False)
    captured_at: float

    def __len__(self) -> int:
        return int(self.samples.size)

    def to_bytes(self) -> bytes:
        return self.samples.astype("<i2").tobytes()


class AudioFrameBuffer:
    """
    Fixed-capacity sample accumulator. push() returns the frames completed by
    that call (zero or more); the remainder stays buffered for the next call.
    """

    def __init__(
        self,
        capacity: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._capacity = capacity if capacity is not None else settings.FRAME_SAMPLES
        if self._capacity <= 0:
            raise ValueError(f"capacity must be positive, got {self._capacity}")
        self._clock = clock
        self._accumulator = np.zeros(self._capacity, dtype=np.float32)
        self._filled = 0
        self._next_sequence = 0

    def push(self, samples: Iterable[float] | np.ndarray) -> list[AudioFrame]:
        """Append samples in order; return every frame that filled up along the way."""
        data = np.asarray(samples, dtype=np.float32).ravel()
        frames: list[AudioFrame] = []
        offset = 0
        while offset < data.size:
            take = min(self._capacity - self._filled, data.size - offset)
            self._accumulator[self._filled : self._filled + take] = data[offset : offset + take]
            self._filled += take
            offset += take
            if self._filled == self._capacity:
                frames.append(self._emit())
        return frames

    def flush(self) -> AudioFrame | None:
        """Emit the buffered remainder as a short frame (stream end). None when empty."""
        if self._filled == 0:
            return None
        return self._emit()

    def reset(self) -> None:
        """Drop buffered samples. Sequence numbering continues."""
        self._filled = 0

    def _emit(self) -> AudioFrame:
        pcm = float32_to_pcm16(self._accumulator[: self._filled])
        pcm.flags.writeable = False
        frame = AudioFrame(sequence=self._next_sequence, samples=pcm, captured_at=self._clock())
        self._next_sequence += 1
        self._filled = 0
        return frame

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pending(self) -> int:
        """Samples buffered but not yet emitted."""
        return self._filled

    @property
    def next_sequence(self) -> int:
        return self._next_sequence
