"""
PCM helpers: float samples <-> PCM16, base64 for the realtime socket, WAV for the batch endpoint.

PCM contract: signed int16, little-endian, mono.
"""
from __future__ import annotations

import base64
import io
import wave

import numpy as np

SAMPLE_WIDTH = 2
NCHANNELS = 1
# RIFF + fmt + data chunk headers written by the wave module for PCM
WAV_HEADER_BYTES = 44


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Convert normalized float samples to int16. NaN becomes silence and infinities
    become full scale. Input is then clamped to [-1.0, 1.0]; negatives scale by
    32768 and positives by 32767 so both ends land exactly on the int16 limits.
    """
    finite = np.nan_to_num(np.asarray(samples, dtype=np.float32), nan=0.0, posinf=1.0, neginf=-1.0)
    clipped = np.clip(finite, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype(np.int16)


def pcm16_to_base64(pcm: np.ndarray) -> str:
    """Little-endian int16 samples as base64 text (input_audio_buffer.append payload)."""
    return base64.b64encode(np.asarray(pcm, dtype="<i2").tobytes()).decode("ascii")


def float32_bytes_to_samples(data: bytes) -> np.ndarray:
    """Decode little-endian float32 bytes from the capture client. Trailing partial sample is dropped."""
    usable = len(data) - (len(data) % 4)
    return np.frombuffer(data[:usable], dtype="<f4")


def pcm16_to_wav(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Wrap raw PCM16 mono bytes in a WAV container (in memory)."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(NCHANNELS)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm_bytes)
    return buf.getvalue()
