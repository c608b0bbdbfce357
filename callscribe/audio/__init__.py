"""Audio pipeline: frame buffering and PCM conversion."""
from .frame_buffer import AudioFrame, AudioFrameBuffer
from .pcm import float32_bytes_to_samples, float32_to_pcm16, pcm16_to_base64, pcm16_to_wav

__all__ = [
    "AudioFrame",
    "AudioFrameBuffer",
    "float32_bytes_to_samples",
    "float32_to_pcm16",
    "pcm16_to_base64",
    "pcm16_to_wav",
]
