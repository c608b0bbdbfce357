import numpy as np
import pytest

from callscribe.audio.frame_buffer import AudioFrameBuffer
from callscribe.audio.pcm import float32_bytes_to_samples, float32_to_pcm16, pcm16_to_base64, pcm16_to_wav


def test_frames_fill_to_capacity_across_pushes():
    buf = AudioFrameBuffer(capacity=4)
    assert buf.push([0.1, 0.2, 0.3]) == []
    assert buf.pending == 3

    frames = buf.push([0.4, 0.5, 0.6, 0.7, 0.8, 0.9])
    assert [len(f) for f in frames] == [4, 4]
    assert buf.pending == 1
    assert frames[0].samples[0] == float32_to_pcm16(np.array([0.1]))[0]
    assert frames[1].samples[-1] == float32_to_pcm16(np.array([0.8]))[0]


@pytest.mark.parametrize("chunks", [[1], [3, 5, 7], [4096, 1], [10000], [1] * 9, [0, 2, 0]])
def test_sample_count_is_conserved(chunks):
    buf = AudioFrameBuffer(capacity=4)
    emitted = []
    for n in chunks:
        emitted.extend(buf.push(np.zeros(n, dtype=np.float32)))
    assert all(len(f) == 4 for f in emitted)
    assert sum(len(f) for f in emitted) + buf.pending == sum(chunks)


def test_flush_emits_short_final_frame_then_nothing():
    buf = AudioFrameBuffer(capacity=4)
    buf.push([0.0] * 6)
    tail = buf.flush()
    assert tail is not None and len(tail) == 2
    assert buf.pending == 0
    assert buf.flush() is None


def test_sequence_numbers_are_gap_free():
    buf = AudioFrameBuffer(capacity=2)
    frames = buf.push([0.0] * 7)
    frames.append(buf.flush())
    assert [f.sequence for f in frames] == [0, 1, 2, 3]


def test_frames_are_read_only_and_timestamped():
    buf = AudioFrameBuffer(capacity=2, clock=lambda: 42.0)
    (frame,) = buf.push([0.5, -0.5])
    assert frame.captured_at == 42.0
    with pytest.raises(ValueError):
        frame.samples[0] = 1


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        AudioFrameBuffer(capacity=0)


def test_default_capacity_comes_from_settings():
    assert AudioFrameBuffer().capacity == 4096


def test_pcm16_boundaries_and_clamping():
    pcm = float32_to_pcm16(np.array([1.0, -1.0, 0.0, 2.5, -3.0], dtype=np.float32))
    assert pcm.dtype == np.int16
    assert pcm.tolist() == [32767, -32768, 0, 32767, -32768]


def test_pcm16_base64_is_little_endian():
    import base64

    raw = base64.b64decode(pcm16_to_base64(np.array([1, -2], dtype=np.int16)))
    assert raw == b"\x01\x00\xfe\xff"


def test_float32_bytes_drop_trailing_partial_sample():
    data = np.array([0.25, -0.5], dtype="<f4").tobytes() + b"\x00\x01"
    assert float32_bytes_to_samples(data).tolist() == [0.25, -0.5]


def test_wav_wrapper_header():
    wav = pcm16_to_wav(b"\x00\x00" * 10, 24000)
    assert wav[:4] == b"RIFF" and wav[8:12] == b"WAVE"
    assert len(wav) == 44 + 20


def test_non_finite_samples_become_silence_or_full_scale():
    pcm = float32_to_pcm16(np.array([np.nan, np.inf, -np.inf, 0.5], dtype=np.float32))
    assert pcm.tolist() == [0, 32767, -32768, int(np.float32(0.5) * 32767)]

    buf = AudioFrameBuffer(capacity=2)
    (frame,) = buf.push([float("nan"), 1.0])
    assert frame.samples.tolist() == [0, 32767]
