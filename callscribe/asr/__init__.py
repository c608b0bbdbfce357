"""ASR: realtime (streaming) and whisper (chunked) transcribers behind one interface."""
from .base import (
    ConnectionState,
    StatusChange,
    Transcriber,
    TranscriberEvent,
    TranscriberFailure,
    TranscriberStatus,
    TranscriptUpdate,
)
from .realtime import StreamingTranscriber, build_session_config
from .whisper_api import ChunkedTranscriber, WhisperClient, WhisperResult

__all__ = [
    "ChunkedTranscriber",
    "ConnectionState",
    "StatusChange",
    "StreamingTranscriber",
    "Transcriber",
    "TranscriberEvent",
    "TranscriberFailure",
    "TranscriberStatus",
    "TranscriptUpdate",
    "WhisperClient",
    "WhisperResult",
    "build_session_config",
]
