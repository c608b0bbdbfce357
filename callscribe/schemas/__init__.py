from callscribe.schemas.events import (
    ControlMessage,
    ErrorMessage,
    SegmentMessage,
    SpeakerMessage,
    StatusMessage,
    TranscriptMessage,
    control_adapter,
    to_message,
)
from callscribe.schemas.transcribe import TranscribeResponse

__all__ = [
    "ControlMessage",
    "ErrorMessage",
    "SegmentMessage",
    "SpeakerMessage",
    "StatusMessage",
    "TranscribeResponse",
    "TranscriptMessage",
    "control_adapter",
    "to_message",
]
