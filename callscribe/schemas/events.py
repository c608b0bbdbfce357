"""
Schemas for the /ws/transcribe WebSocket.

Server -> client: segment | speaker | status | error | transcript (JSON text frames).
Client -> server: binary float32 audio, or JSON control messages (volume, pause, resume, clear, stop).
"""
from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from callscribe.session import SegmentUpdated, SessionError, SessionEvent, SessionStatus, SpeakerChanged


def _unix_ms(ts: float) -> int:
    return int(ts * 1000)


class SegmentMessage(BaseModel):
    """One transcript revision. Partials share segment_id with the final that closes them."""

    type: Literal["segment"] = "segment"
    segment_id: str
    speaker: str = Field(..., description="recruiter | candidate | unknown | overlap")
    text: str
    timestamp: int = Field(..., description="unix ms")
    is_final: bool


class SpeakerMessage(BaseModel):
    type: Literal["speaker"] = "speaker"
    speaker: str
    timestamp: int


class StatusMessage(BaseModel):
    type: Literal["status"] = "status"
    status: str = Field(..., description="connecting | connected | recording | transcribing | disconnected | idle | error")
    engine: str = Field(..., description="realtime | whisper")
    timestamp: int


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
    timestamp: int


class TranscriptMessage(BaseModel):
    """Sent once after a graceful stop."""

    type: Literal["transcript"] = "transcript"
    text: str


ServerMessage = Union[SegmentMessage, SpeakerMessage, StatusMessage, ErrorMessage, TranscriptMessage]


def to_message(event: SessionEvent) -> ServerMessage:
    """Session event -> wire model."""
    if isinstance(event, SegmentUpdated):
        seg = event.segment
        return SegmentMessage(
            segment_id=seg.id,
            speaker=seg.speaker.value,
            text=seg.text,
            timestamp=_unix_ms(seg.timestamp),
            is_final=seg.is_final,
        )
    if isinstance(event, SpeakerChanged):
        return SpeakerMessage(speaker=event.speaker.value, timestamp=_unix_ms(event.timestamp))
    if isinstance(event, SessionStatus):
        return StatusMessage(status=event.status.value, engine=event.engine, timestamp=_unix_ms(event.timestamp))
    if isinstance(event, SessionError):
        return ErrorMessage(code=event.code, message=event.message, timestamp=_unix_ms(event.timestamp))
    raise TypeError(f"Unknown session event: {type(event).__name__}")


class VolumeControl(BaseModel):
    type: Literal["volume"]
    mic: float = Field(..., ge=0.0)
    system: float = Field(0.0, ge=0.0)


class CommandControl(BaseModel):
    type: Literal["pause", "resume", "clear", "stop"]


ControlMessage = Union[VolumeControl, CommandControl]

control_adapter: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)
