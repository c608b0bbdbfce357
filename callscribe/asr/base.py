"""
Transcriber: common interface for the realtime (streaming) and whisper (chunked) strategies.

Implementations: StreamingTranscriber (websocket), ChunkedTranscriber (periodic HTTP).
Each owns its resources (socket / timer / pending audio) and publishes events into
its own bounded queue; the session reads that queue and never touches the
transcriber's internals.

Contract:
- start(): acquire resources; rejected with TranscriptionError on missing credential.
- send_frame(): never blocks, never awaits (capture path).
- stop(): graceful; flush what is pending, return the accumulated text.
- disconnect(): abrupt; safe from any state, idempotent. No events are published after it returns.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from callscribe.audio.frame_buffer import AudioFrame

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


class TranscriberStatus(str, Enum):
    """Status values reported to the client."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    DISCONNECTED = "disconnected"
    IDLE = "idle"
    ERROR = "error"


@dataclass(frozen=True)
class TranscriptUpdate:
    """Partial (is_final=False) or final text for one utterance."""

    utterance_id: str
    text: str
    is_final: bool
    timestamp: float


@dataclass(frozen=True)
class StatusChange:
    status: TranscriberStatus
    timestamp: float


@dataclass(frozen=True)
class TranscriberFailure:
    """Reported failure; the transcriber may still be alive (see code)."""

    code: str
    message: str
    timestamp: float


TranscriberEvent = Union[TranscriptUpdate, StatusChange, TranscriberFailure]


class Transcriber(ABC):
    """Base for both strategies: state machine, event queue, closed guard."""

    name: str = "transcriber"

    def __init__(self, queue_size: int = 256, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._events: asyncio.Queue[TranscriberEvent] = asyncio.Queue(maxsize=queue_size)
        self._state = ConnectionState.IDLE
        self._closed = False

    @property
    def events(self) -> "asyncio.Queue[TranscriberEvent]":
        return self._events

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def _publish(self, event: TranscriberEvent) -> None:
        """Queue an event for the session. Dropped once closed or when the queue is full."""
        if self._closed:
            return
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("%s event queue full, dropping %s", self.name, type(event).__name__)

    def _publish_status(self, status: TranscriberStatus) -> None:
        self._publish(StatusChange(status=status, timestamp=self._clock()))

    def _publish_failure(self, code: str, message: str) -> None:
        self._publish(TranscriberFailure(code=code, message=message, timestamp=self._clock()))

    def _set_state(self, state: ConnectionState) -> bool:
        """Move to state; returns False when already there."""
        if state is self._state:
            return False
        logger.info("%s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state
        return True

    @abstractmethod
    async def start(self) -> None:
        """Acquire the strategy's resources and begin accepting frames."""
        ...

    @abstractmethod
    def send_frame(self, frame: AudioFrame) -> None:
        """Hand one frame over. Must not block or await."""
        ...

    @abstractmethod
    async def stop(self) -> str:
        """Graceful stop; returns the full accumulated text."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Abrupt teardown; idempotent, safe from any state."""
        ...
