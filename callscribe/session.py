"""
TranscriptionSession: owns one transcriber, one frame buffer and one speaker tracker.

- Strategy: realtime when the transport is available and the credential/model
  allow it, otherwise whisper chunks. Exactly one transcriber is active; a
  switch tears the old one down completely before the new one starts.
- Fallback: when realtime reports error, or drops without a stop request, the
  session switches to whisper chunks (FALLBACK_TO_WHISPER).
- Join: each transcript update is labeled with the tracker's label as of the
  update's timestamp (last known label, not lock-step).
- Output: one ordered stream of SpeakerChanged / SegmentUpdated / SessionStatus /
  SessionError events through a bounded queue; iteration ends after stop()/close().

push_audio() and push_volume() are synchronous and never wait on the network.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Literal, Union

from callscribe.asr.base import (
    ConnectionState,
    StatusChange,
    Transcriber,
    TranscriberEvent,
    TranscriberFailure,
    TranscriberStatus,
    TranscriptUpdate,
)
from callscribe.asr.realtime import StreamingTranscriber
from callscribe.asr.whisper_api import ChunkedTranscriber, WhisperClient
from callscribe.audio.frame_buffer import AudioFrameBuffer
from callscribe.config import get_settings
from callscribe.diarization.models import CaptureMode, SpeakerLabel
from callscribe.diarization.speaker_tracker import SpeakerTracker
from callscribe.errors import TranscriptionError
from callscribe.transcript.log import TranscriptLog, TranscriptSegment

logger = logging.getLogger(__name__)

Engine = Literal["realtime", "whisper"]
EngineChoice = Literal["auto", "realtime", "whisper"]

TERMINAL_STATUSES = (TranscriberStatus.ERROR, TranscriberStatus.DISCONNECTED)


@dataclass(frozen=True)
class SpeakerChanged:
    speaker: SpeakerLabel
    timestamp: float


@dataclass(frozen=True)
class SegmentUpdated:
    segment: TranscriptSegment


@dataclass(frozen=True)
class SessionStatus:
    status: TranscriberStatus
    engine: str
    timestamp: float


@dataclass(frozen=True)
class SessionError:
    code: str
    message: str
    timestamp: float


SessionEvent = Union[SpeakerChanged, SegmentUpdated, SessionStatus, SessionError]


@dataclass(frozen=True)
class SessionState:
    """Snapshot of the session: ordered segments, connection state, current label."""

    segments: tuple[TranscriptSegment, ...]
    connection_state: ConnectionState
    speaker: SpeakerLabel
    engine: str | None


def select_engine(
    requested: EngineChoice,
    streaming_available: bool,
    api_key: str,
    realtime_model: str,
) -> Engine:
    """Pick the strategy. Explicit whisper always wins; realtime needs the transport."""
    if requested == "whisper" or not streaming_available:
        return "whisper"
    if requested == "realtime":
        return "realtime"
    if api_key and "realtime" in realtime_model:
        return "realtime"
    return "whisper"


class TranscriptionSession:
    """
    One live conversation. Use as `async with TranscriptionSession(...) as session:`
    or call start()/stop() explicitly; teardown runs on every exit path.
    """

    def __init__(
        self,
        mode: CaptureMode = CaptureMode.CALL,
        engine: EngineChoice | None = None,
        api_key: str | None = None,
        language: str | None = None,
        streaming_available: bool = True,
        streaming_factory: Callable[[], Transcriber] | None = None,
        chunked_factory: Callable[[], Transcriber] | None = None,
        fallback: bool | None = None,
        frame_capacity: int | None = None,
        queue_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._requested: EngineChoice = engine or settings.ASR_BACKEND
        self._api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._language = language if language is not None else (settings.TRANSCRIPTION_LANGUAGE or None)
        self._realtime_model = settings.REALTIME_MODEL
        self._streaming_available = streaming_available
        self._streaming_factory = streaming_factory or self._default_streaming
        self._chunked_factory = chunked_factory or self._default_chunked
        self._fallback = fallback if fallback is not None else settings.FALLBACK_TO_WHISPER
        self._clock = clock

        self._buffer = AudioFrameBuffer(capacity=frame_capacity, clock=clock)
        self._tracker = SpeakerTracker(mode=mode, clock=clock)
        self._log = TranscriptLog()
        self._events: asyncio.Queue[SessionEvent | None] = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.EVENT_QUEUE_SIZE
        )

        self._active: Transcriber | None = None
        self._engine: str | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._lifecycle = asyncio.Lock()
        self._started = False
        self._stopping = False
        self._finished = False
        self._paused = False
        self._ended_state: ConnectionState | None = None

    def _default_streaming(self) -> Transcriber:
        return StreamingTranscriber(api_key=self._api_key, language=self._language, clock=self._clock)

    def _default_chunked(self) -> Transcriber:
        return ChunkedTranscriber(
            client=WhisperClient(api_key=self._api_key),
            language=self._language,
            clock=self._clock,
        )

    # --- lifecycle -------------------------------------------------------

    async def __aenter__(self) -> "TranscriptionSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.stop()
        else:
            await self.close()

    async def start(self) -> None:
        """Select and start a transcriber. Raises TranscriptionError on synchronous rejection."""
        async with self._lifecycle:
            if self._started:
                return
            engine = select_engine(
                self._requested, self._streaming_available, self._api_key, self._realtime_model
            )
            logger.info("Session starting with %s (requested %s)", engine, self._requested)
            await self._activate(engine)
            self._started = True

    async def _activate(self, engine: Engine) -> None:
        transcriber = self._streaming_factory() if engine == "realtime" else self._chunked_factory()
        try:
            await transcriber.start()
        except BaseException:
            await transcriber.disconnect()
            raise
        self._active = transcriber
        self._engine = engine
        self._pump_task = asyncio.create_task(self._pump(transcriber), name=f"session-pump-{engine}")

    async def _pump(self, transcriber: Transcriber) -> None:
        """Forward one transcriber's events until it is replaced or the session stops."""
        while True:
            event = await transcriber.events.get()
            if self._handle(transcriber, event):
                await self._fall_back(transcriber)
                return

    def _handle(self, transcriber: Transcriber, event: TranscriberEvent) -> bool:
        """Translate one transcriber event; returns True when a fallback is needed."""
        if isinstance(event, TranscriptUpdate):
            speaker = self._tracker.label_at(event.timestamp)
            segment = self._log.apply(
                segment_id=event.utterance_id,
                text=event.text,
                speaker=speaker,
                timestamp=event.timestamp,
                is_final=event.is_final,
            )
            if segment is not None:
                self._publish(SegmentUpdated(segment=segment))
            return False
        if isinstance(event, TranscriberFailure):
            self._publish(SessionError(code=event.code, message=event.message, timestamp=event.timestamp))
            return False
        if isinstance(event, StatusChange):
            self._publish(SessionStatus(status=event.status, engine=transcriber.name, timestamp=event.timestamp))
            return (
                self._engine == "realtime"
                and event.status in TERMINAL_STATUSES
                and not self._stopping
                and transcriber is self._active
            )
        return False

    async def _fall_back(self, failed: Transcriber) -> None:
        async with self._lifecycle:
            if self._stopping or self._active is not failed:
                return
            self._ended_state = failed.state
            await failed.disconnect()
            self._active = None
            if not self._fallback:
                logger.warning("Realtime transcription ended; fallback disabled")
                return
            logger.warning("Realtime transcription ended; switching to whisper chunks")
            try:
                await self._activate("whisper")
            except TranscriptionError as exc:
                logger.warning("Whisper fallback rejected (%s): %s", exc.code, exc.message)
                self._publish(SessionError(code=exc.code, message=exc.message, timestamp=self._clock()))

    async def stop(self) -> str:
        """
        Graceful stop: flush the last short frame, let the transcriber finish,
        deliver its remaining events, end the event stream. Returns the transcript text.
        """
        async with self._lifecycle:
            if self._stopping:
                return self._log.text()
            self._stopping = True
            active = self._active
            try:
                if active is not None:
                    tail = self._buffer.flush()
                    if tail is not None and not self._paused:
                        active.send_frame(tail)
                    await active.stop()
            finally:
                await self._cancel_pump()
                if active is not None:
                    self._drain(active)
                self._teardown()
            return self._log.text()

    async def close(self) -> None:
        """Abrupt teardown (error path): no final submission, pending audio is dropped."""
        async with self._lifecycle:
            if self._stopping:
                return
            self._stopping = True
            active = self._active
            try:
                if active is not None:
                    await active.disconnect()
            finally:
                await self._cancel_pump()
                self._teardown()

    async def _cancel_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _drain(self, transcriber: Transcriber) -> None:
        while not transcriber.events.empty():
            self._handle(transcriber, transcriber.events.get_nowait())

    def _teardown(self) -> None:
        self._active = None
        self._buffer.reset()
        self._tracker.reset()
        self._end_stream()

    # --- inputs ----------------------------------------------------------

    def push_audio(self, samples) -> int:
        """Buffer float samples; completed frames go to the active transcriber. Returns frames emitted."""
        if not self._started or self._stopping or self._paused:
            return 0
        frames = self._buffer.push(samples)
        active = self._active
        if active is None:
            if frames:
                logger.debug("No active transcriber, dropping %d frames", len(frames))
            return len(frames)
        for frame in frames:
            active.send_frame(frame)
        return len(frames)

    def push_volume(self, mic_level: float, system_level: float, timestamp: float | None = None) -> SpeakerLabel:
        """Feed one pair of levels to the tracker; publishes SpeakerChanged when the label moves."""
        ts = timestamp if timestamp is not None else self._clock()
        previous = self._tracker.label
        label = self._tracker.push(mic_level, system_level, ts)
        if label is not previous and not self._finished:
            self._publish(SpeakerChanged(speaker=label, timestamp=ts))
        return label

    def pause(self) -> None:
        """Stop forwarding audio; the transcriber stays up."""
        self._paused = True
        self._buffer.reset()

    def resume(self) -> None:
        self._paused = False

    def clear_transcript(self) -> None:
        self._log.clear()

    def set_mode(self, mode: CaptureMode) -> None:
        self._tracker.set_mode(mode)

    # --- outputs ---------------------------------------------------------

    def _publish(self, event: SessionEvent) -> None:
        if self._finished:
            return
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Session event queue full, dropping %s", type(event).__name__)

    def _end_stream(self) -> None:
        if self._finished:
            return
        self._finished = True
        while True:
            try:
                self._events.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._events.get_nowait()
                logger.warning("Session event queue full at stop, dropped oldest event")

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Ordered session events; ends after stop()/close()."""
        while True:
            item = await self._events.get()
            if item is None:
                return
            yield item

    @property
    def state(self) -> SessionState:
        return SessionState(
            segments=self._log.segments,
            connection_state=self._connection_state(),
            speaker=self._tracker.label,
            engine=self._engine,
        )

    def _connection_state(self) -> ConnectionState:
        if self._active is not None:
            return self._active.state
        if self._finished:
            return ConnectionState.DISCONNECTED
        return self._ended_state or ConnectionState.IDLE

    @property
    def engine(self) -> str | None:
        return self._engine

    @property
    def transcript(self) -> TranscriptLog:
        return self._log

    @property
    def tracker(self) -> SpeakerTracker:
        return self._tracker

    @property
    def paused(self) -> bool:
        return self._paused
