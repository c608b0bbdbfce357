"""
StreamingTranscriber: low-latency transcription over the OpenAI Realtime websocket.

State machine: idle -> connecting -> connected -> {disconnected | errored}.

- connecting: open the socket, send one session.update (text modality,
  transcription model, optional language, server VAD), then connected.
- connected: frames are queued by send_frame() and a sender task encodes each
  one as base64 PCM16 in an input_audio_buffer.append message. A receiver task
  decodes transcription deltas (partial) and completions (final).
- Transport close -> disconnected; transport error -> errored. A server "error"
  event is reported but does not close anything.
- No automatic reconnect; the session decides whether to fall back.

Send and receive are separate tasks on one socket. The receiver owns the
partial-text map; the sender only reads its own queue.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.parse
from typing import Any, Awaitable, Callable, Protocol

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from callscribe.asr.base import ConnectionState, Transcriber, TranscriberStatus, TranscriptUpdate
from callscribe.audio.frame_buffer import AudioFrame
from callscribe.audio.pcm import pcm16_to_base64
from callscribe.config import get_settings
from callscribe.errors import MISSING_API_KEY, REMOTE_ERROR, TRANSPORT_ERROR, TranscriptionError

logger = logging.getLogger(__name__)

EVENT_DELTA = "conversation.item.input_audio_transcription.delta"
EVENT_COMPLETED = "conversation.item.input_audio_transcription.completed"
EVENT_ERROR = "error"


class RealtimeSocket(Protocol):
    """What the transcriber needs from a websocket connection."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str, dict[str, str]], Awaitable[RealtimeSocket]]


async def open_realtime_socket(url: str, headers: dict[str, str]) -> RealtimeSocket:
    """Default connector: websockets client with bearer auth."""
    return await ws_connect(url, additional_headers=headers, max_size=None)


def build_session_config(
    transcription_model: str,
    language: str | None,
    vad_type: str,
    vad_threshold: float,
    prefix_padding_ms: int,
    silence_duration_ms: int,
) -> dict[str, Any]:
    """session.update payload: transcription only, server VAD decides utterance boundaries."""
    transcription: dict[str, Any] = {"model": transcription_model}
    if language:
        transcription["language"] = language
    return {
        "type": "session.update",
        "session": {
            "modalities": ["text"],
            "input_audio_transcription": transcription,
            "turn_detection": {
                "type": vad_type,
                "threshold": vad_threshold,
                "prefix_padding_ms": prefix_padding_ms,
                "silence_duration_ms": silence_duration_ms,
            },
        },
    }


class StreamingTranscriber(Transcriber):
    """
    One socket per instance; not restartable. start() returns as soon as the
    connect task is scheduled; progress is reported through status events.
    """

    name = "realtime"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        language: str | None = None,
        connector: Connector | None = None,
        url: str | None = None,
        open_timeout: float | None = None,
        stale_timeout: float | None = None,
        send_queue_size: int | None = None,
        queue_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        super().__init__(
            queue_size=queue_size if queue_size is not None else settings.EVENT_QUEUE_SIZE,
            clock=clock,
        )
        self._api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._model = model or settings.REALTIME_MODEL
        self._language = language if language is not None else (settings.TRANSCRIPTION_LANGUAGE or None)
        self._connector = connector or open_realtime_socket
        self._url = url or settings.REALTIME_URL
        self._open_timeout = open_timeout if open_timeout is not None else settings.REALTIME_OPEN_TIMEOUT_SECONDS
        self._stale_timeout = (
            stale_timeout if stale_timeout is not None else settings.REALTIME_STALE_TIMEOUT_SECONDS
        )
        self._session_config = build_session_config(
            transcription_model=settings.REALTIME_TRANSCRIPTION_MODEL,
            language=self._language,
            vad_type=settings.VAD_TYPE,
            vad_threshold=settings.VAD_THRESHOLD,
            prefix_padding_ms=settings.VAD_PREFIX_PADDING_MS,
            silence_duration_ms=settings.VAD_SILENCE_DURATION_MS,
        )

        self._outbox: asyncio.Queue[AudioFrame] = asyncio.Queue(
            maxsize=send_queue_size if send_queue_size is not None else settings.REALTIME_SEND_QUEUE_SIZE
        )
        self._ws: RealtimeSocket | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._sender_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None
        self._partials: dict[str, str] = {}
        self._final_texts: list[str] = []
        self._last_message_at = 0.0
        self._frames_sent = 0

    @property
    def url(self) -> str:
        return f"{self._url}?{urllib.parse.urlencode({'model': self._model})}"

    @property
    def session_config(self) -> dict[str, Any]:
        return self._session_config

    @property
    def frames_sent(self) -> int:
        return self._frames_sent

    async def start(self) -> None:
        """idle -> connecting. Ignored in any other state."""
        if self._state is not ConnectionState.IDLE:
            logger.debug("realtime: start ignored in state %s", self._state.value)
            return
        if not self._api_key:
            raise TranscriptionError(MISSING_API_KEY, "API key required for realtime transcription")
        self._set_state(ConnectionState.CONNECTING)
        self._publish_status(TranscriberStatus.CONNECTING)
        self._run_task = asyncio.create_task(self._run(), name="realtime-run")

    async def _run(self) -> None:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            ws = await asyncio.wait_for(self._connector(self.url, headers), timeout=self._open_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._on_transport_error(exc)
            return

        self._ws = ws
        self._last_message_at = time.monotonic()
        try:
            await ws.send(json.dumps(self._session_config))
        except ConnectionClosed:
            self._on_transport_closed()
            return
        except Exception as exc:
            await self._on_transport_error(exc)
            return

        self._set_state(ConnectionState.CONNECTED)
        self._publish_status(TranscriberStatus.CONNECTED)
        self._sender_task = asyncio.create_task(self._send_loop(ws), name="realtime-send")
        if self._stale_timeout > 0:
            self._watchdog_task = asyncio.create_task(self._watchdog(ws), name="realtime-watchdog")

        try:
            async for raw in ws:
                self._last_message_at = time.monotonic()
                self._handle_message(raw)
        except ConnectionClosed:
            self._on_transport_closed()
        except Exception as exc:
            await self._on_transport_error(exc)
        else:
            self._on_transport_closed()

    def send_frame(self, frame: AudioFrame) -> None:
        """Queue a frame for the sender task. Dropped unless connected."""
        if self._state is not ConnectionState.CONNECTED:
            return
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("realtime: send queue full, dropping frame %d", frame.sequence)

    async def _send_loop(self, ws: RealtimeSocket) -> None:
        while True:
            frame = await self._outbox.get()
            message = {"type": "input_audio_buffer.append", "audio": pcm16_to_base64(frame.samples)}
            try:
                await ws.send(json.dumps(message))
            except ConnectionClosed:
                # Receiver sees the same close and drives the state change
                logger.debug("realtime: send after close, stopping sender")
                return
            self._frames_sent += 1

    async def _watchdog(self, ws: RealtimeSocket) -> None:
        interval = max(self._stale_timeout / 3.0, 0.05)
        while True:
            await asyncio.sleep(interval)
            idle = time.monotonic() - self._last_message_at
            if idle > self._stale_timeout:
                logger.warning("realtime: no message for %.1fs, closing stale connection", idle)
                await ws.close()
                return

    def _handle_message(self, raw: str | bytes) -> None:
        """Decode one inbound message. Malformed or unknown messages are ignored."""
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("realtime: ignoring malformed message")
            return
        if not isinstance(msg, dict):
            return
        kind = msg.get("type")
        if kind == EVENT_DELTA:
            item_id = msg.get("item_id")
            if not item_id:
                return
            text = self._partials.get(item_id, "") + (msg.get("delta") or "")
            self._partials[item_id] = text
            self._publish(
                TranscriptUpdate(utterance_id=item_id, text=text, is_final=False, timestamp=self._clock())
            )
        elif kind == EVENT_COMPLETED:
            item_id = msg.get("item_id")
            if not item_id:
                return
            self._partials.pop(item_id, None)
            text = (msg.get("transcript") or "").strip()
            if text:
                self._final_texts.append(text)
            self._publish(
                TranscriptUpdate(utterance_id=item_id, text=text, is_final=True, timestamp=self._clock())
            )
        elif kind == EVENT_ERROR:
            error = msg.get("error")
            message = error.get("message") if isinstance(error, dict) else None
            message = message or "Realtime API error"
            logger.warning("realtime: server error: %s", message)
            self._publish_failure(REMOTE_ERROR, message)
        else:
            logger.debug("realtime: ignoring event %s", kind)

    def _on_transport_closed(self) -> None:
        self._cancel_side_tasks()
        self._ws = None
        if self._set_state(ConnectionState.DISCONNECTED):
            self._publish_status(TranscriberStatus.DISCONNECTED)

    async def _on_transport_error(self, exc: BaseException) -> None:
        logger.warning("realtime: transport error: %s", exc)
        self._cancel_side_tasks()
        if self._set_state(ConnectionState.ERRORED):
            self._publish_failure(TRANSPORT_ERROR, str(exc) or type(exc).__name__)
            self._publish_status(TranscriberStatus.ERROR)
        # The transport may still be open after a protocol or send failure
        await self._close_socket()

    async def _close_socket(self) -> None:
        """Close the socket if one is held. The reference is kept until close returns."""
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            logger.debug("realtime: close failed: %s", exc)
        self._ws = None

    def _cancel_side_tasks(self) -> None:
        for task in (self._sender_task, self._watchdog_task):
            if task is not None and not task.done():
                task.cancel()

    async def disconnect(self) -> None:
        """
        Stop forwarding, release the encoder queue, close the socket if open.
        Ends in disconnected regardless of the prior state.
        """
        run_task = self._run_task
        current = asyncio.current_task()
        tasks = [
            t
            for t in (self._sender_task, self._watchdog_task, run_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("realtime: task ended with %r during disconnect", exc)

        while not self._outbox.empty():
            self._outbox.get_nowait()
        self._partials.clear()

        await self._close_socket()

        if self._set_state(ConnectionState.DISCONNECTED):
            self._publish_status(TranscriberStatus.DISCONNECTED)
        self._closed = True

    async def stop(self) -> str:
        """Graceful stop is a disconnect; completed utterances are already delivered."""
        await self.disconnect()
        return " ".join(self._final_texts)
