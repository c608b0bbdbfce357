"""
WebSocketManager: bridges one client WebSocket to one TranscriptionSession.

Client -> server:
- binary: little-endian float32 mono samples at SAMPLE_RATE (any chunk size).
- text: JSON control ({"type": "volume", "mic", "system"} | pause | resume | clear | stop).
Server -> client: JSON events from the session (segment, speaker, status, error);
after "stop", one {"type": "transcript", "text"} and the socket is closed.

The receive loop only buffers audio and updates the tracker; event delivery runs
in its own task so a slow client never stalls capture.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from fastapi import WebSocket
from pydantic import ValidationError

from callscribe.audio.pcm import float32_bytes_to_samples
from callscribe.errors import TranscriptionError
from callscribe.schemas.events import (
    CommandControl,
    ErrorMessage,
    TranscriptMessage,
    VolumeControl,
    control_adapter,
    to_message,
)
from callscribe.session import TranscriptionSession

logger = logging.getLogger(__name__)

# Policy violation: session could not start (e.g. missing credential)
CLOSE_POLICY_VIOLATION = 1008


class WebSocketManager:
    """One WebSocket = one transcription session."""

    def __init__(self, websocket: WebSocket, session: TranscriptionSession) -> None:
        self._ws = websocket
        self._session = session
        self._forward_task: asyncio.Task[Any] | None = None
        self._closed = False

    async def _send_json(self, payload: str) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_text(payload)
        except Exception:
            self._closed = True

    async def _forward_events(self) -> None:
        """Drain session events to the client until the session ends."""
        async for event in self._session.events():
            await self._send_json(to_message(event).model_dump_json())

    def _handle_control(self, text: str) -> bool:
        """Apply one control message. Returns True on stop."""
        try:
            control = control_adapter.validate_json(text)
        except ValidationError as e:
            logger.debug("Ignoring invalid control message: %s", e)
            return False
        if isinstance(control, VolumeControl):
            self._session.push_volume(control.mic, control.system)
            return False
        if not isinstance(control, CommandControl):
            return False
        if control.type == "stop":
            return True
        if control.type == "pause":
            self._session.pause()
        elif control.type == "resume":
            self._session.resume()
        elif control.type == "clear":
            self._session.clear_transcript()
        return False

    async def run(self) -> None:
        """Start the session, pump client input into it, tear down on every exit path."""
        try:
            await self._session.start()
        except TranscriptionError as e:
            logger.warning("Session rejected (%s): %s", e.code, e.message)
            error = ErrorMessage(code=e.code, message=e.message, timestamp=int(time.time() * 1000))
            await self._send_json(error.model_dump_json())
            await self._close(CLOSE_POLICY_VIOLATION)
            return

        self._forward_task = asyncio.create_task(self._forward_events())
        graceful = False
        try:
            while not self._closed:
                try:
                    msg = await self._ws.receive()
                except Exception:
                    break
                if msg.get("type") == "websocket.disconnect":
                    break
                data = msg.get("bytes")
                if data is not None:
                    self._session.push_audio(float32_bytes_to_samples(data))
                    continue
                text = msg.get("text")
                if text is not None and self._handle_control(text):
                    graceful = True
                    break
        finally:
            final_text = ""
            if graceful:
                final_text = await self._session.stop()
            else:
                await self._session.close()
            if self._forward_task:
                try:
                    await asyncio.wait_for(self._forward_task, timeout=5.0)
                except asyncio.TimeoutError:
                    self._forward_task.cancel()
                    try:
                        await self._forward_task
                    except asyncio.CancelledError:
                        pass
            if graceful:
                await self._send_json(TranscriptMessage(text=final_text).model_dump_json())
                await self._close()

    async def _close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close(code=code)
        except Exception:
            pass
