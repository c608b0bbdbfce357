"""
Whisper (batch) transcription: HTTP client and the chunked fallback transcriber.

WhisperClient: one multipart POST per blob to /audio/transcriptions.
Input is validated before any network call (credential, empty, size, file type).

ChunkedTranscriber: used when no realtime socket is available.
- Every frame is appended to a pending list as raw PCM16 bytes.
- Every WHISPER_INTERVAL_SECONDS the pending bytes are joined into one blob.
  Blobs under WHISPER_MIN_BLOB_BYTES go back to the pending list untouched.
- Large enough blobs are wrapped as WAV and submitted. Text from a successful
  response is appended to the accumulated transcript and reported as one
  non-final update with its own id.
- A blob whose WAV form would exceed the client's upload limit is sent as
  several consecutive uploads, so a long backlog never becomes unsendable.
- On failure the unsent bytes are put back in front of anything that arrived
  meanwhile, so the next cycle retries them in order. No backoff loop.

Taking the batch and putting unsent parts back are each synchronous. Chunks
appended during an upload queue up behind the batch, and submissions are
serialized with a lock, so the timer and the capture path cannot lose or
duplicate chunks.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import httpx

from callscribe.asr.base import ConnectionState, Transcriber, TranscriberStatus, TranscriptUpdate
from callscribe.audio.frame_buffer import AudioFrame
from callscribe.audio.pcm import SAMPLE_WIDTH, WAV_HEADER_BYTES, pcm16_to_wav
from callscribe.config import get_settings
from callscribe.errors import (
    FILE_TOO_LARGE,
    MISSING_API_KEY,
    NO_AUDIO,
    SUBMISSION_FAILED,
    UNSUPPORTED_FILE_TYPE,
    TranscriptionError,
)

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset(
    {"flac", "m4a", "mp3", "mp4", "mpeg", "mpga", "oga", "ogg", "wav", "webm"}
)


@dataclass
class WhisperResult:
    """Response of one batch call."""

    text: str
    duration: float | None = None


def _error_message(resp: httpx.Response) -> str:
    """Pull the message out of an error body; fall back to the status code."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    return f"Whisper API error: {resp.status_code}"


class WhisperClient:
    """Async client for the batch endpoint. Owns its httpx client unless one is injected."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_upload_bytes: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._model = model or settings.WHISPER_MODEL
        self._base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self._max_upload_bytes = (
            max_upload_bytes if max_upload_bytes is not None else settings.WHISPER_MAX_UPLOAD_BYTES
        )
        timeout = timeout if timeout is not None else settings.WHISPER_REQUEST_TIMEOUT_SECONDS
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def has_credential(self) -> bool:
        return bool(self._api_key)

    @property
    def max_upload_bytes(self) -> int:
        return self._max_upload_bytes

    def validate(self, audio: bytes, filename: str) -> None:
        """Reject bad input synchronously with a specific error code."""
        if not audio:
            raise TranscriptionError(NO_AUDIO, "No audio file provided")
        if not self._api_key:
            raise TranscriptionError(MISSING_API_KEY, "API key is required")
        if len(audio) > self._max_upload_bytes:
            raise TranscriptionError(
                FILE_TOO_LARGE,
                f"Audio is {len(audio)} bytes; limit is {self._max_upload_bytes}",
            )
        ext = os.path.splitext(filename)[1].lstrip(".").lower()
        if ext not in SUPPORTED_EXTENSIONS:
            raise TranscriptionError(UNSUPPORTED_FILE_TYPE, f"Unsupported audio type: {filename!r}")

    async def transcribe(
        self,
        audio: bytes,
        filename: str = "audio.wav",
        language: str | None = None,
    ) -> WhisperResult:
        """POST one blob; returns text (+ duration when the API sends it)."""
        self.validate(audio, filename)
        data = {"model": self._model}
        if language:
            data["language"] = language
        try:
            resp = await self._client.post(
                f"{self._base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                data=data,
                files={"file": (filename, audio)},
            )
        except httpx.HTTPError as exc:
            raise TranscriptionError(SUBMISSION_FAILED, f"Whisper request failed: {exc}") from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            raise TranscriptionError(SUBMISSION_FAILED, _error_message(resp), status_code=resp.status_code)
        try:
            body = resp.json()
        except ValueError as exc:
            raise TranscriptionError(SUBMISSION_FAILED, "Whisper returned a non-JSON body") from exc
        text = body.get("text") if isinstance(body, dict) else None
        duration = body.get("duration") if isinstance(body, dict) else None
        return WhisperResult(text=(text or "").strip(), duration=duration)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ChunkedTranscriber(Transcriber):
    """
    Periodic batch transcription. Status: recording while buffering,
    transcribing during a submission, idle after stop/disconnect.
    """

    name = "whisper"

    def __init__(
        self,
        client: WhisperClient | None = None,
        language: str | None = None,
        interval: float | None = None,
        min_blob_bytes: int | None = None,
        sample_rate: int | None = None,
        queue_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        super().__init__(
            queue_size=queue_size if queue_size is not None else settings.EVENT_QUEUE_SIZE,
            clock=clock,
        )
        self._client = client or WhisperClient()
        self._language = language if language is not None else (settings.TRANSCRIPTION_LANGUAGE or None)
        self._interval = interval if interval is not None else settings.WHISPER_INTERVAL_SECONDS
        self._min_blob_bytes = min_blob_bytes if min_blob_bytes is not None else settings.WHISPER_MIN_BLOB_BYTES
        self._sample_rate = sample_rate if sample_rate is not None else settings.SAMPLE_RATE

        self._pending: deque[bytes] = deque()
        self._submit_lock = asyncio.Lock()
        self._timer_task: asyncio.Task[None] | None = None
        self._accumulated = ""
        self._chunk_counter = 0
        self._submissions = 0

    @property
    def accumulated_text(self) -> str:
        return self._accumulated

    @property
    def pending_bytes(self) -> int:
        return sum(len(c) for c in self._pending)

    @property
    def submissions(self) -> int:
        """Number of blobs actually sent to the endpoint (successful or not)."""
        return self._submissions

    async def start(self) -> None:
        if self._state is not ConnectionState.IDLE:
            logger.debug("whisper: start ignored in state %s", self._state.value)
            return
        if not self._client.has_credential:
            raise TranscriptionError(MISSING_API_KEY, "API key required for Whisper")
        self._accumulated = ""
        self._set_state(ConnectionState.CONNECTED)
        self._publish_status(TranscriberStatus.RECORDING)
        self._timer_task = asyncio.create_task(self._timer_loop(), name="whisper-timer")

    def send_frame(self, frame: AudioFrame) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        self.append_chunk(frame.to_bytes())

    def append_chunk(self, chunk: bytes) -> None:
        """Append raw PCM16 bytes to the pending list."""
        if chunk:
            self._pending.append(chunk)

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.submit_pending()

    def _requeue(self, batch: list[bytes]) -> None:
        """Put a batch back in front of chunks that arrived meanwhile, order preserved."""
        self._pending.extendleft(reversed(batch))

    async def submit_pending(self, force: bool = False) -> None:
        """
        One submission cycle. Below-threshold blobs wait for the next cycle
        unless force is set (final flush on stop).
        """
        async with self._submit_lock:
            if not self._pending:
                return
            batch = list(self._pending)
            self._pending.clear()
            blob = b"".join(batch)
            if not force and len(blob) < self._min_blob_bytes:
                self._requeue(batch)
                logger.debug("whisper: %d bytes below threshold %d, waiting", len(blob), self._min_blob_bytes)
                return

            parts = self._split(blob)
            for n, part in enumerate(parts):
                self._publish_status(TranscriberStatus.TRANSCRIBING)
                self._submissions += 1
                try:
                    result = await self._client.transcribe(
                        pcm16_to_wav(part, self._sample_rate),
                        filename="audio.wav",
                        language=self._language,
                    )
                except asyncio.CancelledError:
                    self._requeue(parts[n:])
                    raise
                except TranscriptionError as exc:
                    self._requeue(parts[n:])
                    logger.warning(
                        "whisper: submission of %d bytes failed (%s): %s", len(part), exc.code, exc.message
                    )
                    self._publish_failure(exc.code, exc.message)
                    self._publish_status(TranscriberStatus.RECORDING)
                    return
                self._apply_result(result)
            self._publish_status(TranscriberStatus.RECORDING)

    def _split(self, blob: bytes) -> list[bytes]:
        """Cut a blob into pieces whose WAV form fits the upload limit, on sample boundaries."""
        limit = max(self._client.max_upload_bytes - WAV_HEADER_BYTES, SAMPLE_WIDTH)
        limit -= limit % SAMPLE_WIDTH
        if len(blob) <= limit:
            return [blob]
        logger.info("whisper: splitting %d bytes into %d-byte uploads", len(blob), limit)
        return [blob[i : i + limit] for i in range(0, len(blob), limit)]

    def _apply_result(self, result: WhisperResult) -> None:
        if not result.text:
            return
        self._accumulated = f"{self._accumulated} {result.text}" if self._accumulated else result.text
        self._chunk_counter += 1
        self._publish(
            TranscriptUpdate(
                utterance_id=f"chunk-{self._chunk_counter}",
                text=result.text,
                is_final=False,
                timestamp=self._clock(),
            )
        )

    async def _cancel_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop(self) -> str:
        """Cancel the timer, submit whatever is left regardless of size, return the full text."""
        if self._closed:
            return self._accumulated
        await self._cancel_timer()
        try:
            if self._state is ConnectionState.CONNECTED:
                await self.submit_pending(force=True)
        finally:
            self._pending.clear()
            self._set_state(ConnectionState.DISCONNECTED)
            self._publish_status(TranscriberStatus.IDLE)
            self._closed = True
            await self._client.aclose()
        return self._accumulated

    async def disconnect(self) -> None:
        """Cancel the timer and drop pending audio; no final submission."""
        if self._closed:
            return
        await self._cancel_timer()
        self._pending.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._publish_status(TranscriberStatus.IDLE)
        self._closed = True
        await self._client.aclose()
