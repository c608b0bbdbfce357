"""In-memory stand-ins for the realtime socket and the whisper client."""

from __future__ import annotations

import asyncio
import io
import json
import wave
from typing import Any

from callscribe.asr.whisper_api import WhisperResult
from callscribe.errors import SUBMISSION_FAILED, TranscriptionError

_CLOSE = object()


class FakeSocket:
    """Records outbound messages; inbound messages are fed by the test."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.send_error: BaseException | None = None
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(_CLOSE)

    def feed(self, payload: dict[str, Any]) -> None:
        self._inbound.put_nowait(json.dumps(payload))

    def feed_raw(self, raw: str) -> None:
        self._inbound.put_nowait(raw)

    def fail(self, exc: BaseException) -> None:
        self._inbound.put_nowait(exc)

    def server_close(self) -> None:
        self._inbound.put_nowait(_CLOSE)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbound.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    def appended(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == "input_audio_buffer.append"]


class FakeConnector:
    """connector= stand-in: hands out one FakeSocket, optionally blocking or failing."""

    def __init__(self, error: BaseException | None = None, block: bool = False) -> None:
        self.socket = FakeSocket()
        self.error = error
        self.block = block
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeSocket:
        self.calls.append((url, headers))
        if self.block:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.socket


class FakeWhisperClient:
    """
    Records every submitted blob (as raw PCM) and answers from a script:
    each entry is a text to return or an exception to raise. Defaults to "ok".
    """

    def __init__(
        self,
        outcomes: list[Any] | None = None,
        has_credential: bool = True,
        max_upload_bytes: int = 25 * 1024 * 1024,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.max_upload_bytes = max_upload_bytes
        self.submitted: list[bytes] = []
        self.has_credential = has_credential
        self.closed = False

    async def transcribe(self, audio: bytes, filename: str = "audio.wav", language: str | None = None) -> WhisperResult:
        self.submitted.append(wav_to_pcm(audio))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        return WhisperResult(text=outcome)

    async def aclose(self) -> None:
        self.closed = True


class BlockingWhisperClient(FakeWhisperClient):
    """FakeWhisperClient whose transcribe() waits for release before answering."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def transcribe(self, audio: bytes, filename: str = "audio.wav", language: str | None = None) -> WhisperResult:
        self.entered.set()
        await self.release.wait()
        return await super().transcribe(audio, filename=filename, language=language)


def submission_error(message: str = "boom") -> TranscriptionError:
    return TranscriptionError(SUBMISSION_FAILED, message, status_code=500)


def wav_to_pcm(data: bytes) -> bytes:
    with wave.open(io.BytesIO(data), "rb") as wf:
        return wf.readframes(wf.getnframes())


def drain(queue: asyncio.Queue) -> list[Any]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until true; fails the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now
