"""
FastAPI app: WebSocket endpoint for live call transcription; HTTP batch transcription proxy.

Client sends binary float32 mono samples (SAMPLE_RATE) plus JSON volume/control messages.
Server responds with JSON events:
{ "type": "segment", "segment_id", "speaker", "text", "timestamp": unix_ms, "is_final" }
{ "type": "speaker" | "status" | "error" | "transcript", ... }
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile, WebSocket, WebSocketDisconnect

from callscribe.asr.whisper_api import WhisperClient
from callscribe.config import get_settings
from callscribe.diarization.models import CaptureMode
from callscribe.errors import (
    FILE_TOO_LARGE,
    MISSING_API_KEY,
    NO_AUDIO,
    UNSUPPORTED_FILE_TYPE,
    TranscriptionError,
)
from callscribe.logging_setup import configure_logging
from callscribe.schemas.transcribe import TranscribeResponse
from callscribe.session import TranscriptionSession
from callscribe.websocket_manager import CLOSE_POLICY_VIOLATION, WebSocketManager

logger = logging.getLogger(__name__)

ENGINES = ("auto", "realtime", "whisper")

_STATUS_BY_CODE = {
    MISSING_API_KEY: 401,
    NO_AUDIO: 400,
    FILE_TOO_LARGE: 413,
    UNSUPPORTED_FILE_TYPE: 415,
}


def status_for_error(error: TranscriptionError) -> int:
    """HTTP status for a rejected or failed batch transcription."""
    if error.code in _STATUS_BY_CODE:
        return _STATUS_BY_CODE[error.code]
    if error.status_code is not None and error.status_code >= 400:
        return error.status_code
    return 502


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings())
    logger.info("Transcription service starting")
    yield
    logger.info("Transcription service stopped")


app = FastAPI(
    title="Live Call Transcription",
    description="Realtime transcription with whisper fallback and volume-based speaker labels",
    lifespan=lifespan,
)


@app.websocket("/ws/transcribe")
async def websocket_transcribe(
    websocket: WebSocket,
    mode: str = "call",
    engine: str | None = None,
    language: str | None = None,
) -> None:
    """
    WebSocket: one connection = one transcription session.
    Query: mode=call|presential, engine=auto|realtime|whisper, language=<iso code>.
    """
    await websocket.accept()
    try:
        capture_mode = CaptureMode(mode)
    except ValueError:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=f"unknown mode {mode!r}")
        return
    if engine is not None and engine not in ENGINES:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=f"unknown engine {engine!r}")
        return

    session = TranscriptionSession(mode=capture_mode, engine=engine, language=language or None)
    manager = WebSocketManager(websocket, session)
    try:
        await manager.run()
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Transcription session failed")
        try:
            await websocket.close()
        except Exception:
            pass


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


async def get_whisper_client(x_api_key: str | None = Header(None)) -> AsyncIterator[WhisperClient]:
    """Per-request batch client; header key wins over the configured one."""
    client = WhisperClient(api_key=x_api_key or None)
    try:
        yield client
    finally:
        await client.aclose()


@app.post("/api/transcribe", response_model=TranscribeResponse)
async def transcribe(
    file: UploadFile | None = File(None),
    language: str | None = Form(None),
    client: WhisperClient = Depends(get_whisper_client),
) -> TranscribeResponse:
    """
    Batch transcription proxy. Multipart: file (audio), optional language.
    Credential from X-API-Key header or OPENAI_API_KEY.
    """
    audio = await file.read() if file is not None else b""
    filename = (file.filename if file is not None else None) or "audio.webm"
    try:
        result = await client.transcribe(audio, filename=filename, language=language or None)
    except TranscriptionError as e:
        logger.warning("Batch transcription failed (%s): %s", e.code, e.message)
        raise HTTPException(status_code=status_for_error(e), detail={"code": e.code, "message": e.message})
    return TranscribeResponse(text=result.text, duration=result.duration)


def run_server() -> None:
    """Serve the app with uvicorn on HOST:PORT."""
    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run_server()
