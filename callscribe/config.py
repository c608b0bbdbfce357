"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Audio: PCM 16-bit mono, 24kHz (what the realtime service expects)
    SAMPLE_RATE: int = 24000

    # Frame: samples accumulated before a frame is handed to a transcriber
    FRAME_SAMPLES: int = 4096

    # Strategy: "auto" picks realtime when available, else whisper chunks
    ASR_BACKEND: Literal["auto", "realtime", "whisper"] = "auto"

    # Credential shared by the realtime socket and the batch endpoint
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"

    # Realtime (streaming) transcription
    REALTIME_URL: str = "wss://api.openai.com/v1/realtime"
    REALTIME_MODEL: str = "gpt-4o-realtime-preview"
    REALTIME_TRANSCRIPTION_MODEL: str = "whisper-1"
    REALTIME_OPEN_TIMEOUT_SECONDS: float = 10.0
    REALTIME_STALE_TIMEOUT_SECONDS: float = 30.0  # no inbound message for this long -> close; 0 disables
    REALTIME_SEND_QUEUE_SIZE: int = 64

    # Server-side voice activity detection (sent in the session config)
    VAD_TYPE: str = "server_vad"
    VAD_THRESHOLD: float = 0.5
    VAD_PREFIX_PADDING_MS: int = 300
    VAD_SILENCE_DURATION_MS: int = 1000

    # Optional source language (ISO-639-1); empty = auto-detect
    TRANSCRIPTION_LANGUAGE: str = ""

    # Whisper (chunked fallback)
    WHISPER_MODEL: str = "whisper-1"
    WHISPER_INTERVAL_SECONDS: float = 5.0
    WHISPER_MIN_BLOB_BYTES: int = 5000  # below this the pending audio waits for the next cycle
    WHISPER_MAX_UPLOAD_BYTES: int = 25 * 1024 * 1024
    WHISPER_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Volume-based diarization
    SPEAKER_WINDOW_MS: int = 500
    SPEAKER_MIC_THRESHOLD: float = 0.02
    SPEAKER_SYSTEM_THRESHOLD: float = 0.02
    SPEAKER_HISTORY_SECONDS: float = 30.0  # label changes kept for the timestamp join

    # Switch to whisper chunks when the realtime socket fails or drops
    FALLBACK_TO_WHISPER: bool = True

    # Bounded event channels (transcriber -> session -> client)
    EVENT_QUEUE_SIZE: int = 256

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path empty = console only.
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # uvicorn bind address (callscribe console script)
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
