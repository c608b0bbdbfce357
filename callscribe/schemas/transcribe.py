"""Schemas for POST /api/transcribe (batch proxy)."""
from __future__ import annotations

from pydantic import BaseModel, Field


class TranscribeResponse(BaseModel):
    """Whisper result passed through from the batch endpoint."""

    text: str = Field("", description="Transcribed text")
    duration: float | None = Field(None, description="Audio duration in seconds, when the API reports it")
