"""Error type shared by the transcription clients and the HTTP proxy."""
from __future__ import annotations

MISSING_API_KEY = "missing_api_key"
NO_AUDIO = "no_audio"
FILE_TOO_LARGE = "file_too_large"
UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
SUBMISSION_FAILED = "submission_failed"
REMOTE_ERROR = "remote_error"
TRANSPORT_ERROR = "transport_error"


class TranscriptionError(Exception):
    """
    Raised for synchronous rejections (bad input, missing credential) and for
    batch submission failures. code is one of the module constants; status_code
    carries the remote HTTP status when there was one.
    """

    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"TranscriptionError(code={self.code!r}, message={self.message!r})"
