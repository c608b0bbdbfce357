"""Live call transcription with volume-based speaker labels."""
