"""
Error taxonomy for the voice-turn pipeline.

None of these is fatal to the process: each one names the stage that failed
and every handler restores a listening, gate-released state.
"""
from __future__ import annotations


class VoiceError(Exception):
    """Base exception for all voice pipeline operations."""

    def __init__(self, message: str, stage: str = "", recoverable: bool = True):
        self.stage = stage
        self.recoverable = recoverable
        super().__init__(message)


class CaptureError(VoiceError):
    """Audio subscription, decode or sink failure. Capture restarts."""

    def __init__(self, message: str, user_id: str = ""):
        self.user_id = user_id
        super().__init__(message, stage="capture")


class ConversionError(VoiceError):
    """Raw PCM could not be transcoded. The utterance is abandoned."""

    def __init__(self, message: str):
        super().__init__(message, stage="transcode")


class GatewayError(VoiceError):
    """An external STT / LLM / search / TTS / voice-conversion call failed."""

    def __init__(self, message: str, service: str = "", status_code: int = 0):
        self.service = service
        self.status_code = status_code
        super().__init__(message, stage=service or "gateway")


class TimerParseError(VoiceError):
    """Unit or quantity missing from a timer request."""

    def __init__(self, message: str, query: str = ""):
        self.query = query
        super().__init__(message, stage="timer")


class SequencingTimeout(VoiceError):
    """The next chunk never arrived within the playback retry limit."""

    def __init__(self, index: int, attempts: int):
        self.index = index
        self.attempts = attempts
        super().__init__(
            f"Chunk {index} not ready after {attempts} retries", stage="playback",
        )


class SessionConflictError(VoiceError):
    def __init__(self, channel_id: str = ""):
        super().__init__(
            f"A voice session is already active in channel {channel_id}",
            stage="session",
        )
