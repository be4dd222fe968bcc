"""
Error taxonomy for the voice capture and transcription pipeline.

Recoverable, stage-local failures (MalformedAudioChunk, TransientNetworkError)
are handled where they occur and never unwind past the pipeline or the
recognition session. Fatal, conflict and timeout classes propagate to the
VoiceService facade and onward to its listeners.
"""

from typing import Optional


class VoiceTranscriberError(Exception):
    """Base class for every error raised by voice_transcriber."""

    def __init__(self, message: str = "", *, user_id: Optional[str] = None):
        super().__init__(message)
        self.user_id = user_id


class MalformedAudioChunk(VoiceTranscriberError):
    """A single frame could not be decoded or has an invalid PCM layout.

    The chunk is dropped and the pipeline continues.
    """


class SinkClosedError(VoiceTranscriberError):
    """PCM was written into a push-stream that has already been closed."""


class TransientNetworkError(VoiceTranscriberError):
    """Connection drop or poll-detected disconnect of the recognition backend."""


class FatalRecognitionError(VoiceTranscriberError):
    """Explicit backend error, or a restart budget exhausted by the circuit breaker."""

    def __init__(
        self,
        message: str = "",
        *,
        user_id: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[str] = None,
    ):
        super().__init__(message, user_id=user_id)
        self.error_code = error_code
        self.details = details


class SessionConflictError(VoiceTranscriberError):
    """A listening session already exists for this user."""


class ConnectionTimeoutError(VoiceTranscriberError):
    """The voice-channel connection never reached the ready state."""


class ListeningCancelledError(VoiceTranscriberError):
    """stop_listening was called for the user while start_listening was still setting up."""


class ResourceCleanupError(VoiceTranscriberError):
    """A teardown step failed. Logged; teardown continues with the next step."""

    def __init__(self, message: str = "", *, user_id: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message, user_id=user_id)
        self.step = step


class InvalidStateError(VoiceTranscriberError):
    """A state machine was asked to perform a transition its table forbids."""


__all__ = [
    "VoiceTranscriberError",
    "MalformedAudioChunk",
    "SinkClosedError",
    "TransientNetworkError",
    "FatalRecognitionError",
    "SessionConflictError",
    "ConnectionTimeoutError",
    "ListeningCancelledError",
    "ResourceCleanupError",
    "InvalidStateError",
]
