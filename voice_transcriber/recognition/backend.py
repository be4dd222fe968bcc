"""
Cloud recognition backend interfaces.

RecognitionSession depends only on these classes. A backend provides a
push-stream (PCM sink), a continuous recognizer fed from that push-stream,
and a factory that builds both. Recognizer callbacks are plain attributes
the session assigns before starting recognition.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..core.models import PCMFormat
from ..logging_config import get_logger

logger = get_logger(__name__)

CONNECTION_STATUS_PROPERTY = "Connection_Status"


class CancellationReason(str, Enum):
    ERROR = "Error"
    END_OF_STREAM = "EndOfStream"


class CancellationErrorCode(str, Enum):
    NO_ERROR = "NoError"
    AUTHENTICATION_FAILURE = "AuthenticationFailure"
    BAD_REQUEST = "BadRequest"
    TOO_MANY_REQUESTS = "TooManyRequests"
    FORBIDDEN = "Forbidden"
    CONNECTION_FAILURE = "ConnectionFailure"
    SERVICE_TIMEOUT = "ServiceTimeout"
    SERVICE_ERROR = "ServiceError"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    RUNTIME_ERROR = "RuntimeError"


TRANSIENT_ERROR_CODES = frozenset({
    CancellationErrorCode.CONNECTION_FAILURE,
    CancellationErrorCode.SERVICE_TIMEOUT,
    CancellationErrorCode.SERVICE_UNAVAILABLE,
    CancellationErrorCode.TOO_MANY_REQUESTS,
})


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    confidence: Optional[float] = None
    is_final: bool = True


@dataclass(frozen=True)
class CancellationDetails:
    reason: CancellationReason
    error_code: CancellationErrorCode = CancellationErrorCode.NO_ERROR
    error_details: str = ""

    @property
    def is_transient(self) -> bool:
        """End-of-stream and network-class errors are worth a restart; the rest are not."""
        if self.reason is CancellationReason.END_OF_STREAM:
            return True
        return self.error_code in TRANSIENT_ERROR_CODES


class PushAudioStream(ABC):
    """PCM sink feeding a recognizer. Survives recognizer restarts."""

    def __init__(self, audio_format: PCMFormat):
        self.format = audio_format

    @abstractmethod
    def write(self, pcm: bytes) -> None:
        """Queue PCM for the recognizer. Raises SinkClosedError once closed."""

    @abstractmethod
    def close(self) -> None:
        """Signal end of audio. Idempotent."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass


class Recognizer(ABC):
    """
    Continuous recognizer bound to one push-stream.

    Callbacks (assigned by the owner, may be None):
      recognizing(RecognitionResult)   partial hypothesis
      recognized(RecognitionResult)    final result
      canceled(CancellationDetails)    backend gave up on the stream
      session_stopped()                backend ended the session cleanly
    """

    def __init__(self) -> None:
        self.recognizing: Optional[Callable[[RecognitionResult], None]] = None
        self.recognized: Optional[Callable[[RecognitionResult], None]] = None
        self.canceled: Optional[Callable[[CancellationDetails], None]] = None
        self.session_stopped: Optional[Callable[[], None]] = None

    @abstractmethod
    async def start_continuous_recognition(self) -> None:
        pass

    @abstractmethod
    async def stop_continuous_recognition(self) -> None:
        pass

    @abstractmethod
    def get_property(self, name: str) -> Optional[str]:
        """Pollable backend properties, e.g. ``Connection_Status``."""

    def clear_callbacks(self) -> None:
        self.recognizing = None
        self.recognized = None
        self.canceled = None
        self.session_stopped = None

    def _fire(self, name: str, *args) -> None:
        callback = getattr(self, name, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.error("Recognizer callback failed", callback=name, exc_info=True)


class RecognizerFactory(ABC):
    @abstractmethod
    def create_push_stream(self, sample_rate: int, bits_per_sample: int, channel_count: int) -> PushAudioStream:
        pass

    @abstractmethod
    def create_recognizer(self, push_stream: PushAudioStream, user_id: str) -> Recognizer:
        pass
