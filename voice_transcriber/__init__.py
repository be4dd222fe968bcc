"""Real-time per-speaker voice capture and streaming transcription."""

from .config import AppConfig, load_config
from .core.events import (
    ListeningStop,
    MessageReceived,
    RecognitionError,
    SessionTimeout,
    SilenceWarning,
    Transcript,
    VoiceActivity,
    VoiceError,
)
from .core.transport import VoiceChannelRef, VoiceConnection, VoiceConnector
from .errors import (
    ConnectionTimeoutError,
    FatalRecognitionError,
    ListeningCancelledError,
    SessionConflictError,
    VoiceTranscriberError,
)
from .logging_config import configure_logging, configure_logging_from_config
from .service import VoiceService

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "load_config",
    "ListeningStop",
    "MessageReceived",
    "RecognitionError",
    "SessionTimeout",
    "SilenceWarning",
    "Transcript",
    "VoiceActivity",
    "VoiceError",
    "VoiceChannelRef",
    "VoiceConnection",
    "VoiceConnector",
    "ConnectionTimeoutError",
    "FatalRecognitionError",
    "ListeningCancelledError",
    "SessionConflictError",
    "VoiceTranscriberError",
    "VoiceService",
    "configure_logging",
    "configure_logging_from_config",
]
