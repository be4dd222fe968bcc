"""
Typed event payloads.

Each event kind is a frozen dataclass with a fixed field set and a literal
``kind`` tag, so listeners can dispatch on ``event.kind`` (or with
``match``) instead of probing dicts for optional keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Literal, Optional, Union
import time


def _now() -> float:
    return time.time()


# Detector-level events (emitted by the VAD, forwarded by the pipeline) ----------


@dataclass(frozen=True)
class VoiceStart:
    user_id: str
    level: float
    timestamp: float
    kind: Literal["voice_start"] = "voice_start"


@dataclass(frozen=True)
class VoiceOngoing:
    user_id: str
    level: float
    duration_ms: float
    timestamp: float
    kind: Literal["voice_ongoing"] = "voice_ongoing"


@dataclass(frozen=True)
class VoiceEnd:
    user_id: str
    level: float
    duration_ms: float
    timestamp: float
    kind: Literal["voice_end"] = "voice_end"


@dataclass(frozen=True)
class SilenceDetected:
    user_id: str
    duration_ms: float
    timestamp: float
    kind: Literal["silence_detected"] = "silence_detected"


DetectorEvent = Union[VoiceStart, VoiceOngoing, VoiceEnd, SilenceDetected]


# Recognition-level events ------------------------------------------------------


@dataclass(frozen=True)
class Transcript:
    user_id: str
    text: str
    confidence: Optional[float]
    is_final: bool = True
    timestamp: float = field(default_factory=_now)


# Service-level events (re-emitted by VoiceService to external listeners) -------


@dataclass(frozen=True)
class MessageReceived:
    user_id: str
    text: str
    confidence: Optional[float]
    timestamp: float = field(default_factory=_now)
    kind: Literal["message_received"] = "message_received"


@dataclass(frozen=True)
class VoiceActivity:
    user_id: str
    level: float
    type: Literal["start", "ongoing", "end"]
    duration_ms: Optional[float] = None
    timestamp: float = field(default_factory=_now)
    kind: Literal["voice_activity"] = "voice_activity"


@dataclass(frozen=True)
class SilenceWarning:
    user_id: str
    duration_ms: float
    timestamp: float = field(default_factory=_now)
    kind: Literal["silence_warning"] = "silence_warning"


@dataclass(frozen=True)
class VoiceError:
    user_id: str
    error: BaseException
    timestamp: float = field(default_factory=_now)
    kind: Literal["voice_error"] = "voice_error"


@dataclass(frozen=True)
class RecognitionError:
    user_id: str
    error: BaseException
    fatal: bool
    timestamp: float = field(default_factory=_now)
    kind: Literal["recognition_error"] = "recognition_error"


@dataclass(frozen=True)
class SessionTimeout:
    user_id: str
    idle_ms: float
    timestamp: float = field(default_factory=_now)
    kind: Literal["session_timeout"] = "session_timeout"


@dataclass(frozen=True)
class ListeningStop:
    user_id: str
    forced: bool = False
    timestamp: float = field(default_factory=_now)
    kind: Literal["listening_stop"] = "listening_stop"


ServiceEvent = Union[
    MessageReceived,
    VoiceActivity,
    SilenceWarning,
    VoiceError,
    RecognitionError,
    SessionTimeout,
    ListeningStop,
]

EventListener = Callable[[ServiceEvent], None]
