"""
Core data models for the voice transcription service.

A Session is the single owning record for everything one listening user
holds: the voice connection, the audio pipeline handle and the recognition
session. Other components reach those handles only through SessionManager.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
import time

if TYPE_CHECKING:
    from ..recognition.session import RecognitionSession
    from .pipeline import AudioPipeline, PipelineHandle


class SessionState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    CLEANING = "cleaning"
    CLOSED = "closed"


class ConnectionStatus(str, Enum):
    """Recognition backend connection status as reported by status polls."""
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "ConnectionStatus":
        if isinstance(value, cls):
            return value
        for status in cls:
            if str(value).strip().lower() == status.value.lower():
                return status
        return cls.UNKNOWN


@dataclass
class LevelSample:
    """One level reading handed to the VAD; not retained."""
    decibels: float
    timestamp: float  # milliseconds on the pipeline clock


@dataclass
class PCMFormat:
    """Fixed for the lifetime of one pipeline instance."""
    sample_rate: int
    channels: int
    sample_width: int = 2

    @property
    def bytes_per_frame(self) -> int:
        return self.sample_width * self.channels

    def duration_ms(self, pcm: bytes) -> float:
        return 1000.0 * len(pcm) / float(self.bytes_per_frame * self.sample_rate)


@dataclass
class Session:
    """Complete set of live resources for one listening user."""
    user_id: str
    channel_id: Optional[str] = None
    guild_id: Optional[str] = None
    connection: Optional[Any] = None
    pipeline: Optional["AudioPipeline"] = None
    pipeline_handle: Optional["PipelineHandle"] = None
    recognition: Optional["RecognitionSession"] = None
    state: SessionState = SessionState.STARTING
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
