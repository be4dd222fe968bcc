from .models import ConnectionStatus, LevelSample, PCMFormat, Session, SessionState

__all__ = [
    "ConnectionStatus",
    "LevelSample",
    "PCMFormat",
    "Session",
    "SessionState",
]
