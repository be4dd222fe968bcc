"""
Voice-channel transport boundary.

The service never talks to a chat platform directly. It is handed a
VoiceConnector that can join a channel and returns a VoiceConnection, which
in turn hands out one frame subscription per user. Platform adapters (a
discord.py voice client, a test double) implement these two classes.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from ..errors import ConnectionTimeoutError
from ..logging_config import get_logger

logger = get_logger(__name__)

# A frame subscription is any async iterator of compressed frames. If it also
# has an ``aclose`` coroutine, the pipeline calls it on detach.
FrameSource = AsyncIterator[bytes]

ConnectionHandler = Callable[[], Any]


@dataclass(frozen=True)
class VoiceChannelRef:
    """Identifies the channel to join."""
    channel_id: str
    guild_id: Optional[str] = None


class VoiceConnection(ABC):
    """
    A joined voice channel.

    Implementations must invoke the registered disconnect/destroy handlers
    when the platform reports those transitions. Handlers may be plain
    callables or return awaitables.
    """

    channel_id: Optional[str] = None
    guild_id: Optional[str] = None

    @abstractmethod
    async def wait_until_ready(self) -> None:
        """Return once the connection can carry audio."""

    @abstractmethod
    def subscribe(self, user_id: str, *, end_behavior: str = "manual", frame_type: str = "opus") -> FrameSource:
        """Open a per-user frame subscription."""

    @abstractmethod
    def on_disconnect(self, handler: ConnectionHandler) -> None:
        pass

    @abstractmethod
    def on_destroy(self, handler: ConnectionHandler) -> None:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Leave the channel and release the platform handle. Must be idempotent."""

    @property
    @abstractmethod
    def is_destroyed(self) -> bool:
        pass


class VoiceConnector(ABC):
    @abstractmethod
    async def join(self, channel: VoiceChannelRef) -> VoiceConnection:
        """Start joining ``channel``; the result may not be ready yet."""


async def join_voice_channel(
    connector: VoiceConnector,
    channel: VoiceChannelRef,
    ready_timeout_ms: float,
    *,
    user_id: Optional[str] = None,
) -> VoiceConnection:
    """
    Join a channel and wait for the connection to become ready.

    A connection that never becomes ready is destroyed before
    ConnectionTimeoutError is raised, so no half-open handle is left behind.
    """
    connection = await connector.join(channel)
    try:
        await asyncio.wait_for(connection.wait_until_ready(), timeout=ready_timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        logger.warning(
            "Voice connection not ready in time",
            channel_id=channel.channel_id,
            guild_id=channel.guild_id,
            timeout_ms=ready_timeout_ms,
        )
        await _destroy_quietly(connection)
        raise ConnectionTimeoutError(
            f"Voice connection to {channel.channel_id} not ready after {ready_timeout_ms:.0f} ms",
            user_id=user_id,
        ) from exc
    except (Exception, asyncio.CancelledError):
        await _destroy_quietly(connection)
        raise

    logger.info("Voice connection ready", channel_id=channel.channel_id, guild_id=channel.guild_id)
    return connection


async def _destroy_quietly(connection: VoiceConnection) -> None:
    try:
        if not connection.is_destroyed:
            await connection.destroy()
    except Exception as exc:
        logger.warning("Failed to destroy half-open voice connection", error=str(exc), exc_info=True)
