"""
VoiceService facade.

Composes the voice connection, audio pipeline, recognition session and
session registry for each listening user, and is the single place where
cross-component callbacks are wired. External code registers listeners for
typed events (``service.on(MessageReceived, handler)``) and calls
``start_listening`` / ``stop_listening``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set, Type

from .audio import create_codec
from .config import AppConfig
from .core.events import (
    DetectorEvent,
    EventListener,
    ListeningStop,
    MessageReceived,
    RecognitionError,
    ServiceEvent,
    SessionTimeout,
    SilenceDetected,
    SilenceWarning,
    Transcript,
    VoiceActivity,
    VoiceEnd,
    VoiceError,
    VoiceOngoing,
    VoiceStart,
)
from .core.models import PCMFormat, Session, SessionState
from .core.pipeline import AudioPipeline
from .core.session_manager import SessionManager
from .core.transport import VoiceChannelRef, VoiceConnection, VoiceConnector, join_voice_channel
from .errors import ListeningCancelledError, MalformedAudioChunk, SessionConflictError
from .logging_config import bind_user_context, get_logger
from .recognition import DeepgramRecognizerFactory, RecognitionSession, RecognizerFactory

logger = get_logger(__name__)


class VoiceService:
    def __init__(
        self,
        config: AppConfig,
        connector: VoiceConnector,
        recognizer_factory: Optional[RecognizerFactory] = None,
        *,
        codec_factory=create_codec,
    ):
        self.config = config
        self.connector = connector
        self.recognizer_factory = recognizer_factory or DeepgramRecognizerFactory(config.deepgram)
        self._codec_factory = codec_factory
        self.sessions = SessionManager(
            config.session,
            on_session_cleaned=self._on_session_cleaned,
            on_session_timeout=self._on_session_timeout,
        )
        self._listeners: Dict[type, List[EventListener]] = defaultdict(list)
        self._any_listeners: List[EventListener] = []
        self._partial_listeners: List[Callable[[Transcript], None]] = []
        self._starting: Set[str] = set()
        self._stop_requested: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

    # -- listeners -------------------------------------------------------------

    def on(self, event_type: Type[ServiceEvent], listener: EventListener) -> None:
        self._listeners[event_type].append(listener)

    def off(self, event_type: Type[ServiceEvent], listener: EventListener) -> None:
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            pass

    def on_any(self, listener: EventListener) -> None:
        self._any_listeners.append(listener)

    def on_partial_transcript(self, listener: Callable[[Transcript], None]) -> None:
        """Interim hypotheses; never surfaced as MessageReceived."""
        self._partial_listeners.append(listener)

    def _emit(self, event: ServiceEvent) -> None:
        for listener in list(self._listeners.get(type(event), ())) + list(self._any_listeners):
            try:
                listener(event)
            except Exception:
                logger.error("Event listener failed", event_kind=event.kind, user_id=event.user_id, exc_info=True)

    # -- public API ------------------------------------------------------------

    async def start_listening(self, channel: VoiceChannelRef, user_id: str) -> VoiceConnection:
        """
        Join ``channel`` and start transcribing ``user_id``.

        Raises:
            SessionConflictError: the user is already being listened to
            ListeningCancelledError: stop_listening was called before setup finished
            ConnectionTimeoutError: the voice connection never became ready
            FatalRecognitionError: the recognizer could not be started

        Anything created before a failure is torn down before the error propagates.
        """
        if self.sessions.is_user_in_session(user_id) or user_id in self._starting:
            raise SessionConflictError(f"User {user_id} is already being listened to", user_id=user_id)

        self._starting.add(user_id)
        bind_user_context(user_id)
        session = Session(user_id=user_id, channel_id=channel.channel_id, guild_id=channel.guild_id)
        try:
            session.connection = await join_voice_channel(
                self.connector,
                channel,
                self.config.connection.ready_timeout_ms,
                user_id=user_id,
            )
            self._check_stop_requested(user_id)
            session.recognition = self._build_recognition(user_id)
            await session.recognition.start()
            self._check_stop_requested(user_id)
            session.pipeline = self._build_pipeline(session.recognition.push_stream)
            source = session.connection.subscribe(
                user_id,
                end_behavior="manual",
                frame_type=self.config.audio.source_encoding,
            )
            session.pipeline_handle = session.pipeline.attach(source, user_id)
            self.sessions.add_session(session)
            session.state = SessionState.ACTIVE
        except (Exception, asyncio.CancelledError) as exc:
            logger.error(
                "Failed to start listening; rolling back",
                user_id=user_id,
                channel_id=channel.channel_id,
                error=str(exc) or type(exc).__name__,
            )
            await self.sessions.teardown_resources(session)
            session.state = SessionState.CLOSED
            raise
        finally:
            self._starting.discard(user_id)
            self._stop_requested.discard(user_id)

        self._wire_connection(session)
        self.sessions.start()
        logger.info("Listening started", user_id=user_id, channel_id=channel.channel_id, guild_id=channel.guild_id)
        return session.connection

    async def stop_listening(self, user_id: str) -> None:
        """Stop listening to ``user_id``. A no-op when there is no session."""
        if user_id in self._starting and not self.sessions.is_user_in_session(user_id):
            # start_listening rolls back at its next checkpoint
            self._stop_requested.add(user_id)
            logger.info("Stop requested while listening is starting", user_id=user_id)
            return
        cleaned = await self.sessions.cleanup_session(user_id, reason="stop")
        if not cleaned:
            logger.debug("stop_listening: no session", user_id=user_id)

    def _check_stop_requested(self, user_id: str) -> None:
        if user_id in self._stop_requested:
            raise ListeningCancelledError(
                f"Listening to {user_id} was stopped during setup", user_id=user_id
            )

    def restart_recognition(self, user_id: str) -> Optional[asyncio.Task]:
        """Ask the user's recognizer to restart; joins a restart already in flight."""
        session = self.sessions.get_session(user_id)
        if session is None or session.recognition is None:
            return None
        return session.recognition.request_restart("manual")

    def find_session_by_channel(self, channel_id: str) -> Optional[Session]:
        for session in self.sessions.active_sessions():
            if session.channel_id == channel_id:
                return session
        return None

    def active_user_ids(self) -> List[str]:
        return [s.user_id for s in self.sessions.active_sessions()]

    async def shutdown(self) -> None:
        logger.info("Voice service shutting down", active_sessions=len(self.sessions))
        await self.sessions.close()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -- construction ----------------------------------------------------------

    def _build_recognition(self, user_id: str) -> RecognitionSession:
        audio = self.config.audio
        return RecognitionSession(
            user_id,
            self.recognizer_factory,
            self.config.recognition,
            PCMFormat(audio.target_sample_rate, audio.target_channel_count),
            on_transcript=self._on_transcript,
            on_partial=self._on_partial,
            on_error=lambda error, fatal: self._on_recognition_error(user_id, error, fatal),
            on_activity=lambda: self.sessions.update_activity(user_id),
        )

    def _build_pipeline(self, sink) -> AudioPipeline:
        return AudioPipeline(
            self.config.audio,
            self.config.vad,
            sink,
            codec_factory=self._codec_factory,
            on_detector_event=self._on_detector_event,
            on_error=self._on_pipeline_error,
            on_activity=self.sessions.update_activity,
        )

    def _wire_connection(self, session: Session) -> None:
        connection = session.connection
        connection.on_disconnect(lambda: self._on_connection_lost(session, "disconnected"))
        connection.on_destroy(lambda: self._on_connection_lost(session, "destroyed"))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- callbacks -------------------------------------------------------------

    def _on_connection_lost(self, session: Session, reason: str) -> None:
        if self.sessions.get_session(session.user_id) is not session or session.state is not SessionState.ACTIVE:
            return
        logger.warning("Voice connection lost; stopping session", user_id=session.user_id, reason=reason)
        self._spawn(self.stop_listening(session.user_id))

    def _on_detector_event(self, event: DetectorEvent) -> None:
        self.sessions.update_activity(event.user_id)
        if isinstance(event, VoiceStart):
            self._emit(VoiceActivity(event.user_id, event.level, "start"))
        elif isinstance(event, VoiceOngoing):
            self._emit(VoiceActivity(event.user_id, event.level, "ongoing", event.duration_ms))
        elif isinstance(event, VoiceEnd):
            self._emit(VoiceActivity(event.user_id, event.level, "end", event.duration_ms))
        elif isinstance(event, SilenceDetected):
            logger.warning("Extended silence detected", user_id=event.user_id, duration_ms=event.duration_ms)
            self._emit(SilenceWarning(event.user_id, event.duration_ms))
            if self.config.recognition.restart_on_silence_warning:
                session = self.sessions.get_session(event.user_id)
                if session is not None and session.recognition is not None:
                    session.recognition.request_restart("silence")

    def _on_pipeline_error(self, user_id: str, error: BaseException) -> None:
        if isinstance(error, MalformedAudioChunk):
            return
        self._emit(VoiceError(user_id, error))

    def _on_transcript(self, transcript: Transcript) -> None:
        self._emit(MessageReceived(
            transcript.user_id,
            transcript.text,
            transcript.confidence,
            timestamp=transcript.timestamp,
        ))

    def _on_partial(self, transcript: Transcript) -> None:
        for listener in list(self._partial_listeners):
            try:
                listener(transcript)
            except Exception:
                logger.error("Partial transcript listener failed", user_id=transcript.user_id, exc_info=True)

    def _on_recognition_error(self, user_id: str, error: BaseException, fatal: bool) -> None:
        self._emit(RecognitionError(user_id, error, fatal))
        if fatal and self.sessions.is_user_in_session(user_id):
            self._spawn(self.stop_listening(user_id))

    def _on_session_cleaned(self, session: Session, forced: bool) -> None:
        self._emit(ListeningStop(session.user_id, forced=forced))

    def _on_session_timeout(self, session: Session, idle_ms: float) -> None:
        self._emit(SessionTimeout(session.user_id, idle_ms))
