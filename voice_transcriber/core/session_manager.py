"""
Session registry and ordered teardown.

SessionManager is the only place that holds per-user resources. Teardown
always runs the same steps in the same order:

    1. stop the recognition session
    2. detach the audio pipeline
    3. close the push-stream
    4. release the voice connection
    5. drop the record and report it cleaned

A failing step is logged as ResourceCleanupError and the next step still
runs. A watchdog bounds the whole sequence; past the bound the record is
removed anyway so the user can start listening again.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter, Gauge

from ..config import SessionConfig
from ..errors import ResourceCleanupError, SessionConflictError
from ..logging_config import bind_user_context, get_logger
from .models import Session, SessionState

logger = get_logger(__name__)

_ACTIVE_SESSIONS = Gauge(
    "voice_transcriber_active_sessions",
    "Listening sessions currently registered",
)
_IDLE_TIMEOUTS = Counter(
    "voice_transcriber_idle_timeouts_total",
    "Sessions cleaned up by the idle sweep",
)
_FORCED_TEARDOWNS = Counter(
    "voice_transcriber_forced_teardowns_total",
    "Sessions force-removed after the teardown watchdog expired",
)
_CLEANUP_STEP_FAILURES = Counter(
    "voice_transcriber_cleanup_step_failures_total",
    "Teardown steps that raised",
    labelnames=("step",),
)

SessionCleanedHandler = Callable[[Session, bool], None]
SessionTimeoutHandler = Callable[[Session, float], None]


class SessionManager:
    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        on_session_cleaned: Optional[SessionCleanedHandler] = None,
        on_session_timeout: Optional[SessionTimeoutHandler] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SessionConfig()
        self._on_session_cleaned = on_session_cleaned
        self._on_session_timeout = on_session_timeout
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._cleanups: Dict[str, Tuple[asyncio.Task, Session]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    # -- registry --------------------------------------------------------------

    def add_session(self, session: Session) -> None:
        """Register ``session``. Raises SessionConflictError if the user already has one."""
        if session.user_id in self._sessions:
            raise SessionConflictError(
                f"User {session.user_id} already has an active session",
                user_id=session.user_id,
            )
        session.created_at = session.last_activity = self._clock()
        self._sessions[session.user_id] = session
        _ACTIVE_SESSIONS.set(len(self._sessions))
        logger.info(
            "Session registered",
            user_id=session.user_id,
            channel_id=session.channel_id,
            guild_id=session.guild_id,
            active_sessions=len(self._sessions),
        )

    def get_session(self, user_id: str) -> Optional[Session]:
        return self._sessions.get(user_id)

    def is_user_in_session(self, user_id: str) -> bool:
        return user_id in self._sessions

    def update_activity(self, user_id: str) -> None:
        session = self._sessions.get(user_id)
        if session is not None:
            session.last_activity = self._clock()

    def active_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    # -- teardown --------------------------------------------------------------

    async def cleanup_session(self, user_id: str, *, reason: str = "stop") -> bool:
        """
        Tear down the user's session. Returns False if there was nothing to clean.

        Concurrent calls for the same user share one teardown. Each caller
        waits at most ``teardown_timeout_ms``; on expiry the record is
        force-removed while the teardown keeps running in the background.
        """
        entry = self._cleanups.get(user_id)
        if entry is None:
            session = self._sessions.get(user_id)
            if session is None:
                return False
            session.state = SessionState.CLEANING
            task = asyncio.create_task(self._run_cleanup(session, reason), name=f"session-cleanup-{user_id}")
            entry = (task, session)
            self._cleanups[user_id] = entry
            task.add_done_callback(lambda t, uid=user_id: self._cleanup_finished(uid, t))
        task, session = entry

        timeout = self.config.teardown_timeout_ms / 1000.0
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task not in done:
            self._force_remove(session, task)
        return True

    async def teardown_resources(self, session: Session) -> List[ResourceCleanupError]:
        """Run the teardown steps for ``session`` without touching the registry.

        Also used to roll back a session that never got registered.
        """
        failures: List[ResourceCleanupError] = []
        steps: Tuple[Tuple[str, Callable[[Session], Awaitable[None]]], ...] = (
            ("stop_recognition", self._stop_recognition),
            ("detach_pipeline", self._detach_pipeline),
            ("close_push_stream", self._close_push_stream),
            ("release_connection", self._release_connection),
        )
        for step, action in steps:
            try:
                await action(session)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = ResourceCleanupError(f"{step} failed: {exc}", user_id=session.user_id, step=step)
                error.__cause__ = exc
                failures.append(error)
                _CLEANUP_STEP_FAILURES.labels(step).inc()
                logger.warning(
                    "Teardown step failed; continuing",
                    user_id=session.user_id,
                    step=step,
                    error=str(exc),
                    exc_info=True,
                )
        return failures

    async def _run_cleanup(self, session: Session, reason: str) -> None:
        bind_user_context(session.user_id)
        logger.info("Cleaning up session", user_id=session.user_id, reason=reason)
        started = self._clock()
        failures = await self.teardown_resources(session)
        if session.state is SessionState.CLOSED:
            # Watchdog already removed the record
            logger.info("Late teardown finished", user_id=session.user_id, failed_steps=len(failures))
            return
        self._remove(session)
        logger.info(
            "Session cleaned up",
            user_id=session.user_id,
            reason=reason,
            failed_steps=[f.step for f in failures],
            duration_ms=round((self._clock() - started) * 1000.0, 1),
            session_age_ms=round((self._clock() - session.created_at) * 1000.0, 1),
        )
        self._notify_cleaned(session, forced=False)

    def _force_remove(self, session: Session, task: asyncio.Task) -> None:
        if session.state is SessionState.CLOSED:
            return
        _FORCED_TEARDOWNS.inc()
        logger.warning(
            "Teardown exceeded watchdog; force-removing session",
            user_id=session.user_id,
            timeout_ms=self.config.teardown_timeout_ms,
        )
        self._remove(session)
        entry = self._cleanups.get(session.user_id)
        if entry is not None and entry[0] is task:
            del self._cleanups[session.user_id]
        self._notify_cleaned(session, forced=True)

    def _remove(self, session: Session) -> None:
        session.state = SessionState.CLOSED
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]
        _ACTIVE_SESSIONS.set(len(self._sessions))

    def _cleanup_finished(self, user_id: str, task: asyncio.Task) -> None:
        entry = self._cleanups.get(user_id)
        if entry is not None and entry[0] is task:
            del self._cleanups[user_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session cleanup crashed", user_id=user_id, error=str(task.exception()))

    def _notify_cleaned(self, session: Session, forced: bool) -> None:
        if not self._on_session_cleaned:
            return
        try:
            self._on_session_cleaned(session, forced)
        except Exception:
            logger.error("Session cleaned handler failed", user_id=session.user_id, exc_info=True)

    async def _stop_recognition(self, session: Session) -> None:
        if session.recognition is not None:
            await session.recognition.stop()

    async def _detach_pipeline(self, session: Session) -> None:
        if session.pipeline is not None and session.pipeline_handle is not None:
            await session.pipeline.detach(session.pipeline_handle)

    async def _close_push_stream(self, session: Session) -> None:
        recognition = session.recognition
        if recognition is not None and recognition.push_stream is not None:
            recognition.push_stream.close()

    async def _release_connection(self, session: Session) -> None:
        connection = session.connection
        if connection is None or connection.is_destroyed:
            return
        # Several users in one guild can share a connection
        for other in self._sessions.values():
            if (
                other is not session
                and other.connection is connection
                and other.state in (SessionState.STARTING, SessionState.ACTIVE)
            ):
                logger.debug("Voice connection still in use; keeping it", user_id=session.user_id, other_user_id=other.user_id)
                return
        await connection.destroy()

    # -- idle sweep ------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic idle sweep. Must be called from the event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="session-idle-sweep")

    async def sweep(self) -> List[str]:
        """Clean up every session idle for longer than ``idle_session_timeout_ms``."""
        now = self._clock()
        timeout_s = self.config.idle_session_timeout_ms / 1000.0
        expired = [
            s for s in self._sessions.values()
            if s.state is not SessionState.CLEANING and now - s.last_activity > timeout_s
        ]
        for session in expired:
            idle_ms = (now - session.last_activity) * 1000.0
            _IDLE_TIMEOUTS.inc()
            logger.info("Session idle timeout", user_id=session.user_id, idle_ms=round(idle_ms))
            if self._on_session_timeout:
                try:
                    self._on_session_timeout(session, idle_ms)
                except Exception:
                    logger.error("Session timeout handler failed", user_id=session.user_id, exc_info=True)
        if expired:
            await asyncio.gather(
                *(self.cleanup_session(s.user_id, reason="idle_timeout") for s in expired)
            )
        return [s.user_id for s in expired]

    async def _sweep_loop(self) -> None:
        interval = self.config.sweep_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Idle sweep failed", error=str(exc), exc_info=True)

    async def close(self) -> None:
        """Stop the sweep and tear down every session."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        user_ids = list(self._sessions.keys())
        if user_ids:
            await asyncio.gather(*(self.cleanup_session(uid, reason="shutdown") for uid in user_ids))
