"""
Per-user recognition session with restart/reconnect state machine.

    IDLE -> STARTING -> ACTIVE <-> RESTARTING
      \________\__________\___________\____> STOPPED (terminal)

Restart triggers while ACTIVE:
  - a recognizer ``canceled`` event with a transient cause
  - ``session_stopped`` from the backend
  - connection status polled as Disconnected, or Unknown for
    ``unknown_status_poll_limit`` consecutive polls
  - an explicit ``request_restart()`` from the owner

Only one restart task exists at a time; further requests while it runs
return that same task. Each cycle stops the old recognizer, waits the
backoff delay, then creates and starts a new one on the same push-stream.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Set

from prometheus_client import Counter

from ..config import RecognitionConfig
from ..core.events import Transcript
from ..core.models import ConnectionStatus, PCMFormat
from ..errors import FatalRecognitionError, InvalidStateError, TransientNetworkError
from ..logging_config import bind_user_context, get_logger
from .backend import (
    CONNECTION_STATUS_PROPERTY,
    CancellationDetails,
    PushAudioStream,
    RecognitionResult,
    Recognizer,
    RecognizerFactory,
)

logger = get_logger(__name__)

_RESTARTS = Counter(
    "voice_transcriber_recognizer_restarts_total",
    "Recognizer restart cycles started",
    labelnames=("trigger",),
)
_FATAL_ERRORS = Counter(
    "voice_transcriber_fatal_recognition_errors_total",
    "Recognition sessions ended by a fatal error",
)


class RecognitionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    RESTARTING = "restarting"
    STOPPED = "stopped"


_TRANSITIONS: Dict[RecognitionState, FrozenSet[RecognitionState]] = {
    RecognitionState.IDLE: frozenset({RecognitionState.STARTING, RecognitionState.STOPPED}),
    RecognitionState.STARTING: frozenset({RecognitionState.ACTIVE, RecognitionState.STOPPED}),
    RecognitionState.ACTIVE: frozenset({RecognitionState.RESTARTING, RecognitionState.STOPPED}),
    RecognitionState.RESTARTING: frozenset({RecognitionState.ACTIVE, RecognitionState.STOPPED}),
    RecognitionState.STOPPED: frozenset(),
}

TranscriptHandler = Callable[[Transcript], None]
ErrorHandler = Callable[[BaseException, bool], None]


class RecognitionSession:
    def __init__(
        self,
        user_id: str,
        factory: RecognizerFactory,
        config: RecognitionConfig,
        audio_format: PCMFormat,
        *,
        on_transcript: Optional[TranscriptHandler] = None,
        on_partial: Optional[TranscriptHandler] = None,
        on_error: Optional[ErrorHandler] = None,
        on_activity: Optional[Callable[[], None]] = None,
    ):
        self.user_id = user_id
        self.factory = factory
        self.config = config
        self.audio_format = audio_format
        self._on_transcript = on_transcript
        self._on_partial = on_partial
        self._on_error = on_error
        self._on_activity = on_activity

        self._state = RecognitionState.IDLE
        self.push_stream: Optional[PushAudioStream] = None
        self.recognizer: Optional[Recognizer] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._detached_stops: Set[asyncio.Task] = set()
        self.fatal_error: Optional[FatalRecognitionError] = None
        self._unknown_polls = 0
        self._active_since: Optional[float] = None
        self.consecutive_failures = 0
        self.restart_count = 0
        self.coalesced_restarts = 0

    # -- state -----------------------------------------------------------------

    @property
    def state(self) -> RecognitionState:
        return self._state

    @property
    def connection_status(self) -> ConnectionStatus:
        if self.recognizer is None:
            return ConnectionStatus.DISCONNECTED if self._state is RecognitionState.STOPPED else ConnectionStatus.UNKNOWN
        return self._poll_status(self.recognizer)

    @property
    def restart_in_flight(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def _transition(self, new_state: RecognitionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidStateError(
                f"Illegal recognition transition {self._state.value} -> {new_state.value}",
                user_id=self.user_id,
            )
        logger.debug(
            "Recognition state change",
            user_id=self.user_id,
            from_state=self._state.value,
            to_state=new_state.value,
        )
        self._state = new_state
        if new_state is RecognitionState.ACTIVE:
            self._active_since = time.monotonic()

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Create the push-stream and recognizer and start continuous recognition.

        Raises:
            FatalRecognitionError: the recognizer could not be started.
        """
        self._transition(RecognitionState.STARTING)
        bind_user_context(self.user_id)
        try:
            self.push_stream = self.factory.create_push_stream(
                self.audio_format.sample_rate,
                self.audio_format.sample_width * 8,
                self.audio_format.channels,
            )
            recognizer = self.recognizer = self._create_recognizer()
            await asyncio.wait_for(
                recognizer.start_continuous_recognition(),
                timeout=self.config.start_timeout_ms / 1000.0,
            )
        except (Exception, asyncio.CancelledError) as exc:
            logger.error("Failed to start recognition", user_id=self.user_id, error=str(exc))
            if self._state is not RecognitionState.STOPPED:
                self._transition(RecognitionState.STOPPED)
            recognizer, self.recognizer = self.recognizer, None
            await self._stop_recognizer(recognizer)
            if isinstance(exc, (FatalRecognitionError, asyncio.CancelledError)):
                raise
            if self.fatal_error is not None:
                raise self.fatal_error from exc
            raise FatalRecognitionError(
                f"Recognizer failed to start: {exc}",
                user_id=self.user_id,
                details=str(exc),
            ) from exc

        if self._state is RecognitionState.STOPPED:
            # A fatal cancel arrived while the recognizer was starting
            await self._stop_recognizer(recognizer)
            raise self.fatal_error or FatalRecognitionError("Recognition stopped while starting", user_id=self.user_id)
        self._transition(RecognitionState.ACTIVE)
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name=f"recognition-monitor-{self.user_id}")
        logger.info("Recognition started", user_id=self.user_id, sample_rate=self.audio_format.sample_rate)

    async def stop(self) -> None:
        """Stop recognition. Idempotent; leaves the push-stream open for its owner to close."""
        if self._state is RecognitionState.STOPPED:
            return
        self._transition(RecognitionState.STOPPED)
        self._cancel_background_tasks()
        recognizer, self.recognizer = self.recognizer, None
        await self._stop_recognizer(recognizer)
        logger.info("Recognition stopped", user_id=self.user_id, restarts=self.restart_count)

    def request_restart(self, trigger: str = "manual") -> Optional[asyncio.Task]:
        """Schedule a restart cycle, or join the one already in flight.

        Returns the restart task, or None when the session is not in a
        state that can restart.
        """
        if self._state is RecognitionState.STOPPED:
            return None
        if self.restart_in_flight:
            self.coalesced_restarts += 1
            logger.debug("Restart already in flight; coalescing", user_id=self.user_id, trigger=trigger)
            return self._restart_task
        if self._state is not RecognitionState.ACTIVE:
            logger.debug("Restart ignored", user_id=self.user_id, trigger=trigger, state=self._state.value)
            return None
        self._transition(RecognitionState.RESTARTING)
        _RESTARTS.labels(trigger).inc()
        logger.info(
            "Restarting recognizer",
            user_id=self.user_id,
            trigger=trigger,
            consecutive_failures=self.consecutive_failures,
        )
        self._restart_task = asyncio.create_task(self._restart_loop(), name=f"recognition-restart-{self.user_id}")
        return self._restart_task

    # -- restart machinery -----------------------------------------------------

    def _handle_transient(self, trigger: str, error: Optional[BaseException] = None) -> None:
        if self._state is RecognitionState.STOPPED or self.restart_in_flight:
            return
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.config.max_consecutive_restart_failures:
            self._fail(self._budget_exhausted(error))
            return
        self.request_restart(trigger)

    def _backoff_delay(self) -> float:
        exponent = max(0, self.consecutive_failures - 1)
        delay_ms = min(self.config.restart_delay_ms * (2 ** exponent), self.config.max_restart_delay_ms)
        return delay_ms / 1000.0

    async def _restart_loop(self) -> None:
        bind_user_context(self.user_id)
        while self._state is RecognitionState.RESTARTING:
            old, self.recognizer = self.recognizer, None
            await self._stop_recognizer(old)
            await asyncio.sleep(self._backoff_delay())
            if self._state is not RecognitionState.RESTARTING:
                return

            recognizer = None
            try:
                recognizer = self._create_recognizer()
                self.recognizer = recognizer
                await asyncio.wait_for(
                    recognizer.start_continuous_recognition(),
                    timeout=self.config.start_timeout_ms / 1000.0,
                )
            except asyncio.CancelledError:
                raise
            except FatalRecognitionError as exc:
                self._fail(exc)
                return
            except Exception as exc:
                self.consecutive_failures += 1
                logger.warning(
                    "Recognizer restart attempt failed",
                    user_id=self.user_id,
                    error=str(exc),
                    consecutive_failures=self.consecutive_failures,
                )
                if self.consecutive_failures >= self.config.max_consecutive_restart_failures:
                    self._fail(self._budget_exhausted(exc))
                    return
                continue

            if self._state is not RecognitionState.RESTARTING:
                # Stopped while the new recognizer was starting
                await self._stop_recognizer(recognizer)
                return
            self.restart_count += 1
            self._unknown_polls = 0
            self._transition(RecognitionState.ACTIVE)
            logger.info("Recognizer restarted", user_id=self.user_id, restarts=self.restart_count)
            return

    def _budget_exhausted(self, error: Optional[BaseException]) -> FatalRecognitionError:
        exc = FatalRecognitionError(
            f"Recognizer failed {self.consecutive_failures} consecutive times; giving up",
            user_id=self.user_id,
            error_code="RestartBudgetExhausted",
            details=str(error) if error else None,
        )
        if error is not None:
            exc.__cause__ = error
        return exc

    def _fail(self, error: FatalRecognitionError) -> None:
        """Move to STOPPED and report a fatal error exactly once."""
        if self._state is RecognitionState.STOPPED:
            return
        self.fatal_error = error
        self._transition(RecognitionState.STOPPED)
        self._cancel_background_tasks()
        recognizer, self.recognizer = self.recognizer, None
        if recognizer is not None:
            recognizer.clear_callbacks()
            task = asyncio.create_task(self._stop_recognizer(recognizer))
            self._detached_stops.add(task)
            task.add_done_callback(self._detached_stops.discard)
        _FATAL_ERRORS.inc()
        logger.error(
            "Fatal recognition error",
            user_id=self.user_id,
            error=str(error),
            error_code=error.error_code,
        )
        self._report_error(error, True)

    def _cancel_background_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._monitor_task, self._restart_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

    # -- recognizer wiring -----------------------------------------------------

    def _create_recognizer(self) -> Recognizer:
        recognizer = self.factory.create_recognizer(self.push_stream, self.user_id)
        recognizer.recognizing = lambda result: self._handle_recognizing(recognizer, result)
        recognizer.recognized = lambda result: self._handle_recognized(recognizer, result)
        recognizer.canceled = lambda details: self._handle_canceled(recognizer, details)
        recognizer.session_stopped = lambda: self._handle_session_stopped(recognizer)
        return recognizer

    async def _stop_recognizer(self, recognizer: Optional[Recognizer]) -> None:
        if recognizer is None:
            return
        recognizer.clear_callbacks()
        try:
            await asyncio.wait_for(
                recognizer.stop_continuous_recognition(),
                timeout=self.config.stop_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.warning("Recognizer stop timed out", user_id=self.user_id, timeout_ms=self.config.stop_timeout_ms)
        except Exception as exc:
            logger.warning("Recognizer stop failed", user_id=self.user_id, error=str(exc))

    def _handle_recognizing(self, recognizer: Recognizer, result: RecognitionResult) -> None:
        if recognizer is not self.recognizer or not result.text.strip():
            return
        self._touch()
        if self._on_partial:
            self._on_partial(Transcript(self.user_id, result.text, result.confidence, is_final=False))

    def _handle_recognized(self, recognizer: Recognizer, result: RecognitionResult) -> None:
        if recognizer is not self.recognizer:
            return
        text = result.text.strip()
        if not text:
            return
        self._touch()
        threshold = self.config.recognition_confidence_threshold
        if result.confidence is not None and result.confidence < threshold:
            logger.debug(
                "Dropping low-confidence result",
                user_id=self.user_id,
                confidence=result.confidence,
                threshold=threshold,
            )
            return
        # A usable result means the backend is healthy again
        self.consecutive_failures = 0
        logger.info("Speech recognized", user_id=self.user_id, text_preview=text[:50], confidence=result.confidence)
        if self._on_transcript:
            self._on_transcript(Transcript(self.user_id, text, result.confidence, is_final=True))

    def _handle_canceled(self, recognizer: Recognizer, details: CancellationDetails) -> None:
        if recognizer is not self.recognizer or self._state is RecognitionState.STOPPED:
            return
        if details.is_transient:
            logger.warning(
                "Recognition canceled; will restart",
                user_id=self.user_id,
                reason=details.reason.value,
                error_code=details.error_code.value,
                details=details.error_details,
            )
            error = TransientNetworkError(details.error_details or details.error_code.value, user_id=self.user_id)
            self._handle_transient("canceled", error)
            return
        self._fail(FatalRecognitionError(
            f"Recognition canceled: {details.error_code.value}",
            user_id=self.user_id,
            error_code=details.error_code.value,
            details=details.error_details,
        ))

    def _handle_session_stopped(self, recognizer: Recognizer) -> None:
        if recognizer is not self.recognizer or self._state is not RecognitionState.ACTIVE:
            return
        logger.info("Recognition session stopped by backend", user_id=self.user_id)
        self._handle_transient("session_stopped")

    # -- connection monitoring -------------------------------------------------

    async def _monitor_loop(self) -> None:
        bind_user_context(self.user_id)
        interval = self.config.status_poll_interval_ms / 1000.0
        while self._state in (RecognitionState.ACTIVE, RecognitionState.RESTARTING):
            await asyncio.sleep(interval)
            if self._state is not RecognitionState.ACTIVE or self.recognizer is None:
                self._unknown_polls = 0
                continue
            self._check_health()
            status = self._poll_status(self.recognizer)
            if status is ConnectionStatus.DISCONNECTED:
                self._unknown_polls = 0
                logger.warning("Recognizer reported disconnected", user_id=self.user_id)
                self._handle_transient(
                    "disconnected",
                    TransientNetworkError("connection status Disconnected", user_id=self.user_id),
                )
            elif status is ConnectionStatus.UNKNOWN:
                self._unknown_polls += 1
                if self._unknown_polls >= self.config.unknown_status_poll_limit:
                    logger.warning(
                        "Recognizer connection status unknown; forcing restart",
                        user_id=self.user_id,
                        polls=self._unknown_polls,
                    )
                    self._unknown_polls = 0
                    self._handle_transient(
                        "unknown_status",
                        TransientNetworkError("connection status stuck in Unknown", user_id=self.user_id),
                    )
            else:
                self._unknown_polls = 0

    def _check_health(self) -> None:
        # A recognizer that has stayed up long enough clears the failure streak
        if self.consecutive_failures and self._active_since is not None:
            if (time.monotonic() - self._active_since) * 1000.0 >= self.config.max_restart_delay_ms:
                self.consecutive_failures = 0

    def _poll_status(self, recognizer: Recognizer) -> ConnectionStatus:
        try:
            return ConnectionStatus.parse(recognizer.get_property(CONNECTION_STATUS_PROPERTY))
        except Exception as exc:
            logger.debug("Connection status poll failed", user_id=self.user_id, error=str(exc))
            return ConnectionStatus.UNKNOWN

    def _touch(self) -> None:
        if self._on_activity:
            try:
                self._on_activity()
            except Exception:
                logger.error("Activity handler failed", user_id=self.user_id, exc_info=True)

    def _report_error(self, error: BaseException, fatal: bool) -> None:
        if not self._on_error:
            return
        try:
            self._on_error(error, fatal)
        except Exception:
            logger.error("Recognition error handler failed", user_id=self.user_id, exc_info=True)
