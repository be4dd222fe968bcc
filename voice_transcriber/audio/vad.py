"""
Hysteresis voice-activity detector.

Consumes one user's level stream and moves through four phases:

    SILENT --(level >= voice_threshold)--> RISING_EDGE
    RISING_EDGE --(held >= min_voice_duration)--> SPEAKING      emits VoiceStart
    RISING_EDGE --(level drops before that)--> SILENT           (debounced, no event)
    SPEAKING --(level < voice_release_threshold)--> FALLING_EDGE
    FALLING_EDGE --(below silence_threshold >= silence_duration)--> SILENT   emits VoiceEnd
    FALLING_EDGE --(level > voice_release_threshold)--> SPEAKING (short pause, no event)

While SPEAKING a VoiceOngoing is reported every ``activity_report_interval_ms``.
When the user has been out of speech for ``silence_warning_ms`` a single
SilenceDetected is emitted per silent stretch; it does not change phase.

Timestamps are milliseconds on whatever clock the caller uses; the detector
only ever looks at differences between them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..config import VADConfig
from ..core.events import DetectorEvent, SilenceDetected, VoiceEnd, VoiceOngoing, VoiceStart
from ..logging_config import get_logger

logger = get_logger(__name__)


class VADPhase(str, Enum):
    SILENT = "silent"
    RISING_EDGE = "rising_edge"
    SPEAKING = "speaking"
    FALLING_EDGE = "falling_edge"


@dataclass
class VoiceActivityState:
    """Per-user detector state."""
    phase: VADPhase = VADPhase.SILENT
    above_voice_threshold_since: Optional[float] = None
    below_silence_threshold_since: Optional[float] = None
    speaking_since: Optional[float] = None
    silence_since: Optional[float] = None
    silence_warned: bool = False
    last_activity_report: Optional[float] = None
    last_level: Optional[float] = None

    @property
    def is_speaking(self) -> bool:
        return self.phase in (VADPhase.SPEAKING, VADPhase.FALLING_EDGE)


class VoiceActivityDetector:
    def __init__(
        self,
        user_id: str,
        config: Optional[VADConfig] = None,
        on_event: Optional[Callable[[DetectorEvent], None]] = None,
    ):
        self.user_id = user_id
        self.config = config or VADConfig()
        self._on_event = on_event
        self.state = VoiceActivityState()

    @property
    def is_speaking(self) -> bool:
        return self.state.is_speaking

    @property
    def phase(self) -> VADPhase:
        return self.state.phase

    def process(self, level: float, timestamp: float) -> List[DetectorEvent]:
        """Feed one level reading; returns the events it produced (also dispatched)."""
        cfg = self.config
        st = self.state
        events: List[DetectorEvent] = []
        if st.silence_since is None and not st.is_speaking:
            st.silence_since = timestamp

        if st.phase is VADPhase.SILENT:
            if level >= cfg.voice_threshold:
                st.phase = VADPhase.RISING_EDGE
                st.above_voice_threshold_since = timestamp

        elif st.phase is VADPhase.RISING_EDGE:
            if level < cfg.voice_threshold:
                # Brief spike: never long enough to count as speech
                st.phase = VADPhase.SILENT
                st.above_voice_threshold_since = None

        elif st.phase is VADPhase.SPEAKING:
            if level < cfg.voice_release_threshold:
                st.phase = VADPhase.FALLING_EDGE
                st.below_silence_threshold_since = None

        elif st.phase is VADPhase.FALLING_EDGE:
            if level > cfg.voice_release_threshold:
                st.phase = VADPhase.SPEAKING
                st.below_silence_threshold_since = None
                st.silence_since = None
                st.silence_warned = False

        # Duration checks run after the phase change so zero-length
        # durations take effect on the same sample.
        if st.phase is VADPhase.RISING_EDGE:
            if timestamp - st.above_voice_threshold_since >= cfg.min_voice_duration_ms:
                st.phase = VADPhase.SPEAKING
                st.speaking_since = st.above_voice_threshold_since
                st.above_voice_threshold_since = None
                st.silence_since = None
                st.silence_warned = False
                st.last_activity_report = timestamp
                events.append(VoiceStart(user_id=self.user_id, level=level, timestamp=timestamp))

        elif st.phase is VADPhase.SPEAKING:
            if (
                st.last_activity_report is None
                or timestamp - st.last_activity_report >= cfg.activity_report_interval_ms
            ) and not events:
                st.last_activity_report = timestamp
                events.append(VoiceOngoing(
                    user_id=self.user_id,
                    level=level,
                    duration_ms=timestamp - st.speaking_since,
                    timestamp=timestamp,
                ))

        elif st.phase is VADPhase.FALLING_EDGE:
            if level < cfg.silence_threshold:
                if st.below_silence_threshold_since is None:
                    st.below_silence_threshold_since = timestamp
                    st.silence_since = timestamp
                if timestamp - st.below_silence_threshold_since >= cfg.silence_duration_ms:
                    events.append(self._end_speech(level, st.below_silence_threshold_since, timestamp))
            else:
                # Between the silence and release thresholds: not yet a pause
                st.below_silence_threshold_since = None

        if (
            not st.is_speaking
            and cfg.silence_warning_ms > 0
            and not st.silence_warned
            and st.silence_since is not None
            and timestamp - st.silence_since >= cfg.silence_warning_ms
        ):
            st.silence_warned = True
            events.append(SilenceDetected(
                user_id=self.user_id,
                duration_ms=timestamp - st.silence_since,
                timestamp=timestamp,
            ))

        st.last_level = level
        self._dispatch(events)
        return events

    def reset(self, timestamp: Optional[float] = None) -> List[DetectorEvent]:
        """Drop all state; closes an open utterance with a VoiceEnd first."""
        events: List[DetectorEvent] = []
        st = self.state
        if st.is_speaking and timestamp is not None:
            level = st.last_level if st.last_level is not None else self.config.silence_threshold
            events.append(self._end_speech(level, timestamp, timestamp))
        self.state = VoiceActivityState()
        self._dispatch(events)
        return events

    def _end_speech(self, level: float, speech_ended_at: float, timestamp: float) -> VoiceEnd:
        st = self.state
        duration = 0.0
        if st.speaking_since is not None:
            duration = max(0.0, speech_ended_at - st.speaking_since)
        st.phase = VADPhase.SILENT
        st.speaking_since = None
        st.below_silence_threshold_since = None
        st.last_activity_report = None
        st.silence_since = speech_ended_at
        st.silence_warned = False
        return VoiceEnd(user_id=self.user_id, level=level, duration_ms=duration, timestamp=timestamp)

    def _dispatch(self, events: List[DetectorEvent]) -> None:
        if not self._on_event:
            return
        for event in events:
            try:
                self._on_event(event)
            except Exception:
                logger.error(
                    "VAD listener failed",
                    user_id=self.user_id,
                    event_kind=event.kind,
                    exc_info=True,
                )
