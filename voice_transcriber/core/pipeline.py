"""
Per-user audio pipeline.

One task per attached user drives every frame through
decode -> resample/filter -> level -> VAD -> sink, strictly in arrival order.
A frame that fails to decode or has a broken PCM layout is dropped and the
loop moves on; only a closed sink (or an unexpected bug) ends the run early.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..audio import AudioLevelMeter, FrameCodec, FrameDecoder, ResampleFilterStage, VoiceActivityDetector, create_codec
from ..config import AudioConfig, VADConfig
from ..errors import MalformedAudioChunk, SinkClosedError
from ..logging_config import bind_user_context, get_logger
from .events import DetectorEvent, SilenceDetected
from .models import PCMFormat
from .transport import FrameSource

logger = get_logger(__name__)

DetectorEventHandler = Callable[[DetectorEvent], None]
ErrorHandler = Callable[[str, BaseException], None]
ActivityHandler = Callable[[str], None]


@dataclass
class PipelineHandle:
    """Live attachment of one frame source; returned by AudioPipeline.attach."""
    user_id: str
    source: Any
    decoder: FrameDecoder
    resampler: ResampleFilterStage
    meter: AudioLevelMeter
    vad: VoiceActivityDetector
    task: Optional[asyncio.Task] = None
    detached: bool = False
    frames_received: int = 0
    chunks_forwarded: int = 0
    audio_forwarded_ms: float = 0.0
    started_at_ms: float = 0.0
    first_frame_at_ms: Optional[float] = None
    watchdog_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return not self.detached and self.task is not None and not self.task.done()


class AudioPipeline:
    def __init__(
        self,
        audio_config: AudioConfig,
        vad_config: VADConfig,
        sink: Any,
        *,
        codec_factory: Callable[[str], FrameCodec] = create_codec,
        on_detector_event: Optional[DetectorEventHandler] = None,
        on_error: Optional[ErrorHandler] = None,
        on_activity: Optional[ActivityHandler] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            sink: object with ``write(pcm: bytes)``; usually the recognizer's
                push-stream. Must raise SinkClosedError once closed.
            codec_factory: builds the frame codec for ``audio_config.source_encoding``.
            clock: seconds, monotonic. VAD timestamps are derived from it.
        """
        self.audio_config = audio_config
        self.vad_config = vad_config
        self.sink = sink
        self._codec_factory = codec_factory
        self._on_detector_event = on_detector_event
        self._on_error = on_error
        self._on_activity = on_activity
        self._clock = clock
        self.source_format = PCMFormat(audio_config.source_sample_rate, audio_config.source_channel_count)
        self.target_format = PCMFormat(audio_config.target_sample_rate, audio_config.target_channel_count)

    def attach(self, frame_source: FrameSource, user_id: str) -> PipelineHandle:
        """Start consuming ``frame_source`` for ``user_id``. Must be called from the event loop."""
        handle = PipelineHandle(
            user_id=user_id,
            source=frame_source,
            decoder=FrameDecoder(self._codec_factory(self.audio_config.source_encoding), self.source_format),
            resampler=ResampleFilterStage.from_config(self.audio_config),
            meter=AudioLevelMeter(),
            vad=VoiceActivityDetector(user_id, self.vad_config, on_event=self._dispatch_detector_event),
            started_at_ms=self._now_ms(),
        )
        handle.task = asyncio.create_task(self._run(handle), name=f"audio-pipeline-{user_id}")
        if self.audio_config.initial_audio_timeout_ms > 0:
            handle.watchdog_task = asyncio.create_task(
                self._initial_audio_watchdog(handle), name=f"audio-watchdog-{user_id}"
            )
        logger.info(
            "Audio pipeline attached",
            user_id=user_id,
            source_encoding=self.audio_config.source_encoding,
            source_rate=self.source_format.sample_rate,
            target_rate=self.target_format.sample_rate,
        )
        return handle

    async def detach(self, handle: Optional[PipelineHandle]) -> None:
        """Stop forwarding for ``handle``. Safe to call repeatedly or mid-frame."""
        if handle is None or handle.detached:
            return
        handle.detached = True
        current = asyncio.current_task()
        for task in (handle.task, handle.watchdog_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        handle.vad.reset(self._now_ms())
        handle.resampler.reset()

        aclose = getattr(handle.source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as exc:
                logger.warning("Frame source close failed", user_id=handle.user_id, error=str(exc))

        logger.info(
            "Audio pipeline detached",
            user_id=handle.user_id,
            frames_received=handle.frames_received,
            chunks_forwarded=handle.chunks_forwarded,
            audio_forwarded_ms=round(handle.audio_forwarded_ms, 1),
            frames_dropped=handle.decoder.dropped_frames,
        )

    async def _run(self, handle: PipelineHandle) -> None:
        bind_user_context(handle.user_id)
        try:
            async for frame in handle.source:
                if handle.detached:
                    break
                self._process_frame(handle, frame)
        except SinkClosedError as exc:
            if not handle.detached:
                logger.warning("Recognizer sink closed; audio pipeline stopping", user_id=handle.user_id)
                self._report_error(handle, exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Audio pipeline failed", user_id=handle.user_id, error=str(exc), exc_info=True)
            self._report_error(handle, exc)
        finally:
            if handle.watchdog_task is not None and not handle.watchdog_task.done():
                handle.watchdog_task.cancel()
            if not handle.detached:
                # Source ended on its own; close any open utterance
                handle.vad.reset(self._now_ms())
                logger.info("Frame source ended", user_id=handle.user_id, frames_received=handle.frames_received)

    def _process_frame(self, handle: PipelineHandle, frame: bytes) -> None:
        now_ms = self._now_ms()
        handle.frames_received += 1
        if handle.first_frame_at_ms is None:
            handle.first_frame_at_ms = now_ms
            logger.debug(
                "First audio frame received",
                user_id=handle.user_id,
                wait_ms=round(now_ms - handle.started_at_ms, 1),
            )

        try:
            pcm = handle.decoder.decode(frame)
            pcm = handle.resampler.process(pcm)
        except MalformedAudioChunk as exc:
            logger.debug("Dropping malformed audio chunk", user_id=handle.user_id, reason=str(exc))
            self._report_error(handle, exc)
            return
        if not pcm:
            return

        sample = handle.meter.measure(pcm, now_ms)
        handle.vad.process(sample.decibels, sample.timestamp)
        if handle.detached:
            return

        # Forward everything, speech or not; the recognizer does its own endpointing
        self.sink.write(pcm)
        handle.chunks_forwarded += 1
        handle.audio_forwarded_ms += self.target_format.duration_ms(pcm)
        if self._on_activity:
            self._on_activity(handle.user_id)

    async def _initial_audio_watchdog(self, handle: PipelineHandle) -> None:
        timeout_ms = self.audio_config.initial_audio_timeout_ms
        await asyncio.sleep(timeout_ms / 1000.0)
        if handle.detached or handle.first_frame_at_ms is not None:
            return
        logger.warning("No audio received from user", user_id=handle.user_id, timeout_ms=timeout_ms)
        self._dispatch_detector_event(
            SilenceDetected(user_id=handle.user_id, duration_ms=timeout_ms, timestamp=self._now_ms())
        )

    def _dispatch_detector_event(self, event: DetectorEvent) -> None:
        if not self._on_detector_event:
            return
        try:
            self._on_detector_event(event)
        except Exception:
            logger.error("Detector event handler failed", user_id=event.user_id, event_kind=event.kind, exc_info=True)

    def _report_error(self, handle: PipelineHandle, exc: BaseException) -> None:
        if not self._on_error:
            return
        try:
            self._on_error(handle.user_id, exc)
        except Exception:
            logger.error("Pipeline error handler failed", user_id=handle.user_id, exc_info=True)

    def _now_ms(self) -> float:
        return self._clock() * 1000.0
