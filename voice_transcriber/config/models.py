"""
Configuration models for the voice transcription service.

Every timeout and threshold the pipeline uses is declared here and validated
with Pydantic v2; nothing downstream hardcodes a timing constant.
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator


class VADConfig(BaseModel):
    """Hysteresis voice-activity detector tuning (levels in dBFS)."""
    voice_threshold: float = Field(default=-45.0)
    # Must sit strictly below voice_threshold so the detector does not chatter
    voice_release_threshold: float = Field(default=-55.0)
    silence_threshold: float = Field(default=-65.0)
    min_voice_duration_ms: float = Field(default=250.0, ge=0)
    silence_duration_ms: float = Field(default=500.0, ge=0)
    # 0 reports every level sample while speaking
    activity_report_interval_ms: float = Field(default=100.0, ge=0)
    silence_warning_ms: float = Field(default=20000.0, ge=0)

    @model_validator(mode="after")
    def _check_threshold_order(self):
        if not self.voice_release_threshold < self.voice_threshold:
            raise ValueError(
                f"voice_release_threshold ({self.voice_release_threshold}) must be below "
                f"voice_threshold ({self.voice_threshold})"
            )
        if self.silence_threshold > self.voice_release_threshold:
            raise ValueError(
                f"silence_threshold ({self.silence_threshold}) must not exceed "
                f"voice_release_threshold ({self.voice_release_threshold})"
            )
        return self


class AudioConfig(BaseModel):
    """Source frame format and the transcode target the recognizer expects."""
    source_encoding: str = Field(default="opus")  # opus | pcm16 | ulaw | alaw
    source_sample_rate: int = Field(default=48000, gt=0)
    source_channel_count: int = Field(default=2, ge=1, le=2)
    target_sample_rate: int = Field(default=16000, gt=0)
    target_channel_count: int = Field(default=1, ge=1, le=2)
    highpass_enabled: bool = Field(default=True)
    highpass_coefficient: float = Field(default=0.995, gt=0, lt=1)
    gain: float = Field(default=2.0, gt=0)
    normalizer_target_rms: int = Field(default=0, ge=0)  # 0 disables make-up gain
    normalizer_max_gain_db: float = Field(default=9.0, ge=0)
    initial_audio_timeout_ms: float = Field(default=5000.0, ge=0)


class RecognitionConfig(BaseModel):
    restart_delay_ms: float = Field(default=2000.0, ge=0)
    max_restart_delay_ms: float = Field(default=30000.0, ge=0)
    max_consecutive_restart_failures: int = Field(default=5, ge=1)
    recognition_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    status_poll_interval_ms: float = Field(default=1000.0, gt=0)
    unknown_status_poll_limit: int = Field(default=5, ge=1)
    start_timeout_ms: float = Field(default=10000.0, gt=0)
    stop_timeout_ms: float = Field(default=5000.0, gt=0)
    restart_on_silence_warning: bool = Field(default=True)


class SessionConfig(BaseModel):
    idle_session_timeout_ms: float = Field(default=300000.0, gt=0)
    sweep_interval_ms: float = Field(default=30000.0, gt=0)
    teardown_timeout_ms: float = Field(default=30000.0, gt=0)


class ConnectionConfig(BaseModel):
    ready_timeout_ms: float = Field(default=30000.0, gt=0)


class DeepgramConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = Field(default="wss://api.deepgram.com")
    model: str = Field(default="nova-2")
    language: str = Field(default="en-US")
    interim_results: bool = Field(default=True)
    punctuate: bool = Field(default=True)
    smart_format: bool = Field(default=True)
    keepalive_interval_sec: float = Field(default=5.0, gt=0)
    push_stream_max_chunks: int = Field(default=500, ge=1)
    connect_timeout_sec: float = Field(default=10.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical
    format: str = Field(default="json")  # json|console
    to_file: bool = Field(default=False)
    file_path: str = Field(default="voice-transcriber.log")


class AppConfig(BaseModel):
    vad: VADConfig = Field(default_factory=VADConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
