"""Audio stages: frame decode, resample/filter, level metering and voice activity detection."""

from .codec import FrameCodec, FrameDecoder, G711Codec, OpusCodec, PCM16Codec, create_codec
from .levels import MIN_DB, AudioLevelMeter, rms_to_dbfs
from .resampler import ResampleFilterStage, apply_normalizer
from .vad import VADPhase, VoiceActivityDetector, VoiceActivityState

__all__ = [
    "FrameCodec",
    "FrameDecoder",
    "G711Codec",
    "OpusCodec",
    "PCM16Codec",
    "create_codec",
    "MIN_DB",
    "AudioLevelMeter",
    "rms_to_dbfs",
    "ResampleFilterStage",
    "apply_normalizer",
    "VADPhase",
    "VoiceActivityDetector",
    "VoiceActivityState",
]
