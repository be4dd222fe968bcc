"""
Resample/filter stage: native-rate PCM16 to the recognizer's target format.

Mirrors a speech-oriented filter graph: stereo to mono mixdown, a first-order
high-pass to remove DC offset and rumble, sample-rate conversion, fixed gain,
then optional RMS make-up gain bounded by ``max_gain_db``.

Resampler and filter state is carried across chunks, so one stage instance
must only ever see a single, ordered stream.
"""

from __future__ import annotations

import array
import audioop
from typing import List, Optional, Tuple

from ..config import AudioConfig
from ..core.models import PCMFormat
from ..errors import MalformedAudioChunk


def apply_normalizer(pcm_bytes: bytes, target_rms: int, max_gain_db: float) -> bytes:
    """Apply RMS-based make-up gain to PCM16 LE audio.

    Scales towards ``target_rms``, never attenuates, and caps the boost at
    ``max_gain_db``. audioop.mul clips to the int16 range.
    """
    if not pcm_bytes or target_rms <= 0:
        return pcm_bytes
    rms = audioop.rms(pcm_bytes, 2)
    if rms <= 0 or rms >= target_rms:
        return pcm_bytes
    max_gain = 10 ** (max_gain_db / 20.0)
    gain = min(float(target_rms) / float(rms), max_gain)
    if gain <= 1.0:
        return pcm_bytes
    return audioop.mul(pcm_bytes, 2, gain)


class ResampleFilterStage:
    def __init__(
        self,
        source: PCMFormat,
        target: PCMFormat,
        *,
        highpass_enabled: bool = True,
        highpass_coefficient: float = 0.995,
        gain: float = 1.0,
        normalizer_target_rms: int = 0,
        normalizer_max_gain_db: float = 9.0,
    ):
        if source.sample_width != 2 or target.sample_width != 2:
            raise ValueError("ResampleFilterStage only handles 16-bit PCM")
        if source.channels not in (1, 2) or target.channels not in (1, 2):
            raise ValueError("Only mono and stereo layouts are supported")
        self.source = source
        self.target = target
        self.highpass_enabled = highpass_enabled
        self.highpass_coefficient = highpass_coefficient
        self.gain = gain
        self.normalizer_target_rms = normalizer_target_rms
        self.normalizer_max_gain_db = normalizer_max_gain_db
        self._ratecv_state: Optional[Tuple] = None
        # (prev_x, prev_y) per output channel
        self._hp_state: List[Tuple[float, float]] = [(0.0, 0.0)] * target.channels

    @classmethod
    def from_config(cls, config: AudioConfig) -> "ResampleFilterStage":
        return cls(
            PCMFormat(config.source_sample_rate, config.source_channel_count),
            PCMFormat(config.target_sample_rate, config.target_channel_count),
            highpass_enabled=config.highpass_enabled,
            highpass_coefficient=config.highpass_coefficient,
            gain=config.gain,
            normalizer_target_rms=config.normalizer_target_rms,
            normalizer_max_gain_db=config.normalizer_max_gain_db,
        )

    def process(self, pcm: bytes) -> bytes:
        if not pcm:
            return b""
        if len(pcm) % self.source.bytes_per_frame:
            raise MalformedAudioChunk(
                f"PCM length {len(pcm)} does not align to {self.source.bytes_per_frame}-byte frames"
            )
        out = self._remix(pcm)
        if self.source.sample_rate != self.target.sample_rate:
            out, self._ratecv_state = audioop.ratecv(
                out,
                2,
                self.target.channels,
                self.source.sample_rate,
                self.target.sample_rate,
                self._ratecv_state,
            )
        if self.highpass_enabled:
            out = self._highpass(out)
        if self.gain != 1.0:
            out = audioop.mul(out, 2, self.gain)
        if self.normalizer_target_rms > 0:
            out = apply_normalizer(out, self.normalizer_target_rms, self.normalizer_max_gain_db)
        return out

    def reset(self) -> None:
        self._ratecv_state = None
        self._hp_state = [(0.0, 0.0)] * self.target.channels

    def _remix(self, pcm: bytes) -> bytes:
        if self.source.channels == self.target.channels:
            return pcm
        if self.source.channels == 2:
            return audioop.tomono(pcm, 2, 0.5, 0.5)
        return audioop.tostereo(pcm, 2, 1.0, 1.0)

    def _highpass(self, pcm: bytes) -> bytes:
        """First-order DC-block filter: y[n] = x[n] - x[n-1] + r * y[n-1]."""
        buf = array.array('h')
        buf.frombytes(pcm)
        r = self.highpass_coefficient
        channels = self.target.channels
        for ch in range(channels):
            prev_x, prev_y = self._hp_state[ch]
            for i in range(ch, len(buf), channels):
                x = float(buf[i])
                y = x - prev_x + r * prev_y
                prev_x, prev_y = x, y
                if y > 32767.0:
                    y = 32767.0
                elif y < -32768.0:
                    y = -32768.0
                buf[i] = int(round(y))
            self._hp_state[ch] = (prev_x, prev_y)
        return buf.tobytes()
