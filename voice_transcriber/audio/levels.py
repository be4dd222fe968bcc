"""RMS level metering for PCM16 chunks."""

from __future__ import annotations

import audioop
import math
from typing import Optional

from ..core.models import LevelSample

MIN_DB = -70.0
# Chunks shorter than this carry too little signal for a stable reading
MIN_VALID_SAMPLES = 160
FULL_SCALE = 32768.0


def rms_to_dbfs(rms: float, floor: float = MIN_DB) -> float:
    if rms <= 0:
        return floor
    return max(20.0 * math.log10(rms / FULL_SCALE), floor)


class AudioLevelMeter:
    """Compute an RMS-derived dBFS level for each mono or interleaved chunk."""

    def __init__(self, floor_db: float = MIN_DB, min_samples: int = MIN_VALID_SAMPLES):
        self.floor_db = floor_db
        self.min_samples = min_samples
        self.last_level: Optional[float] = None

    def measure(self, pcm: bytes, timestamp: float) -> LevelSample:
        if not pcm or len(pcm) // 2 < self.min_samples:
            level = self.floor_db
        else:
            level = rms_to_dbfs(audioop.rms(pcm, 2), self.floor_db)
        self.last_level = level
        return LevelSample(decibels=level, timestamp=timestamp)
