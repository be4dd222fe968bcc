"""
Frame decoding: compressed voice frames to interleaved PCM16 LE.

The actual codec work is delegated: G.711 goes through audioop, Opus
through discord.py's libopus binding. FrameDecoder only validates what
comes out so a bad frame turns into MalformedAudioChunk instead of
poisoning the rest of the chain.
"""

from __future__ import annotations

import audioop
from typing import Optional, Protocol

from prometheus_client import Counter

from ..core.models import PCMFormat
from ..errors import MalformedAudioChunk
from ..logging_config import get_logger

logger = get_logger(__name__)

_DECODE_FAILURES = Counter(
    "voice_transcriber_decode_failures_total",
    "Frames dropped because they could not be decoded",
    labelnames=("encoding",),
)


class FrameCodec(Protocol):
    """Decode one compressed frame into interleaved PCM16 LE."""

    encoding: str

    def decode(self, frame: bytes) -> bytes: ...


class PCM16Codec:
    """Frames that are already PCM16 LE."""
    encoding = "pcm16"

    def decode(self, frame: bytes) -> bytes:
        return bytes(frame)


class G711Codec:
    encoding = "ulaw"

    def __init__(self, law: str = "ulaw"):
        law = (law or "").lower()
        if law in ("ulaw", "mulaw", "mu-law", "g711_ulaw"):
            self.encoding = "ulaw"
            self._decode = audioop.ulaw2lin
        elif law in ("alaw", "a-law", "g711_alaw"):
            self.encoding = "alaw"
            self._decode = audioop.alaw2lin
        else:
            raise ValueError(f"Unsupported G.711 law: {law}")

    def decode(self, frame: bytes) -> bytes:
        return self._decode(frame, 2)


class OpusCodec:
    """Opus via discord.py (48 kHz stereo, 20 ms frames).

    Requires the ``discord`` extra and a loadable libopus.
    """
    encoding = "opus"

    def __init__(self):
        import discord.opus

        if not discord.opus.is_loaded():
            discord.opus._load_default()
        self._decoder = discord.opus.Decoder()

    def decode(self, frame: bytes) -> bytes:
        return self._decoder.decode(frame, fec=False)


def create_codec(encoding: str) -> FrameCodec:
    enc = (encoding or "").lower()
    if enc in ("pcm16", "slin", "slin16", "linear16"):
        return PCM16Codec()
    if enc in ("ulaw", "mulaw", "mu-law", "g711_ulaw", "alaw", "a-law", "g711_alaw"):
        return G711Codec(enc)
    if enc == "opus":
        return OpusCodec()
    raise ValueError(f"Unsupported source encoding: {encoding}")


class FrameDecoder:
    """Decode frames and reject anything that is not whole PCM16 frames."""

    def __init__(self, codec: FrameCodec, output_format: PCMFormat):
        self.codec = codec
        self.output_format = output_format
        self.decoded_frames = 0
        self.dropped_frames = 0

    def decode(self, frame: Optional[bytes]) -> bytes:
        if not frame:
            raise self._drop("empty frame")
        try:
            pcm = self.codec.decode(frame)
        except MalformedAudioChunk:
            raise
        except Exception as exc:
            raise self._drop(f"{self.codec.encoding} decode failed: {exc}")
        if not pcm:
            raise self._drop("decoder produced no samples")
        if len(pcm) % self.output_format.bytes_per_frame:
            raise self._drop(
                f"decoded length {len(pcm)} is not a multiple of "
                f"{self.output_format.bytes_per_frame} bytes per frame"
            )
        self.decoded_frames += 1
        return pcm

    def _drop(self, reason: str) -> MalformedAudioChunk:
        self.dropped_frames += 1
        _DECODE_FAILURES.labels(self.codec.encoding).inc()
        return MalformedAudioChunk(reason)
