"""
Test doubles for the external collaborators: frame sources, voice
connections, and a scriptable recognition backend.
"""

import asyncio
from typing import Callable, Dict, List, Optional

from voice_transcriber.core.models import PCMFormat
from voice_transcriber.core.transport import VoiceChannelRef, VoiceConnection, VoiceConnector
from voice_transcriber.errors import SinkClosedError
from voice_transcriber.recognition.backend import (
    CancellationDetails,
    PushAudioStream,
    RecognitionResult,
    Recognizer,
    RecognizerFactory,
)

_END = object()


class FakeFrameSource:
    """Async iterator of frames fed by the test."""

    def __init__(self, frames=(), *, keep_open: bool = False):
        self._queue: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self._queue.put_nowait(frame)
        if not keep_open:
            self._queue.put_nowait(_END)
        self.closed = False

    def push(self, frame: bytes) -> None:
        self._queue.put_nowait(frame)

    def end(self) -> None:
        self._queue.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    async def aclose(self):
        self.closed = True
        self._queue.put_nowait(_END)


class RecordingSink:
    def __init__(self):
        self.chunks: List[bytes] = []
        self.closed = False

    def write(self, pcm: bytes) -> None:
        if self.closed:
            raise SinkClosedError("sink closed")
        self.chunks.append(pcm)

    def close(self) -> None:
        self.closed = True


# Recognition backend ------------------------------------------------------------


class FakePushStream(PushAudioStream):
    def __init__(self, audio_format: PCMFormat, log: List):
        super().__init__(audio_format)
        self.chunks: List[bytes] = []
        self._closed = False
        self._log = log

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, pcm: bytes) -> None:
        if self._closed:
            raise SinkClosedError("push-stream closed")
        self.chunks.append(pcm)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._log.append("push_stream.close")


class FakeRecognizer(Recognizer):
    def __init__(self, index: int, log: List, *, status: str = "Connected",
                 start_error: Optional[BaseException] = None, start_delay: float = 0.0,
                 stop_delay: float = 0.0):
        super().__init__()
        self.index = index
        self.status = status
        self.start_error = start_error
        self.start_delay = start_delay
        self.stop_delay = stop_delay
        self.started = False
        self.stopped = False
        self._log = log

    async def start_continuous_recognition(self) -> None:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        self._log.append(f"recognizer[{self.index}].start")

    async def stop_continuous_recognition(self) -> None:
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        self.stopped = True
        self._log.append(f"recognizer[{self.index}].stop")

    def get_property(self, name: str) -> Optional[str]:
        return self.status

    # helpers for tests
    def emit_recognized(self, text: str, confidence: Optional[float] = 0.9) -> None:
        self._fire("recognized", RecognitionResult(text, confidence, True))

    def emit_recognizing(self, text: str) -> None:
        self._fire("recognizing", RecognitionResult(text, None, False))

    def emit_canceled(self, details: CancellationDetails) -> None:
        self._fire("canceled", details)

    def emit_session_stopped(self) -> None:
        self._fire("session_stopped")


class FakeRecognizerFactory(RecognizerFactory):
    """
    Builds FakeRecognizers. ``configure`` is called with each new recognizer
    (and its creation index) so a test can script status or start failures.
    """

    def __init__(self, configure: Optional[Callable[[FakeRecognizer], None]] = None, log: Optional[List] = None):
        self.configure = configure
        self.log = log if log is not None else []
        self.recognizers: List[FakeRecognizer] = []
        self.push_streams: List[FakePushStream] = []

    def create_push_stream(self, sample_rate: int, bits_per_sample: int, channel_count: int) -> FakePushStream:
        stream = FakePushStream(PCMFormat(sample_rate, channel_count, bits_per_sample // 8), self.log)
        self.push_streams.append(stream)
        return stream

    def create_recognizer(self, push_stream: PushAudioStream, user_id: str) -> FakeRecognizer:
        recognizer = FakeRecognizer(len(self.recognizers), self.log)
        if self.configure is not None:
            self.configure(recognizer)
        self.recognizers.append(recognizer)
        return recognizer

    @property
    def current(self) -> FakeRecognizer:
        return self.recognizers[-1]


# Voice connection ---------------------------------------------------------------


class FakeVoiceConnection(VoiceConnection):
    def __init__(self, channel: VoiceChannelRef, log: List, *, ready: bool = True):
        self.channel_id = channel.channel_id
        self.guild_id = channel.guild_id
        self._ready = asyncio.Event()
        if ready:
            self._ready.set()
        self._log = log
        self._destroyed = False
        self.destroy_calls = 0
        self.disconnect_handlers: List[Callable] = []
        self.destroy_handlers: List[Callable] = []
        self.subscriptions: Dict[str, FakeFrameSource] = {}

    async def wait_until_ready(self) -> None:
        await self._ready.wait()

    def subscribe(self, user_id: str, *, end_behavior: str = "manual", frame_type: str = "opus") -> FakeFrameSource:
        source = FakeFrameSource(keep_open=True)
        self.subscriptions[user_id] = source
        return source

    def on_disconnect(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def on_destroy(self, handler) -> None:
        self.destroy_handlers.append(handler)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self._destroyed:
            return
        self._destroyed = True
        self._log.append("connection.destroy")

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def make_ready(self) -> None:
        self._ready.set()

    def simulate_disconnect(self) -> None:
        for handler in list(self.disconnect_handlers):
            handler()


class FakeConnector(VoiceConnector):
    def __init__(self, log: Optional[List] = None, *, ready: bool = True, share_per_guild: bool = False):
        self.log = log if log is not None else []
        self.ready = ready
        self.share_per_guild = share_per_guild
        self.connections: List[FakeVoiceConnection] = []

    async def join(self, channel: VoiceChannelRef) -> FakeVoiceConnection:
        if self.share_per_guild:
            for conn in self.connections:
                if conn.guild_id == channel.guild_id and not conn.is_destroyed:
                    return conn
        conn = FakeVoiceConnection(channel, self.log, ready=self.ready)
        self.connections.append(conn)
        return conn
