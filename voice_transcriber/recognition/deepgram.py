"""
Deepgram live-transcription backend over websockets.

Each recognizer owns one ``/v1/listen`` websocket and three tasks:
  - sender: drains the push-stream into the socket
  - receiver: turns ``Results`` messages into recognizing/recognized callbacks
  - keep-alive: sends ``KeepAlive`` so silent stretches do not time out

An unexpected close marks the connection ``Disconnected`` and fires
``canceled`` with details derived from the close code. A clean 1000 close
fires ``session_stopped`` instead.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import websockets
from websockets.exceptions import ConnectionClosed

from ..config import DeepgramConfig
from ..core.models import ConnectionStatus, PCMFormat
from ..errors import FatalRecognitionError, SinkClosedError
from ..logging_config import get_logger
from .backend import (
    CONNECTION_STATUS_PROPERTY,
    CancellationDetails,
    CancellationErrorCode,
    CancellationReason,
    PushAudioStream,
    RecognitionResult,
    Recognizer,
    RecognizerFactory,
)

logger = get_logger(__name__)

_CLOSE_STREAM = json.dumps({"type": "CloseStream"})
_KEEP_ALIVE = json.dumps({"type": "KeepAlive"})


# Shared helpers -----------------------------------------------------------------


def build_listen_url(config: DeepgramConfig, audio_format: PCMFormat) -> str:
    """Normalize ``base_url`` to a ws(s) ``/v1/listen`` URL with streaming options."""
    base_url = config.base_url or "wss://api.deepgram.com"
    if base_url.startswith("https://"):
        base_url = base_url.replace("https://", "wss://", 1)
    elif base_url.startswith("http://"):
        base_url = base_url.replace("http://", "ws://", 1)

    parsed = urlparse(base_url)
    if not parsed.path or parsed.path == "/":
        path = "/v1/listen"
    elif parsed.path.rstrip("/").endswith("/v1/listen"):
        path = parsed.path
    else:
        path = parsed.path.rstrip("/") + "/v1/listen"

    query_params = {
        "model": config.model,
        "language": config.language,
        "encoding": "linear16",
        "sample_rate": str(audio_format.sample_rate),
        "channels": str(audio_format.channels),
        "interim_results": str(config.interim_results).lower(),
        "punctuate": str(config.punctuate).lower(),
        "smart_format": str(config.smart_format).lower(),
    }
    existing = dict(parse_qsl(parsed.query))
    existing.update({k: v for k, v in query_params.items() if v})
    return urlunparse(parsed._replace(path=path, query=urlencode(existing)))


def parse_results_message(data: Dict[str, Any]) -> Optional[RecognitionResult]:
    """
    Extract the top alternative from a streaming ``Results`` message.

    Message format:
    {
      "type": "Results",
      "is_final": true,
      "channel": {"alternatives": [{"transcript": "...", "confidence": 0.97}]}
    }
    """
    if data.get("type") != "Results":
        return None
    try:
        alternatives = data.get("channel", {}).get("alternatives", [])
        if not alternatives:
            return None
        best = alternatives[0]
        transcript = (best.get("transcript") or "").strip()
        if not transcript:
            return None
        confidence = best.get("confidence")
        return RecognitionResult(
            text=transcript,
            confidence=float(confidence) if confidence is not None else None,
            is_final=bool(data.get("is_final", False)),
        )
    except (AttributeError, TypeError, ValueError) as exc:
        logger.debug("Failed to parse Deepgram results message", error=str(exc))
        return None


def classify_close(code: Optional[int], reason: str = "") -> CancellationDetails:
    """Map a websocket close code to cancellation details."""
    if code == 1008:
        error_code = CancellationErrorCode.BAD_REQUEST
    elif code in (4001, 4401):
        error_code = CancellationErrorCode.AUTHENTICATION_FAILURE
    elif code in (4003, 4403):
        error_code = CancellationErrorCode.FORBIDDEN
    elif code in (4029, 4429):
        error_code = CancellationErrorCode.TOO_MANY_REQUESTS
    elif code == 1011:
        # Deepgram closes with 1011 when no audio arrived in time
        error_code = CancellationErrorCode.SERVICE_TIMEOUT
    elif code in (1012, 1013):
        error_code = CancellationErrorCode.SERVICE_UNAVAILABLE
    else:
        error_code = CancellationErrorCode.CONNECTION_FAILURE
    details = f"websocket closed (code={code})"
    if reason:
        details = f"{details}: {reason}"
    return CancellationDetails(CancellationReason.ERROR, error_code, details)


# Push-stream --------------------------------------------------------------------


class DeepgramPushStream(PushAudioStream):
    """
    Bounded in-memory queue between the pipeline and the socket sender.

    Writes never block; when the recognizer falls behind (or is restarting)
    the oldest chunk is dropped.
    """

    def __init__(self, audio_format: PCMFormat, max_chunks: int = 500):
        super().__init__(audio_format)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)
        self._closed = False
        self.dropped_chunks = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, pcm: bytes) -> None:
        if self._closed:
            raise SinkClosedError("write to a closed push-stream")
        if not pcm:
            return
        self._put(bytes(pcm))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(None)

    async def read(self) -> Optional[bytes]:
        """Next chunk, or None once the stream is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def _put(self, item: Optional[bytes]) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            try:
                self._queue.get_nowait()
                self.dropped_chunks += 1
            except asyncio.QueueEmpty:
                pass
            self._queue.put_nowait(item)


# Recognizer ---------------------------------------------------------------------


class DeepgramRecognizer(Recognizer):
    def __init__(
        self,
        config: DeepgramConfig,
        push_stream: DeepgramPushStream,
        user_id: str,
        *,
        connect: Optional[Callable[..., Any]] = None,
    ):
        super().__init__()
        self.config = config
        self.push_stream = push_stream
        self.user_id = user_id
        self._connect = connect or websockets.connect
        self._ws: Optional[Any] = None
        self._status = ConnectionStatus.UNKNOWN
        self._stopping = False
        self._sender_task: Optional[asyncio.Task] = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def get_property(self, name: str) -> Optional[str]:
        if name == CONNECTION_STATUS_PROPERTY:
            return self._status.value
        return None

    async def start_continuous_recognition(self) -> None:
        if self._ws is not None:
            return
        if not self.config.api_key:
            raise FatalRecognitionError(
                "Deepgram streaming requires an API key",
                user_id=self.user_id,
                error_code=CancellationErrorCode.AUTHENTICATION_FAILURE.value,
            )

        url = build_listen_url(self.config, self.push_stream.format)
        headers = {
            "Authorization": f"Token {self.config.api_key}",
            "User-Agent": "voice-transcriber/0.1",
        }
        self._status = ConnectionStatus.CONNECTING
        self._stopping = False
        logger.info("Deepgram opening streaming session", user_id=self.user_id, url=url)
        try:
            self._ws = await asyncio.wait_for(
                self._connect(
                    url,
                    additional_headers=headers,
                    max_size=16 * 1024 * 1024,
                    ping_interval=20,
                    ping_timeout=10,
                ),
                timeout=self.config.connect_timeout_sec,
            )
        except Exception as exc:
            self._status = ConnectionStatus.DISCONNECTED
            logger.error("Failed to connect to Deepgram streaming", user_id=self.user_id, error=str(exc))
            raise

        self._status = ConnectionStatus.CONNECTED
        self._receiver_task = asyncio.create_task(self._receive_loop(self._ws), name=f"dg-recv-{self.user_id}")
        self._sender_task = asyncio.create_task(self._send_loop(self._ws), name=f"dg-send-{self.user_id}")
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(self._ws), name=f"dg-keepalive-{self.user_id}")
        logger.info("Deepgram streaming session opened", user_id=self.user_id, model=self.config.model)

    async def stop_continuous_recognition(self) -> None:
        self._stopping = True
        ws, self._ws = self._ws, None
        for task in (self._sender_task, self._keepalive_task):
            if task and not task.done():
                task.cancel()
        if ws is not None:
            try:
                await ws.send(_CLOSE_STREAM)
            except Exception:
                pass
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Deepgram websocket close failed", user_id=self.user_id, error=str(exc))
        if self._receiver_task and not self._receiver_task.done():
            self._receiver_task.cancel()
        tasks = [t for t in (self._sender_task, self._receiver_task, self._keepalive_task) if t]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sender_task = self._receiver_task = self._keepalive_task = None
        self._status = ConnectionStatus.DISCONNECTED
        logger.info("Deepgram streaming session closed", user_id=self.user_id)

    async def _send_loop(self, ws) -> None:
        try:
            while True:
                chunk = await self.push_stream.read()
                if chunk is None:
                    await ws.send(_CLOSE_STREAM)
                    return
                await ws.send(chunk)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            # Receiver reports the close
            return
        except Exception as exc:
            logger.error("Error sending audio to Deepgram", user_id=self.user_id, error=str(exc), exc_info=True)

    async def _keepalive_loop(self, ws) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.keepalive_interval_sec)
                await ws.send(_KEEP_ALIVE)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            return
        except Exception as exc:
            logger.debug("Deepgram keep-alive failed", user_id=self.user_id, error=str(exc))

    async def _receive_loop(self, ws) -> None:
        close_code: Optional[int] = None
        close_reason = ""
        try:
            async for message in ws:
                if isinstance(message, (bytes, bytearray)):
                    continue
                try:
                    data = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    continue
                if not isinstance(data, dict):
                    continue
                self._handle_message(data)
            close_code = getattr(ws, "close_code", None)
            close_reason = getattr(ws, "close_reason", None) or ""
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                close_code, close_reason = exc.rcvd.code, exc.rcvd.reason
        except Exception as exc:
            logger.error("Deepgram receive loop error", user_id=self.user_id, error=str(exc), exc_info=True)

        if self._stopping:
            return
        self._status = ConnectionStatus.DISCONNECTED
        if close_code == 1000:
            logger.info("Deepgram session ended by server", user_id=self.user_id)
            self._fire("session_stopped")
            return
        details = classify_close(close_code, close_reason)
        logger.warning(
            "Deepgram streaming websocket closed unexpectedly",
            user_id=self.user_id,
            close_code=close_code,
            error_code=details.error_code.value,
        )
        self._fire("canceled", details)

    def _handle_message(self, data: Dict[str, Any]) -> None:
        result = parse_results_message(data)
        if result is None:
            return
        logger.debug(
            "Deepgram streaming transcript received",
            user_id=self.user_id,
            transcript_preview=result.text[:50],
            is_final=result.is_final,
            confidence=result.confidence,
        )
        self._fire("recognized" if result.is_final else "recognizing", result)


class DeepgramRecognizerFactory(RecognizerFactory):
    def __init__(self, config: DeepgramConfig, *, connect: Optional[Callable[..., Any]] = None):
        self.config = config
        self._connect = connect

    def create_push_stream(self, sample_rate: int, bits_per_sample: int, channel_count: int) -> DeepgramPushStream:
        if bits_per_sample != 16:
            raise ValueError(f"Deepgram linear16 streaming needs 16-bit samples, got {bits_per_sample}")
        return DeepgramPushStream(
            PCMFormat(sample_rate, channel_count),
            max_chunks=self.config.push_stream_max_chunks,
        )

    def create_recognizer(self, push_stream: PushAudioStream, user_id: str) -> DeepgramRecognizer:
        if not isinstance(push_stream, DeepgramPushStream):
            raise TypeError("DeepgramRecognizer needs a DeepgramPushStream")
        return DeepgramRecognizer(self.config, push_stream, user_id, connect=self._connect)
