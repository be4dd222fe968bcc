"""Deepgram streaming backend tests (no network; the websocket is faked)."""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest

from voice_transcriber.config import DeepgramConfig
from voice_transcriber.core.models import ConnectionStatus, PCMFormat
from voice_transcriber.errors import FatalRecognitionError, SinkClosedError
from voice_transcriber.recognition.backend import CancellationErrorCode
from voice_transcriber.recognition.deepgram import (
    DeepgramPushStream,
    DeepgramRecognizer,
    DeepgramRecognizerFactory,
    build_listen_url,
    classify_close,
    parse_results_message,
)

_CLOSE = object()


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self._incoming = asyncio.Queue()

    def feed(self, message):
        self._incoming.put_nowait(message)

    def server_close(self, code, reason=""):
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnect:
    def __init__(self):
        self.calls = []
        self.sockets = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


def _results(transcript, *, is_final=True, confidence=0.93):
    alternative = {"transcript": transcript}
    if confidence is not None:
        alternative["confidence"] = confidence
    return {"type": "Results", "is_final": is_final, "channel": {"alternatives": [alternative]}}


FORMAT = PCMFormat(16000, 1)


class TestListenUrl:
    def test_default_url(self):
        url = build_listen_url(DeepgramConfig(), FORMAT)
        parsed = urlparse(url)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "wss"
        assert parsed.netloc == "api.deepgram.com"
        assert parsed.path == "/v1/listen"
        assert params["encoding"] == ["linear16"]
        assert params["sample_rate"] == ["16000"]
        assert params["channels"] == ["1"]
        assert params["model"] == ["nova-2"]
        assert params["interim_results"] == ["true"]

    def test_https_base_url_becomes_wss(self):
        url = build_listen_url(DeepgramConfig(base_url="https://dg.example.com"), FORMAT)
        assert url.startswith("wss://dg.example.com/v1/listen?")

    def test_http_base_with_prefix_path(self):
        url = build_listen_url(DeepgramConfig(base_url="http://proxy.local/dg"), FORMAT)
        parsed = urlparse(url)
        assert parsed.scheme == "ws"
        assert parsed.path == "/dg/v1/listen"

    def test_existing_query_kept(self):
        config = DeepgramConfig(base_url="wss://api.deepgram.com/v1/listen?tier=enhanced", smart_format=False)
        params = parse_qs(urlparse(build_listen_url(config, FORMAT)).query)
        assert params["tier"] == ["enhanced"]
        assert params["smart_format"] == ["false"]


class TestResultsParsing:
    def test_final_result(self):
        result = parse_results_message(_results(" hello there "))
        assert result.text == "hello there"
        assert result.confidence == pytest.approx(0.93)
        assert result.is_final

    def test_interim_without_confidence(self):
        result = parse_results_message(_results("hel", is_final=False, confidence=None))
        assert result.is_final is False
        assert result.confidence is None

    @pytest.mark.parametrize("message", [
        {"type": "Metadata"},
        {"type": "Results", "channel": {"alternatives": []}},
        _results("   "),
        {"type": "Results", "channel": "garbage"},
    ])
    def test_ignored_messages(self, message):
        assert parse_results_message(message) is None


class TestCloseClassification:
    @pytest.mark.parametrize("code,expected,transient", [
        (1008, CancellationErrorCode.BAD_REQUEST, False),
        (4001, CancellationErrorCode.AUTHENTICATION_FAILURE, False),
        (4403, CancellationErrorCode.FORBIDDEN, False),
        (4429, CancellationErrorCode.TOO_MANY_REQUESTS, True),
        (1011, CancellationErrorCode.SERVICE_TIMEOUT, True),
        (1013, CancellationErrorCode.SERVICE_UNAVAILABLE, True),
        (1006, CancellationErrorCode.CONNECTION_FAILURE, True),
        (None, CancellationErrorCode.CONNECTION_FAILURE, True),
    ])
    def test_close_codes(self, code, expected, transient):
        details = classify_close(code)
        assert details.error_code is expected
        assert details.is_transient is transient

    def test_reason_included_in_details(self):
        details = classify_close(1011, "NET-0001 no audio")
        assert "NET-0001" in details.error_details


class TestPushStream:
    @pytest.mark.asyncio
    async def test_drops_oldest_when_full(self):
        stream = DeepgramPushStream(FORMAT, max_chunks=2)
        for chunk in (b"a", b"b", b"c"):
            stream.write(chunk)

        assert stream.dropped_chunks == 1
        assert await stream.read() == b"b"
        assert await stream.read() == b"c"

    @pytest.mark.asyncio
    async def test_close_drains_then_ends(self):
        stream = DeepgramPushStream(FORMAT)
        stream.write(b"pcm")
        stream.write(b"")
        stream.close()
        stream.close()

        assert stream.closed
        assert await stream.read() == b"pcm"
        assert await stream.read() is None
        assert await stream.read() is None

    def test_write_after_close_raises(self):
        stream = DeepgramPushStream(FORMAT)
        stream.close()
        with pytest.raises(SinkClosedError):
            stream.write(b"late")


class TestFactory:
    def test_rejects_non_16_bit(self):
        factory = DeepgramRecognizerFactory(DeepgramConfig(api_key="k"))
        with pytest.raises(ValueError):
            factory.create_push_stream(16000, 8, 1)

    def test_push_stream_uses_configured_bound(self):
        factory = DeepgramRecognizerFactory(DeepgramConfig(api_key="k", push_stream_max_chunks=3))
        stream = factory.create_push_stream(16000, 16, 1)
        assert stream.format == FORMAT
        assert stream._queue.maxsize == 3


class TestRecognizer:
    def _recognizer(self, api_key="dg-test-key"):
        connect = FakeConnect()
        stream = DeepgramPushStream(FORMAT)
        recognizer = DeepgramRecognizer(DeepgramConfig(api_key=api_key), stream, "u1", connect=connect)
        return recognizer, stream, connect

    @pytest.mark.asyncio
    async def test_missing_api_key_is_fatal(self):
        recognizer, _, connect = self._recognizer(api_key=None)
        with pytest.raises(FatalRecognitionError) as exc_info:
            await recognizer.start_continuous_recognition()
        assert exc_info.value.error_code == "AuthenticationFailure"
        assert connect.calls == []

    @pytest.mark.asyncio
    async def test_start_connects_with_token_header(self):
        recognizer, _, connect = self._recognizer()
        await recognizer.start_continuous_recognition()

        url, kwargs = connect.calls[0]
        assert "/v1/listen" in url
        assert kwargs["additional_headers"]["Authorization"] == "Token dg-test-key"
        assert recognizer.get_property("Connection_Status") == "Connected"
        await recognizer.stop_continuous_recognition()

    @pytest.mark.asyncio
    async def test_audio_forwarded_to_socket(self):
        recognizer, stream, connect = self._recognizer()
        await recognizer.start_continuous_recognition()
        stream.write(b"\x00\x01" * 160)
        await asyncio.sleep(0.01)

        assert connect.sockets[0].sent == [b"\x00\x01" * 160]
        await recognizer.stop_continuous_recognition()

    @pytest.mark.asyncio
    async def test_results_dispatched_to_callbacks(self):
        recognizer, _, connect = self._recognizer()
        finals, partials = [], []
        recognizer.recognized = finals.append
        recognizer.recognizing = partials.append
        await recognizer.start_continuous_recognition()

        ws = connect.sockets[0]
        ws.feed(json.dumps(_results("turn", is_final=False)))
        ws.feed("not json")
        ws.feed(json.dumps(_results("turn it off")))
        await asyncio.sleep(0.01)

        assert [r.text for r in partials] == ["turn"]
        assert [r.text for r in finals] == ["turn it off"]
        await recognizer.stop_continuous_recognition()

    @pytest.mark.asyncio
    async def test_unexpected_close_fires_canceled(self):
        recognizer, _, connect = self._recognizer()
        canceled = []
        recognizer.canceled = canceled.append
        await recognizer.start_continuous_recognition()

        connect.sockets[0].server_close(1011, "timeout")
        await asyncio.sleep(0.01)

        assert len(canceled) == 1
        assert canceled[0].error_code is CancellationErrorCode.SERVICE_TIMEOUT
        assert recognizer.status is ConnectionStatus.DISCONNECTED
        await recognizer.stop_continuous_recognition()

    @pytest.mark.asyncio
    async def test_clean_server_close_fires_session_stopped(self):
        recognizer, _, connect = self._recognizer()
        stopped, canceled = [], []
        recognizer.session_stopped = lambda: stopped.append(True)
        recognizer.canceled = canceled.append
        await recognizer.start_continuous_recognition()

        connect.sockets[0].server_close(1000)
        await asyncio.sleep(0.01)

        assert stopped == [True]
        assert canceled == []
        await recognizer.stop_continuous_recognition()

    @pytest.mark.asyncio
    async def test_stop_closes_stream_without_callbacks(self):
        recognizer, _, connect = self._recognizer()
        canceled, stopped = [], []
        recognizer.canceled = canceled.append
        recognizer.session_stopped = lambda: stopped.append(True)
        await recognizer.start_continuous_recognition()

        await recognizer.stop_continuous_recognition()

        ws = connect.sockets[0]
        assert json.dumps({"type": "CloseStream"}) in ws.sent
        assert ws.closed
        assert canceled == [] and stopped == []
        assert recognizer.get_property("Connection_Status") == "Disconnected"
