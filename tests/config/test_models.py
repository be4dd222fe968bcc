"""Validation of the configuration models and the load_config entry point."""

import pytest
from pydantic import ValidationError

from voice_transcriber.config import (
    AppConfig,
    RecognitionConfig,
    SessionConfig,
    VADConfig,
    load_config,
)


class TestVADConfig:
    def test_defaults_are_ordered(self):
        cfg = VADConfig()
        assert cfg.silence_threshold <= cfg.voice_release_threshold < cfg.voice_threshold

    def test_release_must_be_below_voice_threshold(self):
        with pytest.raises(ValidationError):
            VADConfig(voice_threshold=-40, voice_release_threshold=-40, silence_threshold=-50)

    def test_silence_must_not_exceed_release(self):
        with pytest.raises(ValidationError):
            VADConfig(voice_threshold=-35, voice_release_threshold=-45, silence_threshold=-40)

    def test_silence_may_equal_release(self):
        cfg = VADConfig(voice_threshold=-35, voice_release_threshold=-45, silence_threshold=-45)
        assert cfg.silence_threshold == -45

    def test_negative_duration_rejected(self):
        with pytest.raises(ValidationError):
            VADConfig(min_voice_duration_ms=-1)

    def test_silence_warning_default_matches_shipped_config(self, monkeypatch):
        monkeypatch.delenv("VOICE_TRANSCRIBER_CONFIG", raising=False)
        assert VADConfig().silence_warning_ms == 20000
        assert load_config().vad.silence_warning_ms == VADConfig().silence_warning_ms


class TestRecognitionConfig:
    def test_defaults(self):
        cfg = RecognitionConfig()
        assert cfg.restart_delay_ms == 2000
        assert cfg.unknown_status_poll_limit == 5
        assert cfg.recognition_confidence_threshold == 0.6
        assert cfg.restart_on_silence_warning is True

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_confidence_out_of_range(self, value):
        with pytest.raises(ValidationError):
            RecognitionConfig(recognition_confidence_threshold=value)


class TestSessionConfig:
    def test_defaults(self):
        cfg = SessionConfig()
        assert cfg.idle_session_timeout_ms == 300000
        assert cfg.sweep_interval_ms == 30000

    def test_zero_timeout_rejected(self):
        with pytest.raises(ValidationError):
            SessionConfig(teardown_timeout_ms=0)


class TestLoadConfig:
    def test_load_shipped_config(self, monkeypatch):
        monkeypatch.setenv("DEEPGRAM_API_KEY", "dg-test")
        monkeypatch.delenv("VOICE_TRANSCRIBER_CONFIG", raising=False)
        monkeypatch.delenv("DEEPGRAM_BASE_URL", raising=False)
        config = load_config()
        assert isinstance(config, AppConfig)
        assert config.deepgram.api_key == "dg-test"
        assert config.audio.target_sample_rate == 16000
        assert config.audio.target_channel_count == 1
        assert config.deepgram.base_url == "wss://api.deepgram.com"

    def test_partial_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DEEPGRAM_API_KEY", raising=False)
        path = tmp_path / "vt.yaml"
        path.write_text("session:\n  idle_session_timeout_ms: 60000\n")
        config = load_config(str(path))
        assert config.session.idle_session_timeout_ms == 60000
        assert config.vad == VADConfig()
        assert config.deepgram.api_key is None

    def test_misordered_thresholds_fail_at_load(self, tmp_path):
        path = tmp_path / "vt.yaml"
        path.write_text("vad:\n  voice_threshold: -60\n  voice_release_threshold: -50\n")
        with pytest.raises(ValidationError):
            load_config(str(path))
