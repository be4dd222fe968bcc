"""
Unit tests for config.loaders.

Tests cover:
- Path resolution (relative vs absolute)
- YAML loading with environment variable expansion
- Secret injection from the environment
"""

import os

import pytest
import yaml

from voice_transcriber.config.loaders import (
    inject_backend_credentials,
    load_yaml_with_env_expansion,
    resolve_config_path,
)


class TestResolveConfigPath:
    """Tests for resolve_config_path function."""

    def test_absolute_path_unchanged(self):
        assert resolve_config_path("/etc/voice/transcriber.yaml") == "/etc/voice/transcriber.yaml"

    def test_relative_path_resolved_against_project_root(self):
        result = resolve_config_path("config/voice-transcriber.yaml")
        assert os.path.isabs(result)
        assert result.endswith(os.path.join("config", "voice-transcriber.yaml"))

    def test_shipped_sample_config_exists(self):
        assert os.path.exists(resolve_config_path("config/voice-transcriber.yaml"))

    def test_env_override_used_when_no_path_given(self, monkeypatch):
        monkeypatch.setenv("VOICE_TRANSCRIBER_CONFIG", "/srv/vt/prod.yaml")
        assert resolve_config_path() == "/srv/vt/prod.yaml"

    def test_explicit_path_beats_env_override(self, monkeypatch):
        monkeypatch.setenv("VOICE_TRANSCRIBER_CONFIG", "/srv/vt/prod.yaml")
        assert resolve_config_path("/etc/vt.yaml") == "/etc/vt.yaml"


class TestLoadYamlWithEnvExpansion:
    """Tests for load_yaml_with_env_expansion function."""

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        """${VAR} and $VAR references are expanded before parsing."""
        monkeypatch.setenv("VT_MODEL", "nova-2-general")
        monkeypatch.setenv("VT_POLL_MS", "250")
        config_file = tmp_path / "test.yaml"
        config_file.write_text(
            "deepgram:\n"
            "  model: ${VT_MODEL}\n"
            "recognition:\n"
            "  status_poll_interval_ms: $VT_POLL_MS\n"
        )

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['deepgram']['model'] == 'nova-2-general'
        # YAML parser converts numeric strings to int
        assert result['recognition']['status_poll_interval_ms'] == 250

    def test_missing_env_var_left_unchanged(self, tmp_path):
        config_file = tmp_path / "test.yaml"
        config_file.write_text("model: ${VT_DOES_NOT_EXIST}\n")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['model'] == '${VT_DOES_NOT_EXIST}'

    def test_file_not_found_raises_error(self):
        with pytest.raises(FileNotFoundError) as exc_info:
            load_yaml_with_env_expansion("/nonexistent/path/voice-transcriber.yaml")
        assert "not found" in str(exc_info.value).lower()

    def test_invalid_yaml_raises_error(self, tmp_path):
        config_file = tmp_path / "invalid.yaml"
        config_file.write_text("vad:\n  voice_threshold: -45\n    silence: -65\n")

        with pytest.raises(yaml.YAMLError) as exc_info:
            load_yaml_with_env_expansion(str(config_file))
        assert "parsing" in str(exc_info.value).lower()

    def test_empty_file_returns_empty_dict(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_yaml_with_env_expansion(str(config_file)) == {}

    def test_fallback_used_when_unset(self, tmp_path, monkeypatch):
        monkeypatch.delenv("VT_BASE_URL", raising=False)
        config_file = tmp_path / "test.yaml"
        config_file.write_text("base_url: ${VT_BASE_URL:-wss://api.deepgram.com}\n")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['base_url'] == 'wss://api.deepgram.com'

    def test_env_value_beats_fallback(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VT_BASE_URL", "wss://dg.internal")
        config_file = tmp_path / "test.yaml"
        config_file.write_text("base_url: ${VT_BASE_URL:-wss://api.deepgram.com}\n")

        assert load_yaml_with_env_expansion(str(config_file))['base_url'] == 'wss://dg.internal'

    def test_non_mapping_document_rejected(self, tmp_path):
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- vad\n- audio\n")

        with pytest.raises(yaml.YAMLError):
            load_yaml_with_env_expansion(str(config_file))


class TestInjectBackendCredentials:
    """API keys come from the environment only."""

    def test_env_key_injected(self, monkeypatch):
        monkeypatch.setenv("DEEPGRAM_API_KEY", "dg-from-env")
        data = {}
        inject_backend_credentials(data)
        assert data['deepgram']['api_key'] == 'dg-from-env'

    def test_yaml_key_overwritten(self, monkeypatch):
        monkeypatch.delenv("DEEPGRAM_API_KEY", raising=False)
        data = {'deepgram': {'api_key': 'dg-in-yaml', 'model': 'nova-2'}}
        inject_backend_credentials(data)
        assert data['deepgram']['api_key'] is None
        assert data['deepgram']['model'] == 'nova-2'
