"""
Locating, reading and expanding the service YAML.

Values may reference the environment as ``${VAR}``, ``$VAR`` or
``${VAR:-fallback}``. Unset references without a fallback are left
verbatim so validation reports them instead of silently blanking a field.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Repository root (parent of voice_transcriber/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

DEFAULT_CONFIG_PATH = "config/voice-transcriber.yaml"
CONFIG_PATH_ENV = "VOICE_TRANSCRIBER_CONFIG"

_ENV_REF = re.compile(r"\$\{(?P<braced>\w+)(?::-(?P<fallback>[^}]*))?\}|\$(?P<bare>\w+)")


def resolve_config_path(path: Optional[str] = None) -> str:
    """
    Absolute path of the config file to load.

    Falls back to ``$VOICE_TRANSCRIBER_CONFIG`` and then the shipped sample.
    Relative paths are taken from the repository root, not the CWD.
    """
    path = path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    if not os.path.isabs(path):
        return os.path.join(_PROJ_DIR, path)
    return path


def expand_env_refs(text: str) -> str:
    def _sub(match: "re.Match[str]") -> str:
        name = match.group("braced") or match.group("bare")
        value = os.environ.get(name)
        if value:
            return value
        fallback = match.group("fallback")
        if fallback is not None:
            return fallback
        return value if value is not None else match.group(0)

    return _ENV_REF.sub(_sub, text)


def load_yaml_with_env_expansion(path: str) -> Dict[str, Any]:
    """
    Read ``path``, expand environment references, and parse it.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails or the document is not a mapping
    """
    try:
        raw = Path(path).read_text()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        data = yaml.safe_load(expand_env_refs(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(
            f"Error parsing YAML configuration: top level of {path} must be a mapping, got {type(data).__name__}"
        )
    return data


def inject_backend_credentials(config_data: Dict[str, Any]) -> None:
    """
    Set the Deepgram API key from ``DEEPGRAM_API_KEY``.

    Keys are never read from YAML; a key found there is discarded.
    """
    deepgram = config_data.get('deepgram')
    if not isinstance(deepgram, dict):
        deepgram = {}
    deepgram['api_key'] = os.getenv("DEEPGRAM_API_KEY") or None
    config_data['deepgram'] = deepgram
