"""
Voice agent configuration.

Loads backend, audio and supervision settings from environment variables.
"""
import os
from dataclasses import dataclass
from typing import Optional


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    "16000  # mic rate" -> 16000, unset or garbage -> default
    """
    value = os.environ.get(key)
    if not value:
        return default

    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = (os.environ.get(key) or "").split("#")[0].strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class VoiceConfig:
    """Voice agent configuration."""

    # Gemini
    gemini_api_key: str
    live_model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    analysis_model: str = "gemini-2.5-flash"
    voice: str = "Kore"

    # Audio
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    capture_block_size: int = 4096

    # Supervision
    max_reconnect_attempts: int = 3
    heal_timeout_seconds: float = 5.0

    # Collaborators
    google_calendar_token: Optional[str] = None
    scenario: str = "default"

    # Control plane
    control_plane_host: str = "127.0.0.1"
    control_plane_port: int = 8000

    @classmethod
    def from_env(cls) -> "VoiceConfig":
        """Load configuration from environment variables."""
        return cls(
            gemini_api_key=os.environ["GEMINI_API_KEY"],
            live_model=os.environ.get("GEMINI_LIVE_MODEL", cls.live_model),
            analysis_model=os.environ.get("GEMINI_ANALYSIS_MODEL", cls.analysis_model),
            voice=os.environ.get("GEMINI_VOICE", cls.voice),
            input_sample_rate=_parse_int_env("INPUT_SAMPLE_RATE", default=16000),
            output_sample_rate=_parse_int_env("OUTPUT_SAMPLE_RATE", default=24000),
            capture_block_size=_parse_int_env("CAPTURE_BLOCK_SIZE", default=4096),
            max_reconnect_attempts=_parse_int_env("MAX_RECONNECT_ATTEMPTS", default=3),
            heal_timeout_seconds=_parse_float_env("HEAL_TIMEOUT_SECONDS", default=5.0),
            google_calendar_token=os.environ.get("GOOGLE_CALENDAR_TOKEN") or None,
            scenario=os.environ.get("AGENT_SCENARIO", "default"),
            control_plane_host=os.environ.get("CONTROL_PLANE_HOST", "127.0.0.1"),
            control_plane_port=_parse_int_env("CONTROL_PLANE_PORT", default=8000),
        )


def get_config() -> VoiceConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = VoiceConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[VoiceConfig] = None
