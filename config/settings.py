"""
Configuration loader for the Lounge voice agent.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class TriggerConfig:
    phrases: list[str] = field(default_factory=lambda: ["lounge"])
    # Whisper tends to hallucinate these on near-silent input
    ignore_phrases: list[str] = field(default_factory=lambda: [
        "thank you", "thanks for watching", "you",
    ])


@dataclass
class CaptureConfig:
    silence_timeout_ms: int = 1000          # trailing silence that ends an utterance
    recordings_dir: str = "./recordings"
    input_sample_rate: int = 48000          # decoded opus frames
    input_channels: int = 1
    output_sample_rate: int = 16000
    output_bitrate: str = "64k"
    ffmpeg_path: str = "ffmpeg"
    min_utterance_seconds: float = 2.0
    error_backoff_s: float = 0.5


@dataclass
class STTConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "whisper-1"
    language: str = ""
    timeout_s: float = 30.0


@dataclass
class LLMConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4.1-mini"
    temperature: float = 0.7
    max_tokens: int = 512
    memory_size: int = 20                   # messages kept per speaker, system prompt excluded
    system_prompt: str = (
        "You are a friendly voice assistant sitting in a group voice chat. "
        "Answer in plain spoken language, keep it short, never use markdown."
    )
    timeout_s: float = 60.0


@dataclass
class SearchConfig:
    enabled: bool = False
    base_url: str = "https://api.perplexity.ai"
    api_key: str = ""
    model: str = "sonar"
    system_prompt: str = (
        "Answer the question using current web results. "
        "Reply in two or three spoken sentences without links or markdown."
    )
    timeout_s: float = 60.0


@dataclass
class TTSConfig:
    base_url: str = "https://api.elevenlabs.io/v1"
    api_key: str = ""
    voice_id: str = ""
    model_id: str = "eleven_flash_v2_5"
    max_chunk_words: int = 60
    output_dir: str = "./sounds/tts"
    timeout_s: float = 30.0


@dataclass
class VoiceConversionConfig:
    enabled: bool = False
    url: str = ""
    timeout_s: float = 60.0


@dataclass
class PlaybackConfig:
    max_retries: int = 5                    # waits for a missing chunk before giving up
    retry_delay_s: float = 1.0
    speech_volume: float = 1.0
    cue_volume: float = 0.6
    sounds_dir: str = "./sounds"


@dataclass
class Settings:
    app_name: str = "Lounge"
    timezone: str = "UTC"
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    voice_conversion: VoiceConversionConfig = field(default_factory=VoiceConversionConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


_UNRESOLVED = re.compile(r'^\$\{\w+\}$')


def _section(cls, raw: Any):
    """
    Build a config section dataclass, ignoring unknown keys.
    Values left as an unresolved ${VAR} fall back to the field default.
    """
    if not isinstance(raw, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{
        k: v for k, v in raw.items()
        if k in known and not (isinstance(v, str) and _UNRESOLVED.match(v))
    })


_SECTIONS = {
    "triggers": TriggerConfig,
    "capture": CaptureConfig,
    "stt": STTConfig,
    "llm": LLMConfig,
    "search": SearchConfig,
    "tts": TTSConfig,
    "voice_conversion": VoiceConversionConfig,
    "playback": PlaybackConfig,
}


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "LOUNGE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.timezone = raw.get("timezone", settings.timezone)

        for name, cls in _SECTIONS.items():
            if name in raw:
                setattr(settings, name, _section(cls, raw[name]))

        # Single string is accepted for the trigger list, e.g. from an env var
        phrases = settings.triggers.phrases
        if isinstance(phrases, str):
            settings.triggers.phrases = [p.strip() for p in phrases.split(",") if p.strip()]

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
