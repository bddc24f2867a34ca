"""
Configuration loader for the voice agent.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_PHRASE_HINTS = [
    # greetings & responses
    "你好", "喂", "早晨", "午安", "晚安", "拜拜",
    "係咩", "點解", "唔該", "多謝", "唔好意思",
    "明白", "知道", "好嘅", "冇問題", "係啊", "唔係",
    "幫我", "想問", "可唔可以", "點樣", "邊度", "幾時",
    # places
    "中環", "尖沙咀", "旺角", "銅鑼灣", "港鐵", "巴士",
    "茶餐廳", "飲茶", "點心", "外賣", "睇戲", "行街",
    # everyday
    "講嘢", "聽日", "琴日", "而家", "之後", "跟住",
    "一陣", "等等", "即係", "咁樣", "嗰度", "呢度",
]

DEFAULT_WARMUP_PHRASES = [
    "好呀", "係呀", "明白", "冇問題", "唔該", "多謝", "你好",
    "我明白你嘅意思", "等我諗下", "好問題",
]


@dataclass
class LLMConfig:
    provider: str = "openai"                    # "openai" (OpenAI-compatible) | "anthropic"
    model: str = "openai/gpt-4o-mini"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    temperature: float = 0.8
    presence_penalty: float = 0.4
    frequency_penalty: float = 0.4
    max_tokens_mobile: int = 100
    max_tokens_desktop: int = 150
    default_personality: str = ""

    def max_tokens_for(self, is_mobile: bool, word_limit: Optional[int] = None) -> int:
        if word_limit:
            return int(word_limit)
        return self.max_tokens_mobile if is_mobile else self.max_tokens_desktop


@dataclass
class STTConfig:
    provider: str = "google"
    language_code: str = "yue-Hant-HK"
    sample_rate: int = 16000
    encoding: str = "LINEAR16"
    model: str = "latest_long"
    interim_results: bool = True
    automatic_punctuation: bool = True
    phrase_hints: list[str] = field(default_factory=lambda: list(DEFAULT_PHRASE_HINTS))
    phrase_boost: float = 30.0
    credentials_json: str = ""

    def to_google_params(self) -> dict[str, Any]:
        """Streaming recognition config, shaped for google-cloud-speech."""
        params: dict[str, Any] = {
            "encoding": self.encoding,
            "sample_rate_hertz": self.sample_rate,
            "language_code": self.language_code,
            "model": self.model,
            "enable_automatic_punctuation": self.automatic_punctuation,
        }
        if self.phrase_hints:
            params["speech_contexts"] = [
                {"phrases": list(self.phrase_hints), "boost": self.phrase_boost},
            ]
        return params


@dataclass
class TTSConfig:
    provider: str = "polly"
    voice_id: str = "Hiujin"
    engine: str = "neural"
    language_code: str = "yue-CN"
    output_format: str = "pcm"                  # "pcm" | "mp3"
    sample_rate: int = 16000
    region: str = "us-east-1"
    cache_max_entries: int = 200
    cache_max_text_length: int = 30
    warmup_phrases: list[str] = field(default_factory=lambda: list(DEFAULT_WARMUP_PHRASES))

    def to_polly_params(self) -> dict[str, Any]:
        return {
            "VoiceId": self.voice_id,
            "Engine": self.engine,
            "LanguageCode": self.language_code,
            "OutputFormat": self.output_format,
            "SampleRate": str(self.sample_rate),
        }


@dataclass
class SessionConfig:
    greeting: str = "你好！我係你嘅AI助手，可以用廣東話同你傾偈。有咩可以幫到你？"
    apology: str = "唔好意思，系統出咗啲問題..."
    history_limit: int = 20
    acceptance_confidence: float = 0.5
    speech_end_hangover_ms: int = 500
    min_fragment_chars: int = 3
    max_parallel_synthesis: int = 3
    reconnect_attempts: int = 3
    reconnect_delay_s: float = 1.0
    reconnect_max_delay_s: float = 8.0
    idle_timeout_s: int = 3600                  # evict sessions idle > 1h
    sweep_interval_s: int = 1800                # registry sweep every 30 min


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "info"


@dataclass
class Settings:
    app_name: str = "CantoVoiceAgent"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


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


def _apply(target: Any, values: dict[str, Any]) -> None:
    """Copy known keys onto a config dataclass; unknown keys are ignored."""
    for key, value in values.items():
        if hasattr(target, key):
            setattr(target, key, value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICE_AGENT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            _apply(settings.llm, raw["llm"])
        if "stt" in raw:
            _apply(settings.stt, raw["stt"])
        if "tts" in raw:
            _apply(settings.tts, raw["tts"])
        if "session" in raw:
            _apply(settings.session, raw["session"])
        if "server" in raw:
            _apply(settings.server, raw["server"])

    # Unresolved ${VAR} placeholders mean the variable was not set
    if settings.llm.api_key.startswith("${"):
        settings.llm.api_key = ""
    if settings.stt.credentials_json.startswith("${"):
        settings.stt.credentials_json = ""
    if settings.tts.region.startswith("${"):
        settings.tts.region = TTSConfig.region

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Get cached settings, loading if needed."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
