"""
Configuration management for the Plivo voice-turn orchestrator.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a voice-based AI assistant on a phone call. You can hear the caller "
    "through speech recognition and respond verbally. Keep responses brief, natural, "
    "and focused. You should be professional but conversational."
)

DEFAULT_GREETING = "Hello, this is your AI assistant. How may I help?"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Deepgram (STT + TTS)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-3"
    deepgram_language: str = "en-US"
    audio_encoding: str = "mulaw"
    audio_sample_rate: int = 8000
    audio_channels: int = 1
    tts_model: str = "aura-2-thalia-en"
    tts_streaming: bool = True

    # OpenAI (reply generation)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 10.0
    llm_temperature: float = 0.7
    llm_max_tokens: int = 100
    llm_top_p: float = 0.9

    # Supabase (best-effort persistence)
    supabase_url: str = ""
    supabase_service_key: str = ""
    store_timeout_seconds: float = 5.0

    # Transcription link
    stt_connect_timeout_seconds: float = 5.0
    stt_connect_attempts: int = 3
    stt_retry_delay_seconds: float = 1.5

    # Synthesis retry
    tts_attempts: int = 3
    tts_retry_delay_seconds: float = 1.0

    # Segmentation
    silence_threshold_ms: int = 1500
    min_confidence: float = 0.7
    min_utterance_chars: int = 2
    min_utterance_words: int = 1

    # Session
    max_history_messages: int = 9
    keepalive_interval_seconds: float = 30.0
    teardown_timeout_seconds: float = 2.0
    rate_limit_max_requests: int = 50
    rate_limit_window_seconds: float = 60.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    greeting_text: str = DEFAULT_GREETING

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def ws_url(self) -> str:
        """Get the media stream WebSocket URL."""
        return f"wss://{self.public_host}/listen"

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if bool(self.supabase_url) != bool(self.supabase_service_key):
            raise ConfigError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set together."
            )
        if self.stt_connect_attempts < 1 or self.tts_attempts < 1:
            raise ConfigError("Retry attempt counts must be at least 1.")
        if self.min_utterance_chars < 0 or self.min_utterance_words < 0:
            raise ConfigError("Utterance quality thresholds cannot be negative.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            tts_model=self.tts_model,
            tts_streaming=self.tts_streaming,
            llm_model=self.openai_model,
            silence_threshold_ms=self.silence_threshold_ms,
            min_utterance_chars=self.min_utterance_chars,
            min_utterance_words=self.min_utterance_words,
            rate_limit=f"{self.rate_limit_max_requests}/{self.rate_limit_window_seconds}s",
            persistence_enabled=self.persistence_enabled,
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    public_host = os.getenv("PUBLIC_HOST", "") or os.getenv("BASE_URL", "")
    public_host = public_host.replace("https://", "").replace("http://", "").rstrip("/")

    return Config(
        # Server
        public_host=public_host,
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-3"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        tts_model=os.getenv("TTS_MODEL", "aura-2-thalia-en"),
        tts_streaming=_get_bool("TTS_STREAMING", True),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 10.0),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 100),
        llm_top_p=_get_float("LLM_TOP_P", 0.9),

        # Supabase
        supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
        supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY", ""),
        store_timeout_seconds=_get_float("STORE_TIMEOUT_SECONDS", 5.0),

        # Transcription link
        stt_connect_timeout_seconds=_get_float("STT_CONNECT_TIMEOUT_SECONDS", 5.0),
        stt_connect_attempts=_get_int("STT_CONNECT_ATTEMPTS", 3),
        stt_retry_delay_seconds=_get_float("STT_RETRY_DELAY_SECONDS", 1.5),

        # Synthesis retry
        tts_attempts=_get_int("TTS_ATTEMPTS", 3),
        tts_retry_delay_seconds=_get_float("TTS_RETRY_DELAY_SECONDS", 1.0),

        # Segmentation
        silence_threshold_ms=_get_int("SILENCE_THRESHOLD_MS", 1500),
        min_confidence=_get_float("MIN_CONFIDENCE", 0.7),
        min_utterance_chars=_get_int("MIN_UTTERANCE_CHARS", 2),
        min_utterance_words=_get_int("MIN_UTTERANCE_WORDS", 1),

        # Session
        max_history_messages=_get_int("MAX_HISTORY_MESSAGES", 9),
        keepalive_interval_seconds=_get_float("KEEPALIVE_INTERVAL_SECONDS", 30.0),
        teardown_timeout_seconds=_get_float("TEARDOWN_TIMEOUT_SECONDS", 2.0),
        rate_limit_max_requests=_get_int("RATE_LIMIT_MAX_REQUESTS", 50),
        rate_limit_window_seconds=_get_float("RATE_LIMIT_WINDOW_SECONDS", 60.0),
        system_prompt=os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        greeting_text=os.getenv("GREETING_TEXT", DEFAULT_GREETING),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
