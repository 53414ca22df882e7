"""
Configuration management for the outbound restock dialer.

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


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    ring_timeout_seconds: int = 60

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2-phonecall"

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "openai"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-3.5-turbo"
    completion_temperature: float = 0.3
    completion_max_tokens: int = 100

    # OpenAI (TTS)
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "nova"
    tts_rate: str = "0%"
    tts_pitch: str = "+5%"
    tts_volume: str = "medium"
    tts_style: str = "conversation"

    # Response cache
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 100

    # Inbound audio buffering
    buffer_chunk_size: int = 1024
    buffer_max_size: int = 16384

    # Call lifecycle timers
    settle_delay_seconds: float = 2.0
    no_speech_timeout_seconds: float = 10.0
    max_timeout_attempts: int = 3
    hangup_pause_seconds: float = 1.0
    session_grace_seconds: float = 60.0
    temp_audio_ttl_seconds: float = 30.0

    # Storage
    history_dir: str = "call_history"
    temp_audio_dir: str = "temp_audio"

    # Agent settings
    agent_name: str = "Sarah"
    company_name: str = "US Hotel Food Supplies"
    system_prompt: str = ""

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def completion_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.twilio_phone_number:
            missing.append("TWILIO_PHONE_NUMBER")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        # Speech synthesis always goes through OpenAI
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai" and not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.buffer_chunk_size <= 0 or self.buffer_max_size < self.buffer_chunk_size:
            raise ConfigError(
                "BUFFER_CHUNK_SIZE must be positive and not larger than BUFFER_MAX_SIZE"
            )
        if self.cache_max_entries <= 0:
            raise ConfigError("CACHE_MAX_ENTRIES must be positive")
        if self.max_timeout_attempts <= 0:
            raise ConfigError("MAX_TIMEOUT_ATTEMPTS must be positive")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.completion_model,
            tts_model=self.openai_tts_model,
            tts_voice=self.openai_tts_voice,
            deepgram_model=self.deepgram_model,
            cache_ttl_seconds=self.cache_ttl_seconds,
            cache_max_entries=self.cache_max_entries,
            no_speech_timeout_seconds=self.no_speech_timeout_seconds,
            agent_name=self.agent_name,
            company_name=self.company_name,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            twilio_number_set=bool(self.twilio_phone_number),
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


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
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        ring_timeout_seconds=_get_int("RING_TIMEOUT_SECONDS", 60),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2-phonecall"),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"),
        completion_temperature=_get_float("COMPLETION_TEMPERATURE", 0.3),
        completion_max_tokens=_get_int("COMPLETION_MAX_TOKENS", 100),

        # TTS
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "nova"),
        tts_rate=os.getenv("TTS_RATE", "0%"),
        tts_pitch=os.getenv("TTS_PITCH", "+5%"),
        tts_volume=os.getenv("TTS_VOLUME", "medium"),
        tts_style=os.getenv("TTS_STYLE", "conversation"),

        # Cache
        cache_ttl_seconds=_get_float("CACHE_TTL_SECONDS", 300.0),
        cache_max_entries=_get_int("CACHE_MAX_ENTRIES", 100),

        # Buffering
        buffer_chunk_size=_get_int("BUFFER_CHUNK_SIZE", 1024),
        buffer_max_size=_get_int("BUFFER_MAX_SIZE", 16384),

        # Timers
        settle_delay_seconds=_get_float("SETTLE_DELAY_SECONDS", 2.0),
        no_speech_timeout_seconds=_get_float("NO_SPEECH_TIMEOUT_SECONDS", 10.0),
        max_timeout_attempts=_get_int("MAX_TIMEOUT_ATTEMPTS", 3),
        hangup_pause_seconds=_get_float("HANGUP_PAUSE_SECONDS", 1.0),
        session_grace_seconds=_get_float("SESSION_GRACE_SECONDS", 60.0),
        temp_audio_ttl_seconds=_get_float("TEMP_AUDIO_TTL_SECONDS", 30.0),

        # Storage
        history_dir=os.getenv("HISTORY_DIR", "call_history"),
        temp_audio_dir=os.getenv("TEMP_AUDIO_DIR", "temp_audio"),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Sarah"),
        company_name=os.getenv("COMPANY_NAME", "US Hotel Food Supplies"),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
