"""
Configuration management for the barbershop phone receptionist.

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

    # Business
    shop_name: str = "Old Line Barbershop"
    biz_timezone: str = "America/New_York"

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2-phonecall"
    deepgram_language: str = "en-US"
    deepgram_endpointing_ms: int = 250

    # OpenAI (intent classification + small talk)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.2

    # ElevenLabs (TTS)
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_latency: int = 4
    elevenlabs_stability: float = 0.4
    elevenlabs_similarity_boost: float = 0.8

    # Downstream webhooks (optional)
    faq_webhook_url: str = ""
    booking_webhook_url: str = ""

    # Twilio live transfer (optional)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    owner_phone: str = ""
    twilio_caller_id: str = ""

    # Call timing
    audio_batch_frames: int = 5
    reprompt_after_seconds: float = 25.0
    goodbye_after_seconds: float = 25.0
    hangup_drain_seconds: float = 8.0
    ask_dedupe_seconds: float = 1.2
    transfer_drain_seconds: float = 3.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def transfer_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.owner_phone)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if not self.elevenlabs_voice_id:
            missing.append("ELEVENLABS_VOICE_ID")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.audio_batch_frames < 1:
            raise ConfigError(
                f"Invalid AUDIO_BATCH_FRAMES '{self.audio_batch_frames}'. Expected 1 or more."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            shop_name=self.shop_name,
            biz_timezone=self.biz_timezone,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            openai_model=self.openai_model,
            audio_batch_frames=self.audio_batch_frames,
            reprompt_after_seconds=self.reprompt_after_seconds,
            goodbye_after_seconds=self.goodbye_after_seconds,
            hangup_drain_seconds=self.hangup_drain_seconds,
            transfer_enabled=self.transfer_enabled,
            faq_webhook_set=bool(self.faq_webhook_url),
            booking_webhook_set=bool(self.booking_webhook_url),
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
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
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Business
        shop_name=os.getenv("SHOP_NAME", "Old Line Barbershop"),
        biz_timezone=os.getenv("BIZ_TZ", "America/New_York"),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2-phonecall"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 250),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_temperature=_get_float("OPENAI_TEMPERATURE", 0.2),

        # ElevenLabs
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", ""),
        elevenlabs_latency=_get_int("ELEVENLABS_LATENCY", 4),
        elevenlabs_stability=_get_float("ELEVENLABS_STABILITY", 0.4),
        elevenlabs_similarity_boost=_get_float("ELEVENLABS_SIMILARITY_BOOST", 0.8),

        # Webhooks
        faq_webhook_url=os.getenv("FAQ_WEBHOOK_URL", ""),
        booking_webhook_url=os.getenv("BOOKING_WEBHOOK_URL", ""),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        owner_phone=os.getenv("OWNER_PHONE", ""),
        twilio_caller_id=os.getenv("TWILIO_CALLER_ID", ""),

        # Call timing
        audio_batch_frames=_get_int("AUDIO_BATCH_FRAMES", 5),
        reprompt_after_seconds=_get_float("REPROMPT_AFTER_SECONDS", 25.0),
        goodbye_after_seconds=_get_float("GOODBYE_AFTER_SECONDS", 25.0),
        hangup_drain_seconds=_get_float("HANGUP_DRAIN_SECONDS", 8.0),
        ask_dedupe_seconds=_get_float("ASK_DEDUPE_SECONDS", 1.2),
        transfer_drain_seconds=_get_float("TRANSFER_DRAIN_SECONDS", 3.0),
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
