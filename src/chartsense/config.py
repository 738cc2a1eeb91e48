"""
Configuration Module
====================

Application configuration using pydantic-settings.
All settings can be overridden via environment variables or a .env file.

Environment variables:
    LOG_LEVEL              - Logging level (default: INFO)
    HTTP_HOST / HTTP_PORT  - Control API bind address
    CAPTURE_SOURCE         - screen | images
    CAPTURE_FPS            - Extraction rate of the capture loop (default: 5)
    ANALYSIS_COOLDOWN_SEC  - Minimum interval between oracle cycles (default: 100)
    ORACLE_API_KEY         - Oracle (Gemini) API key; empty disables the oracle
    VOICE_ENABLED          - Speak oracle reasoning (default: true)
    STORAGE_DIR            - Directory for signal JSONL files

Production notes:
    - Without ORACLE_API_KEY every cycle degrades to a REJECT/WAIT answer
    - CAPTURE_FPS above 10 buys nothing; the heuristics smooth over ~100 frames
"""

import logging
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chartsense.types import Mode, Personality


class Settings(BaseSettings):
    """
    Application settings.

    Example: CAPTURE_FPS=4 ANALYSIS_COOLDOWN_SEC=60 python -m chartsense
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # HTTP control API
    HTTP_HOST: str = Field(
        default="127.0.0.1",
        description="HTTP server bind host",
    )
    HTTP_PORT: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="HTTP server bind port",
    )

    # ========================================================================
    # Capture
    # ========================================================================

    CAPTURE_SOURCE: Literal["screen", "images"] = Field(
        default="screen",
        description="Frame source: live screen capture or an image directory replay",
    )
    CAPTURE_MONITOR: int = Field(
        default=1,
        ge=0,
        description="mss monitor index (0 = all monitors combined)",
    )
    CAPTURE_IMAGE_DIR: str = Field(
        default="data/frames",
        description="Directory replayed when CAPTURE_SOURCE=images",
    )
    CAPTURE_FPS: float = Field(
        default=5.0,
        gt=0.0,
        le=30.0,
        description="Frames per second fed to the feature extractor",
    )
    JPEG_QUALITY: int = Field(
        default=50,
        ge=10,
        le=95,
        description="JPEG quality of the frame sent to the oracle",
    )

    # ========================================================================
    # Analysis cadence
    # ========================================================================

    ANALYSIS_COOLDOWN_SEC: float = Field(
        default=100.0,
        ge=1.0,
        description="Minimum seconds between two oracle analysis cycles",
    )
    FIRST_SCAN_DELAY_SEC: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay of the first analysis cycle after capture starts",
    )
    LOG_CAPACITY: int = Field(
        default=15,
        ge=1,
        le=200,
        description="Number of entries kept in the analysis log",
    )

    # ========================================================================
    # Oracle
    # ========================================================================

    ORACLE_API_KEY: str = Field(
        default="",
        description="Gemini API key; empty means every cycle falls back to WAIT",
    )
    ORACLE_BASE_URL: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST base URL",
    )
    ORACLE_MODEL: str = Field(
        default="gemini-2.5-flash",
        description="Vision model used for confirmation",
    )
    ORACLE_TIMEOUT_SEC: float = Field(
        default=30.0,
        ge=1.0,
        le=120.0,
        description="Oracle request timeout",
    )
    ORACLE_TEMPERATURE: float = Field(
        default=0.1,
        ge=0.0,
        le=2.0,
        description="Sampling temperature of the oracle",
    )

    # ========================================================================
    # Voice
    # ========================================================================

    VOICE_ENABLED: bool = Field(
        default=True,
        description="Announce reasoning and outcomes by voice",
    )
    TTS_MODEL: str = Field(
        default="gemini-2.5-flash-preview-tts",
        description="Remote TTS model (uses ORACLE_API_KEY)",
    )
    VOICE_JARVIS: str = Field(
        default="Kore",
        description="Prebuilt TTS voice for the jarvis personality",
    )
    VOICE_ULTRON: str = Field(
        default="Charon",
        description="Prebuilt TTS voice for the ultron personality",
    )
    VOICE_PLAYER_CMD: str = Field(
        default="aplay -q",
        description="Command used to play synthesized WAV files (file path appended)",
    )

    # ========================================================================
    # Strategy defaults
    # ========================================================================

    DEFAULT_MODE: Mode = Field(
        default=Mode.BALANCED,
        description="Mode active at startup",
    )
    DEFAULT_PERSONALITY: Personality = Field(
        default=Personality.JARVIS,
        description="Personality active at startup",
    )

    # Persistence
    STORAGE_DIR: str = Field(
        default="data/signals",
        description="Directory for signal/outcome JSONL files",
    )

    @field_validator("DEFAULT_MODE", mode="before")
    @classmethod
    def mode_lowercase(cls, v):
        """Accept BALANCED / Balanced from the environment."""
        return v.lower() if isinstance(v, str) else v

    @field_validator("DEFAULT_PERSONALITY", mode="before")
    @classmethod
    def personality_lowercase(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def validate_and_warn(self) -> "Settings":
        """Log warnings for configurations that silently degrade."""
        logger = logging.getLogger(__name__)

        if not self.ORACLE_API_KEY:
            logger.warning(
                "config_oracle_disabled: ORACLE_API_KEY is empty, "
                "every analysis cycle will answer WAIT"
            )

        if self.DEFAULT_MODE is Mode.HEURISTIC_SAFETY:
            logger.warning(
                "config_default_mode_safety: starting in heuristic_safety, "
                "a win will restore balanced"
            )

        return self

    def dump(self) -> dict:
        """
        Dump current configuration as dictionary (secrets omitted).

        Returns:
            Dictionary with all configuration values.
        """
        return {
            "log_level": self.LOG_LEVEL,
            "http_host": self.HTTP_HOST,
            "http_port": self.HTTP_PORT,
            "capture_source": self.CAPTURE_SOURCE,
            "capture_monitor": self.CAPTURE_MONITOR,
            "capture_image_dir": self.CAPTURE_IMAGE_DIR,
            "capture_fps": self.CAPTURE_FPS,
            "jpeg_quality": self.JPEG_QUALITY,
            "analysis_cooldown_sec": self.ANALYSIS_COOLDOWN_SEC,
            "first_scan_delay_sec": self.FIRST_SCAN_DELAY_SEC,
            "log_capacity": self.LOG_CAPACITY,
            "oracle_enabled": bool(self.ORACLE_API_KEY),
            "oracle_base_url": self.ORACLE_BASE_URL,
            "oracle_model": self.ORACLE_MODEL,
            "oracle_timeout_sec": self.ORACLE_TIMEOUT_SEC,
            "voice_enabled": self.VOICE_ENABLED,
            "tts_model": self.TTS_MODEL,
            "voice_player_cmd": self.VOICE_PLAYER_CMD,
            "default_mode": self.DEFAULT_MODE.value,
            "default_personality": self.DEFAULT_PERSONALITY.value,
            "storage_dir": self.STORAGE_DIR,
        }


# Global settings instance
settings = Settings()
