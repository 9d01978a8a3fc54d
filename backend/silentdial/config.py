"""
SilentDial - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json: bool = False

    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000

    # --- Voice Provider ---
    # "elevenlabs" = real outbound calls through the ElevenLabs agent API
    # "simulator" = scripted dispatcher, no network access (development/tests)
    voice_provider: str = "elevenlabs"
    eleven_api_key: Optional[str] = None
    eleven_agent_id: Optional[str] = None
    eleven_phone_id: Optional[str] = None
    callee_number: Optional[str] = None
    eleven_api_base_url: str = "https://api.elevenlabs.io"
    eleven_ws_base_url: str = "wss://api.elevenlabs.io"
    provider_request_timeout_seconds: float = 30.0

    # --- Voice Channel ---
    channel_connect_timeout_seconds: float = 15.0
    channel_keepalive_interval_seconds: float = 30.0
    channel_max_payload_bytes: int = 1024 * 1024
    # How long intake waits for the channel to report open
    call_activation_timeout_seconds: float = 15.0

    # --- Request Rate Limiting (per caller) ---
    emergency_rate_limit_max: int = 5
    emergency_rate_limit_window_ms: int = 3_600_000
    voice_api_rate_limit_max: int = 5
    voice_api_rate_limit_window_ms: int = 60_000
    rate_limit_sweep_interval_seconds: float = 60.0

    # --- Call Admission ---
    max_calls_per_session: int = 1
    max_calls_per_minute: int = 3
    max_calls_per_hour: int = 10
    call_cooldown_ms: int = 30_000

    # --- Shutdown ---
    shutdown_grace_seconds: float = 1.0

    # --- Fallback Operator & Simulator Pacing ---
    fallback_greeting_delay_seconds: float = 2.0
    fallback_reply_delay_min_seconds: float = 3.0
    fallback_reply_delay_max_seconds: float = 5.0
    simulator_open_delay_seconds: float = 0.2
    simulator_reply_delay_seconds: float = 1.5

    # --- Security ---
    allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"

    @property
    def voice_integration_missing(self) -> Dict[str, bool]:
        """Which provider credentials are absent (True = missing). Never exposes values."""
        return {
            "ELEVEN_API_KEY": not self.eleven_api_key,
            "ELEVEN_AGENT_ID": not self.eleven_agent_id,
            "ELEVEN_PHONE_ID": not self.eleven_phone_id,
            "CALLEE_NUMBER": not self.callee_number,
        }

    @property
    def voice_integration_configured(self) -> bool:
        """True when every provider credential is present."""
        return not any(self.voice_integration_missing.values())


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()
