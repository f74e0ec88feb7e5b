from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Load .env from the project root and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "CityWeather API"
    app_version: str = "0.1.0"
    debug: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 3000

    # OpenWeatherMap
    openweather_api_key: str | None = Field(default=None, description="API key sent as `appid` to OpenWeatherMap.")
    openweather_base_url: str = Field(
        default="https://api.openweathermap.org",
        description="Base URL for geocoding, current weather and One Call endpoints.",
    )
    weather_user_agent: str = Field(
        default="CityWeather/0.1.0 (support@example.com)",
        description="User-Agent sent to upstream providers.",
    )
    weather_request_timeout: float = Field(default=10.0, ge=1.0, description="Timeout in seconds for upstream HTTP calls")
    default_location: str = Field(default="Bydgoszcz", description="City used when a request omits the location.")
    forecast_model_name: str = Field(
        default="openweathermap",
        description="Value stored in weather_forecasts.model_used for provider forecasts.",
    )
    backfill_pacing_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay between hourly time-machine calls during a history backfill.",
    )

    # Persistence
    database_path: str = Field(
        default="data/cityweather.sqlite",
        description="SQLite database holding locations, observations, forecasts and the request log.",
    )
    request_log_retention_days: int = Field(
        default=30,
        ge=0,
        description="Days of api_requests rows to keep. Set to 0 to keep the audit log forever.",
    )

    # Rate limiting
    weather_rate_limit: str = Field(default="10/day", description="Per-user quota for weather ingestion routes.")
    api_rate_limit: str = Field(default="100/15 minutes", description="Per-address quota for every /api/ request.")
    rate_limit_storage_uri: str = Field(default="memory://", description="Counter storage for the rate limiters.")
    rate_limit_exempt_username: str | None = Field(
        default="admin",
        description="Username that bypasses the per-user weather quota. Leave blank to exempt nobody.",
    )

    # Language-model commentary
    llm_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API base URL.")
    llm_api_key: str | None = Field(default=None, description="Bearer key for the chat-completions endpoint.")
    llm_model: str = Field(default="gpt-4o-mini")
    llm_max_tokens: int = Field(default=300, ge=16, le=4096)
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_request_timeout: float = Field(default=20.0, ge=1.0)
    commentary_fallback: str = Field(
        default="Commentary is unavailable right now.",
        description="Text returned when the commentary call fails.",
    )

    # Access tokens
    auth_jwt_secret: str = Field(default="change-me-in-production", min_length=8)
    auth_jwt_issuer: str = "cityweather"
    auth_jwt_audience: str = "cityweather-clients"
    auth_jwt_algorithm: str = "HS256"
    auth_access_token_ttl_seconds: int = Field(default=3600, ge=60)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("rate_limit_exempt_username", "openweather_api_key", "llm_api_key", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

settings = Settings()
