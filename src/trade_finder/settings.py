from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    trade_finder_enabled: bool = True
    trade_finder_symbols_csv: str = "NQ,ES,YM,GC,RTY"
    trade_finder_interval_seconds: int = Field(default=300, ge=30, le=86400)
    event_lookback_minutes: int = Field(default=90, ge=1, le=10080)
    ohlc_candle_count: int = Field(default=100, ge=1, le=5000)
    # 0 derives the candle window from ohlc_candle_count x timeframe duration
    candle_lookback_minutes: int = Field(default=0, ge=0, le=525600)
    trade_expiry_hours: int = Field(default=4, ge=1, le=168)
    analysis_profile: str = "SILVER_BULLET_WINDOW"
    system_prompt_path: Path | None = None
    confidence_threshold_high: int = Field(default=80, ge=0, le=100)
    confidence_threshold_medium: int = Field(default=60, ge=0, le=100)

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4.1"
    openai_timeout_seconds: int = Field(default=120, ge=5, le=600)
    openai_max_output_tokens: int = Field(default=16000, ge=64, le=128000)
    openai_temperature: float | None = Field(default=0.7, ge=0, le=2)
    openai_store_responses: bool = True
    openai_max_retries: int = Field(default=3, ge=0, le=10)
    openai_retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=30)
    openai_logging_enabled: bool = True

    workflow_prompts_path: Path | None = None
    workflow_max_output_tokens: int = Field(default=2000, ge=64, le=128000)

    expiry_sweep_minutes: int = Field(default=15, ge=1, le=1440)
    statistics_sweep_minutes: int = Field(default=60, ge=1, le=1440)
    statistics_window_hours: int = Field(default=24, ge=1, le=720)
    conversation_expiry_hours: int = Field(default=24, ge=1, le=720)
    conversation_cleanup_minutes: int = Field(default=60, ge=1, le=1440)

    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "trade_identified,pipeline_error"

    timezone: str = "America/New_York"
    service_heartbeat_seconds: int = Field(default=15, ge=5, le=300)
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1, le=65535)
    log_level: str = "INFO"
    log_file_path: Path | None = None
    db_path: Path = Path("data/trade_finder.sqlite3")

    @property
    def symbols(self) -> list[str]:
        return [item.strip().upper() for item in self.trade_finder_symbols_csv.split(",") if item.strip()]

    @model_validator(mode="after")
    def validate_confidence_tiers(self) -> "Settings":
        if self.confidence_threshold_medium >= self.confidence_threshold_high:
            raise ValueError(
                "CONFIDENCE_THRESHOLD_MEDIUM must be lower than CONFIDENCE_THRESHOLD_HIGH."
            )
        return self


settings = Settings()
