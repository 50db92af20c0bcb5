from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    portfolio_id: str = "default"
    starting_cash_usd: float = Field(default=10000, ge=0, le=100_000_000)
    timezone: str = "UTC"

    # Market data
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: str = ""
    market_request_timeout_seconds: float = Field(default=10, ge=1, le=120)
    market_max_workers: int = Field(default=8, ge=1, le=64)
    volume_baseline_hours: float = Field(default=24, ge=1, le=168)
    news_feed_urls_csv: str = "https://www.coindesk.com/arc/outboundfeeds/rss/,https://cointelegraph.com/rss"
    news_request_timeout_seconds: int = Field(default=12, ge=3, le=60)
    news_max_items_per_feed: int = Field(default=25, ge=5, le=200)
    news_max_items_per_symbol: int = Field(default=8, ge=1, le=50)

    # Network resilience
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0, le=300)
    breaker_failure_threshold: int = Field(default=5, ge=1, le=100)
    breaker_cooldown_seconds: float = Field(default=60.0, ge=1, le=3600)
    breaker_success_threshold: int = Field(default=2, ge=1, le=20)

    # Verdict generator
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: int = Field(default=60, ge=5, le=300)
    openai_max_output_tokens: int = Field(default=1000, ge=64, le=4096)
    openai_temperature: float = Field(default=0.7, ge=0, le=2)
    verdict_timeout_seconds: float = Field(default=90, ge=1, le=600)
    verdict_max_workers: int = Field(default=3, ge=1, le=16)

    # Discovery / recommendations
    discovery_profile: Literal["conservative", "moderate", "aggressive", "debug"] = "moderate"
    discovery_universe_size: int = Field(default=50, ge=1, le=250)
    discovery_store_top_n: int = Field(default=10, ge=1, le=100)
    discovery_profiles_path: Path = Path("config/discovery_profiles.yaml")
    max_entry_recommendations: int = Field(default=3, ge=0, le=25)
    max_exit_recommendations: int = Field(default=3, ge=0, le=25)
    min_verdict_confidence: float = Field(default=60, ge=0, le=100)
    recommendation_ttl_hours: float = Field(default=4, ge=0.1, le=168)

    # Paper execution costs
    fee_rate: float = Field(default=0.001, ge=0, le=0.05)
    min_slippage_rate: float = Field(default=0.001, ge=0, le=0.05)
    max_slippage_rate: float = Field(default=0.003, ge=0, le=0.05)

    # Risk limits
    max_position_pct: float = Field(default=0.05, ge=0.001, le=1)
    manual_position_warn_pct: float = Field(default=0.20, ge=0.001, le=1)
    manual_position_alarm_pct: float = Field(default=0.50, ge=0.001, le=1)
    max_stop_loss_pct: float = Field(default=0.10, ge=0.001, le=1)
    max_open_positions: int = Field(default=5, ge=1, le=100)
    max_daily_loss_pct: float = Field(default=0.03, ge=0.001, le=1)
    min_trade_interval_minutes: int = Field(default=60, ge=0, le=10080)
    min_volume_24h_usd: float = Field(default=1_000_000, ge=0, le=1e12)
    risk_per_trade_pct: float = Field(default=0.02, ge=0.001, le=1)

    # Position monitor
    take_profit_strategy: Literal["full", "partial"] = "full"
    partial_take_profit_fraction: float = Field(default=0.5, gt=0, lt=1)
    trailing_stop_pct: float = Field(default=0.05, ge=0.001, le=0.5)

    # Auto execution
    auto_execute_enabled: bool = False
    auto_execute_min_confidence: float = Field(default=70, ge=0, le=100)
    position_sizing_strategy: Literal["equal", "confidence"] = "equal"

    # Scheduling
    discovery_interval_minutes: int = Field(default=120, ge=1, le=10080)
    recommendation_interval_minutes: int = Field(default=240, ge=1, le=10080)
    monitor_interval_minutes: int = Field(default=5, ge=1, le=1440)
    auto_execute_interval_minutes: int = Field(default=5, ge=1, le=1440)
    service_heartbeat_seconds: int = Field(default=15, ge=1, le=300)
    shutdown_timeout_seconds: float = Field(default=30, ge=1, le=600)

    # Service
    log_level: str = "INFO"
    log_file: Path | None = None
    db_path: Path = Path("data/paper_advisor.sqlite3")
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1, le=65535)
    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "daily_loss_halt,stop_loss,take_profit,stage_failed,circuit_open"

    @model_validator(mode="after")
    def validate_bands(self) -> "Settings":
        if self.min_slippage_rate > self.max_slippage_rate:
            raise ValueError("MIN_SLIPPAGE_RATE must not exceed MAX_SLIPPAGE_RATE")
        if self.max_position_pct > self.manual_position_warn_pct:
            raise ValueError("MAX_POSITION_PCT must not exceed MANUAL_POSITION_WARN_PCT")
        if self.openai_timeout_seconds > self.verdict_timeout_seconds:
            raise ValueError("OPENAI_TIMEOUT_SECONDS must not exceed VERDICT_TIMEOUT_SECONDS")
        return self


settings = Settings()
