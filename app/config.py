from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_FALLBACK_TICKERS = (
    "AAPL,MSFT,NVDA,AMZN,GOOGL,META,BRK.B,AVGO,TSLA,JPM,"
    "LLY,V,UNH,XOM,MA,JNJ,PG,HD,COST,WMT"
)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, populate_by_name=True)
    market_data_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MARKET_DATA_API_KEY", "ALPHA_VANTAGE_API_KEY"),
    )
    market_data_base_url: str = Field(default="https://www.alphavantage.co/query", alias="MARKET_DATA_BASE_URL")
    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    http_retry_attempts: int = Field(default=3, alias="HTTP_RETRY_ATTEMPTS")
    http_retry_backoff_seconds: float = Field(default=1.0, alias="HTTP_RETRY_BACKOFF_SECONDS")
    db_path: str = Field(default="./data/app.db", alias="DB_PATH")
    # Rate budget (per provider call)
    market_data_tickers_per_minute: int = Field(default=5, alias="MARKET_DATA_TICKERS_PER_MINUTE")
    market_data_tickers_per_day: int = Field(default=500, alias="MARKET_DATA_TICKERS_PER_DAY")
    rate_limit_cooldown_seconds: float = Field(default=60.0, alias="RATE_LIMIT_COOLDOWN_SECONDS")
    # Metrics cache
    metrics_schema_version: int = Field(default=1, alias="METRICS_SCHEMA_VERSION")
    cache_memory_ttl_seconds: int = Field(default=1800, alias="CACHE_MEMORY_TTL_SECONDS")
    cache_durable_ttl_seconds: int = Field(default=86400, alias="CACHE_DURABLE_TTL_SECONDS")
    # Warm scheduler
    market_data_warm_interval_seconds: float = Field(default=60.0, alias="MARKET_DATA_WARM_INTERVAL_SECONDS")
    market_data_warm_batch_size: int = Field(default=20, alias="MARKET_DATA_WARM_BATCH_SIZE")
    warm_universe_ttl_seconds: int = Field(default=21600, alias="WARM_UNIVERSE_TTL_SECONDS")
    warm_schedule_enabled: int = Field(default=0, alias="WARM_SCHEDULE_ENABLED")
    universe_fallback_tickers: str = Field(default=DEFAULT_FALLBACK_TICKERS, alias="UNIVERSE_FALLBACK_TICKERS")
    universe_csv: str = Field(default="./universe.csv", alias="UNIVERSE_CSV")
    benchmark_ticker: str = Field(default="SPY", alias="BENCHMARK_TICKER")
    # Weekly settlement
    settlement_call_delay_seconds: float = Field(default=12.0, alias="SETTLEMENT_CALL_DELAY_SECONDS")
    scoring_cron_secret: str | None = Field(default=None, alias="SCORING_CRON_SECRET")
    # Auxiliary fundamentals (SEC EDGAR)
    edgar_enable: int = Field(default=1, alias="EDGAR_ENABLE")
    sec_user_agent: str = Field(default="market-metrics-service (ops@example.com)", alias="SEC_USER_AGENT")
    cache_dir: str = Field(default="./.cache", alias="CACHE_DIR")
    cache_db_path: str = Field(default="./data/cache.sqlite3", alias="CACHE_DB_PATH")
    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_error_file: str = Field(default="", alias="LOG_ERROR_FILE")

    def fallback_tickers(self) -> list[str]:
        raw = self.universe_fallback_tickers or ""
        return [part.strip().upper() for part in raw.split(",") if part.strip()]

settings = Settings()
