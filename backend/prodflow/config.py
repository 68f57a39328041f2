from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    DEBUG: bool = False

    # DATABASE_URL is injected by the platform (Supabase/Postgres). Engines are
    # built lazily in prodflow.database so tests can bind their own.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # MercadoLibre application credentials used for the refresh_token grant.
    MELI_APP_ID: Optional[str] = None
    MELI_CLIENT_SECRET: Optional[str] = None
    MELI_API_BASE_URL: str = "https://api.mercadolibre.com"

    # Shared secret for the HTTP trigger endpoints (cron, queue drain). When
    # unset the endpoints are open, which is only acceptable locally.
    INTERNAL_API_KEY: Optional[str] = None

    # Listings per page task. One page must finish well inside the
    # invocation budget below.
    SYNC_BATCH_SIZE: int = 150
    # Rows per query when loading inventory / supplier feeds.
    STORE_PAGE_SIZE: int = 1000

    # Marketplace limits.
    MINIMUM_PRICE: float = 350.00
    MAX_STOCK_ALLOWED: int = 999999

    # Retry policy for PUT /items (409/429/transport errors).
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    # Fixed pause between consecutive update calls.
    UPDATE_CALL_DELAY_SECONDS: float = 0.25
    MAX_CONCURRENT_UPDATES: int = 10

    # Soft wall-clock budget for one invocation (platform hard limit is ~5 min).
    EXECUTION_BUDGET_SECONDS: int = 240

    TOKEN_REFRESH_THRESHOLD_MINUTES: int = 5

    MAX_PAGE_ATTEMPTS: int = 3
    RUN_STALE_MINUTES: int = 10

    # In-process loop; off when an external cron calls the trigger endpoints.
    RUN_SYNC_LOOP: bool = False
    SYNC_LOOP_INTERVAL_SECONDS: int = 300
    MAX_CONCURRENT_TENANTS: int = 5

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
