"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. The .env file is gitignored; secrets never live in source code.

Pydantic Settings resolves values in this order:
  1. Environment variables (highest priority)
  2. .env file values
  3. Defaults defined here (lowest priority)

Usage:
    from savings.config import settings
    print(settings.ACCESS_TOKEN_EXPIRE_MINUTES)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Savings API.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Signs access tokens
      - REFRESH_SECRET_KEY: Signs refresh tokens (independent of SECRET_KEY,
        so a leaked refresh key cannot mint access tokens)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Savings API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/savings.db"

    # --- Cache ---
    # Unset means the in-process MemoryCache is used (single instance only)
    REDIS_URL: str | None = None

    # --- Tokens ---
    SECRET_KEY: str
    REFRESH_SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # --- Login protection ---
    LOGIN_MAX_ATTEMPTS: int = 5
    LOGIN_ATTEMPT_WINDOW_SECONDS: int = 900
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60

    # --- One-time codes ---
    OTC_LENGTH: int = 6
    OTC_EXPIRE_MINUTES: int = 10

    # --- Device trust ---
    # Roles whose unknown devices are registered and trusted at login
    AUTO_TRUST_ROLES: list[str] = ["admin"]

    # --- Ledger ---
    # 99,999,999.99 expressed in cents
    MAX_BALANCE_CENTS: int = 9_999_999_999
    # PIN holders confirm transactions at or above this amount
    PENDING_THRESHOLD_CENTS: int = 100_000
    PENDING_EXPIRE_MINUTES: int = 20
    BANK_IDENTIFIER: str = "5730"

    # --- Background work ---
    SWEEP_INTERVAL_SECONDS: int = 300
    QUEUE_MAX_ATTEMPTS: int = 3
    RUN_BACKGROUND_TASKS: bool = True

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
