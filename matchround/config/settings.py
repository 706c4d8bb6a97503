"""
Runtime Settings

Centralized configuration for the matching engine.
All values are loaded from environment variables (a local .env is honoured).
"""
import os

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on garbage."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    """
    Settings for the matching engine.

    Cooldown and apply cost are read at call time, so they can be changed
    per deployment (and monkeypatched in tests).
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./matchround.db")
    SQL_ECHO: bool = get_bool_env("SQL_ECHO", False)

    # Matching round
    MATCHING_CANCEL_COOLDOWN_MINUTES: int = get_int_env("MATCHING_CANCEL_COOLDOWN_MINUTES", 1)
    MATCHING_APPLY_COST: int = get_int_env("MATCHING_APPLY_COST", 5)
    MATCHING_STATUS_POLL_SECONDS: int = get_int_env("MATCHING_STATUS_POLL_SECONDS", 5)
    MATCHING_STORE_RETRY_BACKOFF_MS: int = get_int_env("MATCHING_STORE_RETRY_BACKOFF_MS", 100)

    # Stars
    STAR_INITIAL_BALANCE: int = get_int_env("STAR_INITIAL_BALANCE", 0)
    STAR_HISTORY_LIMIT: int = get_int_env("STAR_HISTORY_LIMIT", 20)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
