import logging
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Currency

DEFAULT_CURRENCY_CODE = "credits"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _default_currencies() -> list[Currency]:
    return [Currency(code=DEFAULT_CURRENCY_CODE, name="Credits", symbol="pts")]


class LedgerSettings(BaseSettings):
    """Engine configuration, resolved once and passed into components.

    Values come from ``LEDGER_*`` environment variables or a ``.env`` file.
    ``LEDGER_CURRENCIES`` accepts a JSON list of currency definitions.
    """

    database_url: Optional[str] = None
    max_attempts: int = Field(default=5, ge=1)
    attempt_timeout_seconds: float = Field(default=2.0, gt=0)
    retry_backoff_seconds: float = Field(default=0.005, ge=0)
    cache_ttl_seconds: float = Field(default=30.0, ge=0)
    cache_max_entries: int = Field(default=10_000, ge=1)
    default_currency: str = DEFAULT_CURRENCY_CODE
    check_in_timezone: str = "UTC"
    allow_inactive_account_creation: bool = False
    log_level: str = "INFO"
    currencies: list[Currency] = Field(default_factory=_default_currencies)

    model_config = SettingsConfigDict(env_prefix="LEDGER_", env_file=".env", extra="ignore")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
