from __future__ import annotations

import os
from dataclasses import dataclass

from finpulse.errors import InvalidInput

DEFAULT_SUPPORTED_CURRENCIES = (
    "USD",
    "EUR",
    "GBP",
    "JPY",
    "CAD",
    "AUD",
    "NZD",
    "CHF",
    "SEK",
    "CNY",
)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise InvalidInput("Currency must be a 3-letter ISO 4217 code.")
    return normalized


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./finpulse.db"
    base_currency: str = "USD"
    supported_currencies: tuple[str, ...] = DEFAULT_SUPPORTED_CURRENCIES
    rates_url: str = "https://api.exchangerate-api.com/v4/latest"
    rates_ttl_seconds: float = 60 * 60
    rates_timeout_seconds: float = 8
    rate_history_url: str = "https://api.frankfurter.dev/v1"
    rate_history_ttl_seconds: float = 24 * 60 * 60
    rate_history_timeout_seconds: float = 15
    frontend_origin: str = "http://localhost:3000"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            base_currency=_env_currency("BASE_CURRENCY", cls.base_currency),
            supported_currencies=_env_currency_list(
                "SUPPORTED_CURRENCIES", DEFAULT_SUPPORTED_CURRENCIES
            ),
            rates_url=os.getenv("RATES_URL", cls.rates_url),
            rates_ttl_seconds=_env_float("RATES_TTL_SECONDS", cls.rates_ttl_seconds),
            rates_timeout_seconds=_env_float(
                "RATES_TIMEOUT_SECONDS", cls.rates_timeout_seconds
            ),
            rate_history_url=os.getenv("RATE_HISTORY_URL", cls.rate_history_url),
            rate_history_ttl_seconds=_env_float(
                "RATE_HISTORY_TTL_SECONDS", cls.rate_history_ttl_seconds
            ),
            rate_history_timeout_seconds=_env_float(
                "RATE_HISTORY_TIMEOUT_SECONDS", cls.rate_history_timeout_seconds
            ),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


def _env_currency(name: str, fallback: str) -> str:
    raw = os.getenv(name, fallback)
    try:
        return normalize_currency(raw)
    except InvalidInput:
        return fallback


def _env_currency_list(name: str, fallback: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return fallback
    codes: list[str] = []
    for part in raw.split(","):
        if not part.strip():
            continue
        try:
            code = normalize_currency(part)
        except InvalidInput:
            continue
        if code not in codes:
            codes.append(code)
    return tuple(codes) or fallback


def _env_float(name: str, fallback: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    return value if value > 0 else fallback
