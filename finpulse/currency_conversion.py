from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Protocol

import httpx

from finpulse.config import Settings, normalize_currency
from finpulse.errors import RateProviderUnavailable, UnsupportedCurrency, UpstreamUnavailable

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_TIMEOUT_SECONDS = 8

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
    "CNY": Decimal("7.24"),
}


class RateProvider(Protocol):
    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]: ...


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    """Rates as units of each currency per 1 unit of ``base_currency``."""

    base_currency: str
    rates: Mapping[str, Decimal]
    fetched_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates expressed per 1 unit of the base currency."""

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        base = normalize_currency(base_currency)
        try:
            base_rate = self.rates[base]
        except KeyError as exc:
            raise RateProviderUnavailable(f"No static rate for base {base}") from exc
        return {
            normalize_currency(code): Decimal(str(rate)) / base_rate
            for code, rate in self.rates.items()
        }


@dataclass
class ExchangeRateApiProvider:
    base_url: str = "https://api.exchangerate-api.com/v4/latest"
    client: httpx.AsyncClient | None = None
    _owns_client: bool = field(default=False, init=False)

    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        base = normalize_currency(base_currency)
        url = f"{self.base_url.rstrip('/')}/{base}"
        try:
            response = await self._client().get(url)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateProviderUnavailable(
                f"Exchange rate request for base {base} failed"
            ) from exc
        return parse_rates_payload(payload, base)

    async def aclose(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
            self._owns_client = False

    def _client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient()
            self._owns_client = True
        return self.client


def parse_rates_payload(payload: object, base_currency: str) -> dict[str, Decimal]:
    rates = payload.get("rates") if isinstance(payload, dict) else None
    if not isinstance(rates, dict) or not rates:
        raise RateProviderUnavailable("Exchange rate response missing rates")

    parsed: dict[str, Decimal] = {}
    for code, value in rates.items():
        try:
            normalized = normalize_currency(str(code))
            rate = Decimal(str(value))
        except (ValueError, InvalidOperation) as exc:
            raise RateProviderUnavailable(
                f"Exchange rate response has malformed entry for {code!r}"
            ) from exc
        if not rate.is_finite() or rate <= 0:
            raise RateProviderUnavailable(
                f"Exchange rate response has invalid rate for {normalized}"
            )
        parsed[normalized] = rate
    parsed[base_currency] = Decimal("1")
    return parsed


class CurrencyNormalizer:
    def __init__(
        self,
        provider: RateProvider,
        base_currency: str = "USD",
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        supported_currencies: Iterable[str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.provider = provider
        self.base_currency = normalize_currency(base_currency)
        self.ttl = timedelta(seconds=ttl_seconds)
        self.timeout_seconds = timeout_seconds
        self.supported_currencies = (
            frozenset(normalize_currency(code) for code in supported_currencies)
            if supported_currencies is not None
            else None
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._snapshot: ExchangeRateSnapshot | None = None

    @property
    def snapshot(self) -> ExchangeRateSnapshot | None:
        return self._snapshot

    async def get_snapshot(self, timeout: float | None = None) -> ExchangeRateSnapshot:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.age(self._clock()) < self.ttl:
            return snapshot
        return await self.refresh(timeout=timeout)

    async def refresh(self, timeout: float | None = None) -> ExchangeRateSnapshot:
        limit = self.timeout_seconds if timeout is None else timeout
        try:
            rates = await asyncio.wait_for(
                self.provider.fetch_rates(self.base_currency), timeout=limit
            )
        except (RateProviderUnavailable, asyncio.TimeoutError) as exc:
            previous = self._snapshot
            if previous is None:
                raise UpstreamUnavailable(
                    f"Exchange rates for base {self.base_currency} unavailable "
                    "and no cached snapshot exists"
                ) from exc
            logger.warning(
                "Exchange rate refresh for base %s failed (%s); serving snapshot fetched at %s",
                self.base_currency,
                type(exc).__name__,
                previous.fetched_at.isoformat(),
            )
            return previous

        snapshot = ExchangeRateSnapshot(
            base_currency=self.base_currency,
            rates=MappingProxyType(dict(rates)),
            fetched_at=self._clock(),
        )
        self._snapshot = snapshot
        logger.info(
            "Fetched %d exchange rates for base %s", len(snapshot.rates), self.base_currency
        )
        return snapshot

    async def get_rate(self, currency: str, timeout: float | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == self.base_currency:
            return Decimal("1")
        if self.supported_currencies is not None and normalized not in self.supported_currencies:
            raise UnsupportedCurrency(normalized)
        snapshot = await self.get_snapshot(timeout=timeout)
        try:
            return snapshot.rates[normalized]
        except KeyError as exc:
            raise UnsupportedCurrency(normalized) from exc

    async def to_base(
        self,
        amount: Decimal | int | float | str,
        currency: str,
        timeout: float | None = None,
    ) -> Decimal:
        coerced = coerce_amount(amount)
        rate = await self.get_rate(currency, timeout=timeout)
        return round_money(coerced / rate)

    async def from_base(
        self,
        amount: Decimal | int | float | str,
        currency: str,
        timeout: float | None = None,
    ) -> Decimal:
        coerced = coerce_amount(amount)
        rate = await self.get_rate(currency, timeout=timeout)
        return round_money(coerced * rate)

    async def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        timeout: float | None = None,
    ) -> Decimal:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return round_money(coerce_amount(amount))
        in_base = await self.to_base(amount, source, timeout=timeout)
        return await self.from_base(in_base, target, timeout=timeout)

    async def rates_with_meta(self, timeout: float | None = None) -> dict[str, object]:
        snapshot = await self.get_snapshot(timeout=timeout)
        return {
            "base_currency": snapshot.base_currency,
            "rates": dict(snapshot.rates),
            "fetched_at": snapshot.fetched_at,
            "ttl_seconds": self.ttl.total_seconds(),
            "next_refresh_at": snapshot.fetched_at + self.ttl,
            "stale": snapshot.age(self._clock()) >= self.ttl,
        }

    async def aclose(self) -> None:
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()


_normalizer: CurrencyNormalizer | None = None


def init_normalizer(
    settings: Settings | None = None,
    provider: RateProvider | None = None,
) -> CurrencyNormalizer:
    global _normalizer
    if _normalizer is not None:
        if settings is not None or provider is not None:
            logger.warning(
                "Currency normalizer already initialized with base %s; ignoring new settings and provider",
                _normalizer.base_currency,
            )
        return _normalizer
    settings = settings or Settings.from_env()
    _normalizer = CurrencyNormalizer(
        provider or ExchangeRateApiProvider(base_url=settings.rates_url),
        settings.base_currency,
        ttl_seconds=settings.rates_ttl_seconds,
        timeout_seconds=settings.rates_timeout_seconds,
        supported_currencies=settings.supported_currencies,
    )
    return _normalizer


def get_normalizer() -> CurrencyNormalizer:
    if _normalizer is None:
        raise RuntimeError("Currency normalizer has not been initialized.")
    return _normalizer


async def shutdown_normalizer() -> None:
    global _normalizer
    normalizer, _normalizer = _normalizer, None
    if normalizer is not None:
        await normalizer.aclose()


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
