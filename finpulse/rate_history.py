from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, List

import httpx

from finpulse.config import normalize_currency
from finpulse.errors import InvalidInput, RateProviderUnavailable
from finpulse.period_range import MONTHLY, YEARLY, normalize_granularity

logger = logging.getLogger(__name__)

WEEKLY_DOWNSAMPLE_THRESHOLD = 100


@dataclass(frozen=True)
class RatePoint:
    date: date
    rate: Decimal


@dataclass(frozen=True)
class RateHistory:
    base: str
    target: str
    start_date: date
    end_date: date
    granularity: str
    series: List[RatePoint]


@dataclass(frozen=True)
class CachedHistory:
    history: RateHistory
    expires_at: float


@dataclass
class RateHistoryClient:
    base_url: str = "https://api.frankfurter.dev/v1"
    cache_ttl_seconds: float = 24 * 60 * 60
    timeout_seconds: float = 15
    client: httpx.AsyncClient | None = None
    clock: Callable[[], float] = time.monotonic
    _cache: dict[tuple[str, str, str, str, str], CachedHistory] = field(default_factory=dict)

    async def fetch_series(
        self,
        source_currency: str,
        target_currency: str,
        start_date: date,
        end_date: date,
        granularity: str = MONTHLY,
    ) -> RateHistory:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        normalized = normalize_granularity(granularity)
        if start_date > end_date:
            raise InvalidInput("start_date must be on or before end_date.")

        cache_key = (source, target, start_date.isoformat(), end_date.isoformat(), normalized)
        cached = self._cache.get(cache_key)
        now = self.clock()
        if cached and cached.expires_at > now:
            return cached.history

        payload = await self._fetch(source, target, start_date, end_date)
        series = parse_history_payload(payload, target)
        if normalized == MONTHLY and len(series) > WEEKLY_DOWNSAMPLE_THRESHOLD:
            series = average_by_week(series)
        elif normalized == YEARLY:
            series = average_by_month(series)

        history = RateHistory(
            base=str(payload.get("base") or source),
            target=target,
            start_date=_parse_date(payload.get("start_date"), start_date),
            end_date=_parse_date(payload.get("end_date"), end_date),
            granularity=normalized,
            series=series,
        )
        self._prune(now)
        self._cache[cache_key] = CachedHistory(
            history=history, expires_at=now + self.cache_ttl_seconds
        )
        return history

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._cache.items() if entry.expires_at <= now]
        for key in expired:
            del self._cache[key]

    async def _fetch(
        self, source: str, target: str, start_date: date, end_date: date
    ) -> dict:
        url = f"{self.base_url.rstrip('/')}/{start_date.isoformat()}..{end_date.isoformat()}"
        if self.client is None:
            self.client = httpx.AsyncClient()
        try:
            response = await self.client.get(
                url,
                params={"base": source, "symbols": target},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Historical rates %s->%s for %s..%s unavailable: %s",
                source,
                target,
                start_date,
                end_date,
                type(exc).__name__,
            )
            raise RateProviderUnavailable("Historical exchange rates unavailable") from exc
        if not isinstance(payload, dict):
            raise RateProviderUnavailable("Historical exchange rate response is malformed")
        return payload


def parse_history_payload(payload: dict, target: str) -> List[RatePoint]:
    rates = payload.get("rates")
    if not isinstance(rates, dict):
        raise RateProviderUnavailable("Historical exchange rate response missing rates")
    points: List[RatePoint] = []
    for raw_date, rate_map in rates.items():
        if not isinstance(rate_map, dict) or target not in rate_map:
            continue
        try:
            points.append(
                RatePoint(date=date.fromisoformat(raw_date), rate=Decimal(str(rate_map[target])))
            )
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise RateProviderUnavailable(
                f"Historical exchange rate response has malformed entry {raw_date!r}"
            ) from exc
    return sorted(points, key=lambda point: point.date)


def average_by_week(series: Iterable[RatePoint]) -> List[RatePoint]:
    return _average(series, lambda value: value - timedelta(days=value.weekday()))


def average_by_month(series: Iterable[RatePoint]) -> List[RatePoint]:
    return _average(series, lambda value: value.replace(day=15))


def _average(series: Iterable[RatePoint], bucket: Callable[[date], date]) -> List[RatePoint]:
    sums: dict[date, Decimal] = {}
    counts: dict[date, int] = {}
    for point in series:
        key = bucket(point.date)
        sums[key] = sums.get(key, Decimal("0")) + point.rate
        counts[key] = counts.get(key, 0) + 1
    return [RatePoint(date=key, rate=sums[key] / counts[key]) for key in sorted(sums)]


def _parse_date(value: object, fallback: date) -> date:
    if not isinstance(value, str):
        return fallback
    try:
        return date.fromisoformat(value)
    except ValueError:
        return fallback
