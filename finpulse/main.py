from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from finpulse.analytics import AnalyticsService
from finpulse.budget_alerts import BudgetAlertEngine
from finpulse.config import Settings
from finpulse.currency_conversion import (
    CurrencyNormalizer,
    get_normalizer,
    init_normalizer,
    shutdown_normalizer,
)
from finpulse.errors import InvalidInput, UpstreamUnavailable
from finpulse.period_range import MONTHLY
from finpulse.rate_history import RateHistoryClient
from finpulse.stores import SqlBudgetStore, SqlRecordStore, create_tables

logger = logging.getLogger(__name__)


@dataclass
class Services:
    analytics: AnalyticsService
    alerts: BudgetAlertEngine
    normalizer: CurrencyNormalizer
    history: RateHistoryClient
    engine: AsyncEngine | None = None


class PeriodResponse(BaseModel):
    start: date
    end: date
    granularity: str


class TrendPointResponse(BaseModel):
    date: str
    name: str
    income: Decimal
    expense: Decimal
    savings: Decimal


class TotalsResponse(BaseModel):
    income: Decimal
    expense: Decimal
    savings: Decimal


class TrendResponse(BaseModel):
    period: PeriodResponse
    currency: str
    series: list[TrendPointResponse]
    totals: TotalsResponse


class MonthComparisonResponse(BaseModel):
    month: str
    income: Decimal
    expense: Decimal
    savings: Decimal
    savings_rate: Decimal


class AveragesResponse(BaseModel):
    income: Decimal
    expense: Decimal
    savings: Decimal
    savings_rate: Decimal


class MonthlyComparisonResponse(BaseModel):
    period: PeriodResponse
    currency: str
    months: list[MonthComparisonResponse]
    averages: AveragesResponse


class CategoryShareResponse(BaseModel):
    category: str
    amount: Decimal
    percentage: Decimal
    count: int


class CategoryBreakdownResponse(BaseModel):
    period: PeriodResponse
    month: int
    year: int
    type: str
    currency: str
    total: Decimal
    categories: list[CategoryShareResponse]


class BudgetUsageEntryResponse(BaseModel):
    category: str
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    usage: Decimal
    status: str


class BudgetUsageSummaryResponse(BaseModel):
    total_budget: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_usage: Decimal


class BudgetUsageResponse(BaseModel):
    month: int
    year: int
    currency: str
    summary: BudgetUsageSummaryResponse
    categories: list[BudgetUsageEntryResponse]


class AlertCheckPayload(BaseModel):
    category: str
    month: int
    year: int


class AlertResponse(BaseModel):
    category: str
    threshold: int
    usage: Decimal


class AlertCheckResponse(BaseModel):
    budget_found: bool
    total_spent: Decimal
    usage: Decimal
    alerts: list[AlertResponse]


class RatesResponse(BaseModel):
    base_currency: str
    rates: dict[str, Decimal]
    fetched_at: datetime
    next_refresh_at: datetime
    ttl_seconds: float
    stale: bool


class RatePointResponse(BaseModel):
    on: date = Field(serialization_alias="date")
    rate: Decimal


class RateHistoryResponse(BaseModel):
    base: str
    target: str
    start_date: date
    end_date: date
    granularity: str
    series: list[RatePointResponse]


def build_services(settings: Settings, normalizer: CurrencyNormalizer) -> Services:
    engine = create_async_engine(settings.database_url)
    record_store = SqlRecordStore(engine)
    budget_store = SqlBudgetStore(engine)
    return Services(
        analytics=AnalyticsService(record_store, budget_store, normalizer),
        alerts=BudgetAlertEngine(budget_store, record_store, normalizer),
        normalizer=normalizer,
        history=RateHistoryClient(
            base_url=settings.rate_history_url,
            cache_ttl_seconds=settings.rate_history_ttl_seconds,
            timeout_seconds=settings.rate_history_timeout_seconds,
        ),
        engine=engine,
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_services = services is None
        if owns_services:
            init_normalizer(settings)
            app.state.services = build_services(settings, get_normalizer())
            await create_tables(app.state.services.engine)
            logger.info("finpulse started with base currency %s", settings.base_currency)
        else:
            app.state.services = services

        yield

        if owns_services:
            await app.state.services.history.aclose()
            await app.state.services.engine.dispose()
            await shutdown_normalizer()

    app = FastAPI(title="finpulse", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def _http_error(exc: InvalidInput | UpstreamUnavailable) -> HTTPException:
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error("Upstream dependency unavailable: %s", exc)
    return HTTPException(status_code=503, detail="Exchange rates are unavailable.")


def _period(window) -> PeriodResponse:
    return PeriodResponse(
        start=window.start.date(), end=window.end.date(), granularity=window.granularity
    )


def register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/analytics/trend", response_model=TrendResponse)
    async def trend(
        granularity: str = Query(MONTHLY),
        count: int = Query(12),
        currency: str | None = Query(None),
        user_id: int = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> TrendResponse:
        try:
            report = await services.analytics.trend(user_id, granularity, count, currency)
        except (InvalidInput, UpstreamUnavailable) as exc:
            raise _http_error(exc) from exc
        return TrendResponse(
            period=_period(report.window),
            currency=report.currency,
            series=[
                TrendPointResponse(
                    date=entry.period_key,
                    name=entry.name,
                    income=entry.income,
                    expense=entry.expense,
                    savings=entry.savings,
                )
                for entry in report.series
            ],
            totals=TotalsResponse(
                income=report.totals.income,
                expense=report.totals.expense,
                savings=report.totals.savings,
            ),
        )

    @app.get("/analytics/monthly-comparison", response_model=MonthlyComparisonResponse)
    async def monthly_comparison(
        months: int = Query(6),
        currency: str | None = Query(None),
        user_id: int = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> MonthlyComparisonResponse:
        try:
            report = await services.analytics.monthly_comparison(user_id, months, currency)
        except (InvalidInput, UpstreamUnavailable) as exc:
            raise _http_error(exc) from exc
        comparison = report.comparison
        return MonthlyComparisonResponse(
            period=_period(report.window),
            currency=report.currency,
            months=[
                MonthComparisonResponse(
                    month=month.period_key,
                    income=month.income,
                    expense=month.expense,
                    savings=month.savings,
                    savings_rate=month.savings_rate,
                )
                for month in comparison.months
            ],
            averages=AveragesResponse(
                income=comparison.average_income,
                expense=comparison.average_expense,
                savings=comparison.average_savings,
                savings_rate=comparison.average_savings_rate,
            ),
        )

    @app.get("/analytics/category-breakdown", response_model=CategoryBreakdownResponse)
    async def category_breakdown(
        month: int = Query(...),
        year: int = Query(...),
        type: str = Query("expense"),
        limit: int = Query(10),
        currency: str | None = Query(None),
        user_id: int = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> CategoryBreakdownResponse:
        try:
            report = await services.analytics.category_breakdown(
                user_id, month, year, kind=type, limit=limit, currency=currency
            )
        except (InvalidInput, UpstreamUnavailable) as exc:
            raise _http_error(exc) from exc
        return CategoryBreakdownResponse(
            period=_period(report.window),
            month=report.month,
            year=report.year,
            type=report.kind,
            currency=report.currency,
            total=report.breakdown.total,
            categories=[
                CategoryShareResponse(
                    category=share.category,
                    amount=share.total,
                    percentage=share.percentage,
                    count=share.count,
                )
                for share in report.breakdown.categories
            ],
        )

    @app.get("/analytics/budget-usage", response_model=BudgetUsageResponse)
    async def budget_usage(
        month: int = Query(...),
        year: int = Query(...),
        sort_by: str = Query("usage", alias="sortBy"),
        sort_order: str = Query("desc", alias="sortOrder"),
        currency: str | None = Query(None),
        user_id: int = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> BudgetUsageResponse:
        try:
            report = await services.analytics.budget_usage(
                user_id, month, year, sort_by=sort_by, sort_order=sort_order, currency=currency
            )
        except (InvalidInput, UpstreamUnavailable) as exc:
            raise _http_error(exc) from exc
        return BudgetUsageResponse(
            month=report.month,
            year=report.year,
            currency=report.currency,
            summary=BudgetUsageSummaryResponse(
                total_budget=report.total_budget,
                total_spent=report.total_spent,
                total_remaining=report.total_remaining,
                overall_usage=report.overall_usage,
            ),
            categories=[
                BudgetUsageEntryResponse(
                    category=entry.category,
                    budget=entry.budget,
                    spent=entry.spent,
                    remaining=entry.remaining,
                    usage=entry.usage,
                    status=entry.status,
                )
                for entry in report.categories
            ],
        )

    @app.post("/budgets/alerts/check", response_model=AlertCheckResponse)
    async def check_budget_alerts(
        payload: AlertCheckPayload,
        user_id: int = Depends(get_user_id),
        services: Services = Depends(get_services),
    ) -> AlertCheckResponse:
        try:
            evaluation = await services.alerts.evaluate(
                user_id, payload.category, payload.month, payload.year
            )
        except (InvalidInput, UpstreamUnavailable) as exc:
            raise _http_error(exc) from exc
        return AlertCheckResponse(
            budget_found=evaluation.budget_found,
            total_spent=evaluation.total_spent,
            usage=evaluation.usage,
            alerts=[
                AlertResponse(
                    category=alert.category, threshold=alert.threshold, usage=alert.usage
                )
                for alert in evaluation.alerts
            ],
        )

    @app.get("/currency/rates", response_model=RatesResponse)
    async def currency_rates(services: Services = Depends(get_services)) -> RatesResponse:
        try:
            meta = await services.normalizer.rates_with_meta()
        except UpstreamUnavailable as exc:
            raise _http_error(exc) from exc
        return RatesResponse(**meta)

    @app.get("/currency/history", response_model=RateHistoryResponse)
    async def currency_history(
        source: str = Query(...),
        target: str = Query(...),
        start_date: date = Query(...),
        end_date: date = Query(...),
        granularity: str = Query(MONTHLY),
        services: Services = Depends(get_services),
    ) -> RateHistoryResponse:
        try:
            history = await services.history.fetch_series(
                source, target, start_date, end_date, granularity
            )
        except (InvalidInput, UpstreamUnavailable) as exc:
            raise _http_error(exc) from exc
        return RateHistoryResponse(
            base=history.base,
            target=history.target,
            start_date=history.start_date,
            end_date=history.end_date,
            granularity=history.granularity,
            series=[RatePointResponse(on=point.date, rate=point.rate) for point in history.series],
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


_settings = Settings.from_env()
configure_logging(_settings)
app = create_app(_settings)
