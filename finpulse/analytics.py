from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from finpulse.aggregation import (
    EXPENSE,
    INCOME,
    RECORD_KINDS,
    ZERO,
    CategoryBreakdown,
    CategoryShare,
    MonthlyComparison,
    SeriesTotals,
    TimeSeriesPoint,
    category_breakdown as build_category_breakdown,
    merge_series,
    monthly_comparison as build_monthly_comparison,
    percentage_of,
    series_totals,
)
from finpulse.budget_alerts import budget_status
from finpulse.config import normalize_currency
from finpulse.currency_conversion import CurrencyNormalizer, round_money
from finpulse.errors import InvalidInput
from finpulse.period_range import (
    MONTHLY,
    PeriodWindow,
    build_month_range,
    build_range,
    display_label,
)
from finpulse.stores import CATEGORY_GROUP_KEY, BudgetStore, RecordStore

BUDGET_SORT_FIELDS = {"usage", "budget", "remaining", "category"}
SORT_ORDERS = {"asc", "desc"}


@dataclass(frozen=True)
class TrendEntry:
    period_key: str
    name: str
    income: Decimal
    expense: Decimal
    savings: Decimal


@dataclass(frozen=True)
class TrendReport:
    window: PeriodWindow
    currency: str
    series: List[TrendEntry]
    totals: SeriesTotals


@dataclass(frozen=True)
class ComparisonReport:
    window: PeriodWindow
    currency: str
    comparison: MonthlyComparison


@dataclass(frozen=True)
class CategoryBreakdownReport:
    window: PeriodWindow
    month: int
    year: int
    kind: str
    currency: str
    breakdown: CategoryBreakdown


@dataclass(frozen=True)
class BudgetUsageEntry:
    category: str
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    usage: Decimal
    status: str


@dataclass(frozen=True)
class BudgetUsageReport:
    month: int
    year: int
    currency: str
    total_budget: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_usage: Decimal
    categories: List[BudgetUsageEntry]


class AnalyticsService:
    def __init__(
        self,
        record_store: RecordStore,
        budget_store: BudgetStore,
        normalizer: CurrencyNormalizer,
    ) -> None:
        self.record_store = record_store
        self.budget_store = budget_store
        self.normalizer = normalizer

    async def trend(
        self,
        owner_id: int,
        granularity: str = MONTHLY,
        count: int = 12,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrendReport:
        window = build_range(granularity, count, now=now)
        display_currency = self._display_currency(currency)
        income, expense = await asyncio.gather(
            self.record_store.aggregate(owner_id, window, window.granularity, kind=INCOME),
            self.record_store.aggregate(owner_id, window, window.granularity, kind=EXPENSE),
        )
        points = [
            await self._display_point(point, display_currency)
            for point in merge_series(income, expense)
        ]
        return TrendReport(
            window=window,
            currency=display_currency,
            series=[
                TrendEntry(
                    period_key=point.period_key,
                    name=display_label(point.period_key, window.granularity),
                    income=point.income,
                    expense=point.expense,
                    savings=point.savings,
                )
                for point in points
            ],
            totals=series_totals(points),
        )

    async def monthly_comparison(
        self,
        owner_id: int,
        months: int = 6,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComparisonReport:
        window = build_range(MONTHLY, months, now=now)
        display_currency = self._display_currency(currency)
        income, expense = await asyncio.gather(
            self.record_store.aggregate(owner_id, window, MONTHLY, kind=INCOME),
            self.record_store.aggregate(owner_id, window, MONTHLY, kind=EXPENSE),
        )
        points = [
            await self._display_point(point, display_currency)
            for point in merge_series(income, expense)
        ]
        return ComparisonReport(
            window=window,
            currency=display_currency,
            comparison=build_monthly_comparison(points),
        )

    async def category_breakdown(
        self,
        owner_id: int,
        month: int,
        year: int,
        kind: str = EXPENSE,
        limit: int = 10,
        currency: Optional[str] = None,
    ) -> CategoryBreakdownReport:
        if kind not in RECORD_KINDS:
            raise InvalidInput(f"Unsupported record kind: {kind}")
        window = build_month_range(month, year)
        display_currency = self._display_currency(currency)
        buckets = await self.record_store.aggregate(
            owner_id, window, CATEGORY_GROUP_KEY, kind=kind
        )
        breakdown = build_category_breakdown(buckets, limit)

        shares = []
        for share in breakdown.categories:
            shares.append(
                CategoryShare(
                    category=share.category,
                    total=await self._display(share.total, display_currency),
                    count=share.count,
                    percentage=share.percentage,
                )
            )
        return CategoryBreakdownReport(
            window=window,
            month=month,
            year=year,
            kind=kind,
            currency=display_currency,
            breakdown=CategoryBreakdown(
                total=await self._display(breakdown.total, display_currency),
                categories=shares,
            ),
        )

    async def budget_usage(
        self,
        owner_id: int,
        month: int,
        year: int,
        sort_by: str = "usage",
        sort_order: str = "desc",
        currency: Optional[str] = None,
    ) -> BudgetUsageReport:
        if sort_by not in BUDGET_SORT_FIELDS:
            raise InvalidInput(f"Unsupported sort field: {sort_by}")
        if sort_order not in SORT_ORDERS:
            raise InvalidInput(f"Unsupported sort order: {sort_order}")
        window = build_month_range(month, year)
        display_currency = self._display_currency(currency)
        budgets, buckets = await asyncio.gather(
            self.budget_store.list_for_period(owner_id, month, year),
            self.record_store.aggregate(owner_id, window, CATEGORY_GROUP_KEY, kind=EXPENSE),
        )
        spent_by_category = {bucket.period_key: bucket.total_base for bucket in buckets}

        entries: List[BudgetUsageEntry] = []
        total_budget = ZERO
        total_spent = ZERO
        for budget in budgets:
            limit = (
                budget.limit_base
                if budget.limit_base is not None
                else await self.normalizer.to_base(budget.limit_native, budget.currency)
            )
            spent = spent_by_category.get(budget.category, ZERO)
            total_budget += limit
            total_spent += spent
            usage = percentage_of(spent, limit)
            shown_limit = await self._display(limit, display_currency)
            shown_spent = await self._display(spent, display_currency)
            entries.append(
                BudgetUsageEntry(
                    category=budget.category,
                    budget=shown_limit,
                    spent=shown_spent,
                    remaining=shown_limit - shown_spent,
                    usage=usage,
                    status=budget_status(usage),
                )
            )

        if sort_by == "category":
            entries.sort(key=lambda entry: entry.category.lower(), reverse=sort_order == "desc")
        else:
            entries.sort(key=lambda entry: getattr(entry, sort_by), reverse=sort_order == "desc")

        shown_total_budget = await self._display(total_budget, display_currency)
        shown_total_spent = await self._display(total_spent, display_currency)
        return BudgetUsageReport(
            month=month,
            year=year,
            currency=display_currency,
            total_budget=shown_total_budget,
            total_spent=shown_total_spent,
            total_remaining=shown_total_budget - shown_total_spent,
            overall_usage=percentage_of(total_spent, total_budget),
            categories=entries,
        )

    def _display_currency(self, currency: Optional[str]) -> str:
        if not currency:
            return self.normalizer.base_currency
        return normalize_currency(currency)

    async def _display(self, amount: Decimal, currency: str) -> Decimal:
        if currency == self.normalizer.base_currency:
            return round_money(amount)
        return await self.normalizer.from_base(amount, currency)

    async def _display_point(self, point: TimeSeriesPoint, currency: str) -> TimeSeriesPoint:
        return TimeSeriesPoint(
            period_key=point.period_key,
            income=await self._display(point.income, currency),
            expense=await self._display(point.expense, currency),
        )
