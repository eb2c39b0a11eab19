from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from finpulse.currency_conversion import CurrencyNormalizer, coerce_amount, round_money
from finpulse.errors import InvalidInput
from finpulse.period_range import period_label

ZERO = Decimal("0")
HUNDRED = Decimal("100")
OTHERS_CATEGORY = "Others"

EXPENSE = "expense"
INCOME = "income"
RECORD_KINDS = (EXPENSE, INCOME)


@dataclass(frozen=True)
class MonetaryRecord:
    owner_id: int
    category: str
    native_amount: Decimal
    native_currency: str
    timestamp: datetime
    base_amount: Optional[Decimal] = None
    kind: str = EXPENSE

    @property
    def effective_base_amount(self) -> Decimal:
        if self.base_amount is not None:
            return coerce_amount(self.base_amount)
        return coerce_amount(self.native_amount)


@dataclass(frozen=True)
class AggregationBucket:
    period_key: str
    total_base: Decimal
    count: int


@dataclass(frozen=True)
class TimeSeriesPoint:
    period_key: str
    income: Decimal
    expense: Decimal

    @property
    def savings(self) -> Decimal:
        return round_money(self.income - self.expense)


@dataclass(frozen=True)
class CategoryShare:
    category: str
    total: Decimal
    count: int
    percentage: Decimal


@dataclass(frozen=True)
class CategoryBreakdown:
    total: Decimal
    categories: List[CategoryShare]


@dataclass(frozen=True)
class SeriesTotals:
    income: Decimal
    expense: Decimal
    savings: Decimal


@dataclass(frozen=True)
class MonthComparison:
    period_key: str
    income: Decimal
    expense: Decimal
    savings: Decimal
    savings_rate: Decimal


@dataclass(frozen=True)
class MonthlyComparison:
    months: List[MonthComparison]
    average_income: Decimal
    average_expense: Decimal
    average_savings: Decimal
    average_savings_rate: Decimal


async def with_base_amount(
    record: MonetaryRecord, normalizer: CurrencyNormalizer
) -> MonetaryRecord:
    base_amount = await normalizer.to_base(record.native_amount, record.native_currency)
    return replace(record, base_amount=base_amount)


def aggregate_by_period(
    records: Iterable[MonetaryRecord], granularity: str
) -> List[AggregationBucket]:
    return _group(records, lambda record: period_label(record.timestamp, granularity))


def aggregate_by_category(records: Iterable[MonetaryRecord]) -> List[AggregationBucket]:
    buckets = _group(records, lambda record: record.category)
    return sort_by_total(buckets)


def sort_by_total(buckets: Iterable[AggregationBucket]) -> List[AggregationBucket]:
    return sorted(buckets, key=lambda bucket: (-bucket.total_base, bucket.period_key))


def merge_series(
    income: Iterable[AggregationBucket],
    expense: Iterable[AggregationBucket],
) -> List[TimeSeriesPoint]:
    income_by_label = _totals_by_label(income)
    expense_by_label = _totals_by_label(expense)
    labels = sorted(set(income_by_label) | set(expense_by_label))
    return [
        TimeSeriesPoint(
            period_key=label,
            income=round_money(income_by_label.get(label, ZERO)),
            expense=round_money(expense_by_label.get(label, ZERO)),
        )
        for label in labels
    ]


def collapse_categories(
    buckets: Iterable[AggregationBucket], limit: int
) -> List[AggregationBucket]:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise InvalidInput("limit must be a positive integer.")

    ranked = sort_by_total(buckets)
    if len(ranked) <= limit:
        return ranked

    named = [bucket for bucket in ranked if bucket.period_key != OTHERS_CATEGORY]
    kept = named[:limit]
    kept_keys = {bucket.period_key for bucket in kept}
    collapsed = [bucket for bucket in ranked if bucket.period_key not in kept_keys]
    if not collapsed:
        return kept

    others = AggregationBucket(
        period_key=OTHERS_CATEGORY,
        total_base=sum((bucket.total_base for bucket in collapsed), ZERO),
        count=sum(bucket.count for bucket in collapsed),
    )
    return kept + [others]


def category_breakdown(
    buckets: Iterable[AggregationBucket], limit: int
) -> CategoryBreakdown:
    ranked = sort_by_total(buckets)
    total = sum((bucket.total_base for bucket in ranked), ZERO)
    shares = [
        CategoryShare(
            category=bucket.period_key,
            total=round_money(bucket.total_base),
            count=bucket.count,
            percentage=percentage_of(bucket.total_base, total),
        )
        for bucket in collapse_categories(ranked, limit)
    ]
    return CategoryBreakdown(total=round_money(total), categories=shares)


def series_totals(points: Iterable[TimeSeriesPoint]) -> SeriesTotals:
    income = ZERO
    expense = ZERO
    for point in points:
        income += point.income
        expense += point.expense
    return SeriesTotals(
        income=round_money(income),
        expense=round_money(expense),
        savings=round_money(income - expense),
    )


def monthly_comparison(points: Iterable[TimeSeriesPoint]) -> MonthlyComparison:
    months = [
        MonthComparison(
            period_key=point.period_key,
            income=point.income,
            expense=point.expense,
            savings=point.savings,
            savings_rate=percentage_of(point.savings, point.income),
        )
        for point in points
    ]
    totals = series_totals(
        TimeSeriesPoint(month.period_key, month.income, month.expense) for month in months
    )
    divisor = Decimal(len(months) or 1)
    average_income = round_money(totals.income / divisor)
    average_savings = round_money(totals.savings / divisor)
    return MonthlyComparison(
        months=months,
        average_income=average_income,
        average_expense=round_money(totals.expense / divisor),
        average_savings=average_savings,
        average_savings_rate=percentage_of(average_savings, average_income),
    )


def percentage_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return round_money(ZERO)
    return round_money(part / whole * HUNDRED)


def total_base(records: Iterable[MonetaryRecord]) -> Decimal:
    return sum((record.effective_base_amount for record in records), ZERO)


def _group(records: Iterable[MonetaryRecord], key) -> List[AggregationBucket]:
    totals: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    for record in records:
        label = key(record)
        totals[label] = totals.get(label, ZERO) + record.effective_base_amount
        counts[label] = counts.get(label, 0) + 1
    return [
        AggregationBucket(period_key=label, total_base=totals[label], count=counts[label])
        for label in sorted(totals)
    ]


def _totals_by_label(buckets: Iterable[AggregationBucket]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for bucket in buckets:
        label = str(bucket.period_key)
        totals[label] = totals.get(label, ZERO) + coerce_amount(bucket.total_base)
    return totals
