import unittest
from datetime import datetime, timezone
from decimal import Decimal

from finpulse.aggregation import (
    INCOME,
    AggregationBucket,
    MonetaryRecord,
    TimeSeriesPoint,
    aggregate_by_category,
    aggregate_by_period,
    category_breakdown,
    collapse_categories,
    merge_series,
    monthly_comparison,
    series_totals,
    with_base_amount,
)
from finpulse.currency_conversion import CurrencyNormalizer, StaticRateProvider
from finpulse.errors import InvalidInput


def _at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


def _expense(category: str, amount: str, when: datetime, base: str | None = None) -> MonetaryRecord:
    return MonetaryRecord(
        owner_id=1,
        category=category,
        native_amount=Decimal(amount),
        native_currency="USD",
        timestamp=when,
        base_amount=Decimal(base if base is not None else amount),
    )


def _income(category: str, amount: str, when: datetime) -> MonetaryRecord:
    return MonetaryRecord(
        owner_id=1,
        category=category,
        native_amount=Decimal(amount),
        native_currency="USD",
        timestamp=when,
        base_amount=Decimal(amount),
        kind=INCOME,
    )


def _bucket(key: str, total: str, count: int = 1) -> AggregationBucket:
    return AggregationBucket(period_key=key, total_base=Decimal(total), count=count)


class AggregateByPeriodTests(unittest.TestCase):
    def test_monthly_savings_for_a_single_month(self) -> None:
        income = [
            _income("Salary", "5200", _at(2026, 1, 1)),
            _income("Freelance", "600", _at(2026, 1, 18)),
        ]
        expense = [
            _expense("Rent", "1550", _at(2026, 1, 2)),
            _expense("Food", "420", _at(2026, 1, 9)),
            _expense("Transport", "120", _at(2026, 1, 14)),
            _expense("Entertainment", "50", _at(2026, 1, 25)),
        ]

        points = merge_series(
            aggregate_by_period(income, "monthly"),
            aggregate_by_period(expense, "monthly"),
        )

        self.assertEqual(
            points,
            [TimeSeriesPoint("2026-01", Decimal("5800.00"), Decimal("2140.00"))],
        )
        self.assertEqual(points[0].savings, Decimal("3660.00"))

    def test_buckets_are_sorted_by_label_with_counts(self) -> None:
        records = [
            _expense("Food", "10", _at(2026, 3, 4)),
            _expense("Food", "20", _at(2026, 1, 4)),
            _expense("Rent", "30", _at(2026, 1, 5)),
        ]

        buckets = aggregate_by_period(records, "monthly")

        self.assertEqual(
            buckets,
            [_bucket("2026-01", "50", 2), _bucket("2026-03", "10", 1)],
        )

    def test_weekly_buckets_follow_iso_weeks_across_year_boundary(self) -> None:
        records = [
            _expense("Food", "5", _at(2025, 12, 28)),
            _expense("Food", "7", _at(2025, 12, 29)),
            _expense("Food", "11", _at(2026, 1, 2)),
        ]

        buckets = aggregate_by_period(records, "weekly")

        self.assertEqual(
            buckets,
            [_bucket("2025-W52", "5", 1), _bucket("2026-W01", "18", 2)],
        )

    def test_missing_base_amount_falls_back_to_native(self) -> None:
        converted = _expense("Food", "20", _at(2026, 1, 3), base="10")
        unconverted = MonetaryRecord(
            owner_id=1,
            category="Food",
            native_amount=Decimal("25"),
            native_currency="USD",
            timestamp=_at(2026, 1, 4),
        )

        buckets = aggregate_by_period([converted, unconverted], "monthly")

        self.assertEqual(buckets[0].total_base, Decimal("35"))

    def test_category_buckets_ranked_by_total(self) -> None:
        records = [
            _expense("Food", "40", _at(2026, 1, 3)),
            _expense("Rent", "900", _at(2026, 1, 1)),
            _expense("Food", "35", _at(2026, 1, 8)),
            _expense("Books", "75", _at(2026, 1, 9)),
        ]

        buckets = aggregate_by_category(records)

        self.assertEqual(
            buckets,
            [_bucket("Rent", "900"), _bucket("Books", "75"), _bucket("Food", "75", 2)],
        )


class MergeSeriesTests(unittest.TestCase):
    def test_fills_gaps_with_zero(self) -> None:
        income = [_bucket("2026-01", "100"), _bucket("2026-03", "300")]
        expense = [_bucket("2026-02", "50"), _bucket("2026-03", "80")]

        points = merge_series(income, expense)

        self.assertEqual(
            points,
            [
                TimeSeriesPoint("2026-01", Decimal("100.00"), Decimal("0.00")),
                TimeSeriesPoint("2026-02", Decimal("0.00"), Decimal("50.00")),
                TimeSeriesPoint("2026-03", Decimal("300.00"), Decimal("80.00")),
            ],
        )

    def test_label_set_is_union_and_totals_are_preserved(self) -> None:
        income = [_bucket("2026-02", "12.50"), _bucket("2026-01", "7.25")]
        expense = [_bucket("2026-03", "4.00"), _bucket("2026-01", "3.10")]

        forward = merge_series(income, expense)
        backward = merge_series(expense, income)

        self.assertEqual(
            [point.period_key for point in forward],
            [point.period_key for point in backward],
        )
        self.assertEqual(
            [point.income for point in forward],
            [point.expense for point in backward],
        )
        self.assertEqual(sum(point.income for point in forward), Decimal("19.75"))
        self.assertEqual(sum(point.expense for point in forward), Decimal("7.10"))

    def test_duplicate_labels_are_summed(self) -> None:
        income = [_bucket("2026-01", "10"), _bucket("2026-01", "15")]

        points = merge_series(income, [])

        self.assertEqual(points, [TimeSeriesPoint("2026-01", Decimal("25.00"), Decimal("0.00"))])

    def test_rounds_half_up_to_cents(self) -> None:
        points = merge_series([_bucket("2026-01", "10.005")], [_bucket("2026-01", "3.333")])

        self.assertEqual(points[0].income, Decimal("10.01"))
        self.assertEqual(points[0].expense, Decimal("3.33"))
        self.assertEqual(points[0].savings, Decimal("6.68"))

    def test_empty_inputs_give_empty_series(self) -> None:
        self.assertEqual(merge_series([], []), [])

    def test_series_totals(self) -> None:
        totals = series_totals(
            [
                TimeSeriesPoint("2026-01", Decimal("100.00"), Decimal("40.00")),
                TimeSeriesPoint("2026-02", Decimal("50.00"), Decimal("70.00")),
            ]
        )

        self.assertEqual(totals.income, Decimal("150.00"))
        self.assertEqual(totals.expense, Decimal("110.00"))
        self.assertEqual(totals.savings, Decimal("40.00"))


class CollapseCategoriesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.buckets = [
            _bucket("Entertainment", "60", 3),
            _bucket("Rent", "1200", 1),
            _bucket("Health", "90", 2),
            _bucket("Food", "450", 12),
            _bucket("Transport", "180", 6),
        ]

    def test_keeps_top_categories_and_folds_the_rest(self) -> None:
        collapsed = collapse_categories(self.buckets, 3)

        self.assertEqual(
            collapsed,
            [
                _bucket("Rent", "1200", 1),
                _bucket("Food", "450", 12),
                _bucket("Transport", "180", 6),
                _bucket("Others", "150", 5),
            ],
        )

    def test_total_is_preserved(self) -> None:
        collapsed = collapse_categories(self.buckets, 2)

        self.assertEqual(
            sum(bucket.total_base for bucket in collapsed),
            sum(bucket.total_base for bucket in self.buckets),
        )
        self.assertEqual(len(collapsed), 3)

    def test_returns_everything_when_under_limit(self) -> None:
        collapsed = collapse_categories(self.buckets, 5)

        self.assertEqual([bucket.period_key for bucket in collapsed][:2], ["Rent", "Food"])
        self.assertNotIn("Others", [bucket.period_key for bucket in collapsed])

    def test_existing_others_category_is_folded_into_synthetic_bucket(self) -> None:
        buckets = [
            _bucket("Rent", "500", 1),
            _bucket("Others", "400", 4),
            _bucket("Food", "300", 3),
            _bucket("Travel", "100", 1),
        ]

        collapsed = collapse_categories(buckets, 2)

        self.assertEqual(
            collapsed,
            [_bucket("Rent", "500", 1), _bucket("Food", "300", 3), _bucket("Others", "500", 5)],
        )

    def test_rejects_non_positive_limit(self) -> None:
        for limit in (0, -2, True):
            with self.assertRaises(InvalidInput):
                collapse_categories(self.buckets, limit)


class CategoryBreakdownTests(unittest.TestCase):
    def test_percentages_of_total(self) -> None:
        breakdown = category_breakdown(
            [_bucket("Food", "300", 4), _bucket("Rent", "600", 1), _bucket("Books", "100", 2)],
            limit=5,
        )

        self.assertEqual(breakdown.total, Decimal("1000.00"))
        self.assertEqual(
            [(share.category, share.percentage) for share in breakdown.categories],
            [
                ("Rent", Decimal("60.00")),
                ("Food", Decimal("30.00")),
                ("Books", Decimal("10.00")),
            ],
        )

    def test_empty_breakdown(self) -> None:
        breakdown = category_breakdown([], limit=5)

        self.assertEqual(breakdown.total, Decimal("0.00"))
        self.assertEqual(breakdown.categories, [])


class MonthlyComparisonTests(unittest.TestCase):
    def test_savings_rates_and_averages(self) -> None:
        comparison = monthly_comparison(
            [
                TimeSeriesPoint("2026-01", Decimal("1000.00"), Decimal("600.00")),
                TimeSeriesPoint("2026-02", Decimal("0.00"), Decimal("100.00")),
            ]
        )

        january, february = comparison.months
        self.assertEqual(january.savings, Decimal("400.00"))
        self.assertEqual(january.savings_rate, Decimal("40.00"))
        self.assertEqual(february.savings, Decimal("-100.00"))
        self.assertEqual(february.savings_rate, Decimal("0.00"))
        self.assertEqual(comparison.average_income, Decimal("500.00"))
        self.assertEqual(comparison.average_expense, Decimal("350.00"))
        self.assertEqual(comparison.average_savings, Decimal("150.00"))
        self.assertEqual(comparison.average_savings_rate, Decimal("30.00"))

    def test_no_months(self) -> None:
        comparison = monthly_comparison([])

        self.assertEqual(comparison.months, [])
        self.assertEqual(comparison.average_income, Decimal("0.00"))
        self.assertEqual(comparison.average_savings_rate, Decimal("0.00"))


class WithBaseAmountTests(unittest.IsolatedAsyncioTestCase):
    async def test_fills_base_amount_from_normalizer(self) -> None:
        normalizer = CurrencyNormalizer(
            StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("2")}), "USD"
        )
        record = MonetaryRecord(
            owner_id=1,
            category="Food",
            native_amount=Decimal("10"),
            native_currency="EUR",
            timestamp=_at(2026, 1, 3),
        )

        converted = await with_base_amount(record, normalizer)

        self.assertEqual(converted.base_amount, Decimal("5.00"))
        self.assertEqual(converted.native_amount, Decimal("10"))
        self.assertIsNone(record.base_amount)


if __name__ == "__main__":
    unittest.main()
