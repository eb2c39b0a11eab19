import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from finpulse.aggregation import INCOME, MonetaryRecord
from finpulse.budget_alerts import (
    CRITICAL,
    EXCEEDED,
    HEALTHY,
    WARNING,
    BudgetAlertEngine,
    ThresholdAlert,
    budget_status,
    usage_percentage,
)
from finpulse.currency_conversion import CurrencyNormalizer, StaticRateProvider
from finpulse.errors import InvalidInput
from finpulse.stores import Budget
from finpulse.tests.fakes import InMemoryBudgetStore, InMemoryRecordStore

OWNER = 7


def _spend(amount: str, day: int = 10, category: str = "Food", **overrides) -> MonetaryRecord:
    values = dict(
        owner_id=OWNER,
        category=category,
        native_amount=Decimal(amount),
        native_currency="USD",
        timestamp=datetime(2026, 1, day, 12, 0, tzinfo=timezone.utc),
        base_amount=Decimal(amount),
    )
    values.update(overrides)
    return MonetaryRecord(**values)


def _budget(**overrides) -> Budget:
    values = dict(
        budget_id=1,
        owner_id=OWNER,
        category="Food",
        month=1,
        year=2026,
        limit_native=Decimal("600"),
        currency="USD",
        limit_base=Decimal("600"),
        thresholds=(80, 100),
    )
    values.update(overrides)
    return Budget(**values)


class BudgetAlertEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.records = InMemoryRecordStore()
        self.budgets = InMemoryBudgetStore([_budget()])
        self.normalizer = CurrencyNormalizer(
            StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("0.5")}), "USD"
        )
        self.engine = BudgetAlertEngine(self.budgets, self.records, self.normalizer)

    async def test_alerts_once_per_threshold_as_spending_grows(self) -> None:
        self.records.add(_spend("400", day=3))
        first = await self.engine.on_transaction(self.records.records[-1])

        self.records.add(_spend("80", day=9))
        second = await self.engine.on_transaction(self.records.records[-1])

        self.records.add(_spend("140", day=20))
        third = await self.engine.on_transaction(self.records.records[-1])

        self.assertTrue(first.budget_found)
        self.assertEqual(first.usage, Decimal("66.67"))
        self.assertEqual(first.alerts, [])
        self.assertEqual(second.total_spent, Decimal("480.00"))
        self.assertEqual(second.alerts, [ThresholdAlert("Food", 80, Decimal("80.00"))])
        self.assertEqual(third.alerts, [ThresholdAlert("Food", 100, Decimal("103.33"))])
        self.assertEqual(self.budgets.writes, [(1, 80, True), (1, 100, True)])

    async def test_re_evaluation_does_not_repeat_alerts(self) -> None:
        self.records.add(_spend("500"))

        first = await self.engine.evaluate(OWNER, "Food", 1, 2026)
        again = await self.engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertEqual(first.alert.threshold, 80)
        self.assertIsNone(again.alert)
        self.assertEqual(again.usage, first.usage)
        self.assertEqual(len(self.budgets.writes), 1)

    async def test_triggered_threshold_stays_triggered_when_spending_drops(self) -> None:
        self.records.add(_spend("500"))
        await self.engine.evaluate(OWNER, "Food", 1, 2026)
        self.records.records.clear()
        self.records.add(_spend("500"))

        evaluation = await self.engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertIsNone(evaluation.alert)
        self.assertTrue(self.budgets.states[1][80])

    async def test_jump_past_several_thresholds_reports_highest(self) -> None:
        self.records.add(_spend("620"))

        evaluation = await self.engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertEqual(evaluation.alerts, [ThresholdAlert("Food", 100, Decimal("103.33"))])
        self.assertEqual(evaluation.newly_triggered, (80, 100))
        self.assertEqual(self.budgets.states[1], {80: True, 100: True})

    async def test_missing_budget_reports_not_found(self) -> None:
        self.records.add(_spend("50", category="Books"))

        evaluation = await self.engine.evaluate(OWNER, "Books", 1, 2026)

        self.assertFalse(evaluation.budget_found)
        self.assertEqual(evaluation.alerts, [])
        self.assertEqual(evaluation.usage, Decimal("0.00"))
        self.assertEqual(self.budgets.writes, [])

    async def test_only_records_in_budget_month_count(self) -> None:
        self.records.add(_spend("500"))
        self.records.add(
            _spend("500", timestamp=datetime(2026, 2, 1, tzinfo=timezone.utc))
        )
        self.records.add(
            _spend("500", timestamp=datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc))
        )

        evaluation = await self.engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertEqual(evaluation.total_spent, Decimal("500.00"))

    async def test_budget_without_thresholds_uses_defaults(self) -> None:
        self.budgets = InMemoryBudgetStore([_budget(thresholds=())])
        engine = BudgetAlertEngine(self.budgets, self.records, self.normalizer)
        self.records.add(_spend("600"))

        evaluation = await engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertEqual(evaluation.newly_triggered, (80, 100))
        self.assertEqual(evaluation.alert.threshold, 100)

    async def test_limit_without_base_amount_is_converted(self) -> None:
        self.budgets = InMemoryBudgetStore(
            [_budget(limit_native=Decimal("300"), currency="EUR", limit_base=None)]
        )
        engine = BudgetAlertEngine(self.budgets, self.records, self.normalizer)
        self.records.add(_spend("480"))

        evaluation = await engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertEqual(evaluation.usage, Decimal("80.00"))
        self.assertEqual(evaluation.alert.threshold, 80)

    async def test_records_without_base_amount_are_converted(self) -> None:
        self.records.add(_spend("100", native_currency="EUR", base_amount=None))
        self.records.add(_spend("300"))

        evaluation = await self.engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertEqual(evaluation.total_spent, Decimal("500.00"))

    async def test_concurrent_writer_conflict_is_tolerated(self) -> None:
        self.budgets.conflict_on.add(80)
        self.records.add(_spend("500"))

        with self.assertLogs("finpulse.budget_alerts", level="DEBUG"):
            evaluation = await self.engine.evaluate(OWNER, "Food", 1, 2026)
        again = await self.engine.evaluate(OWNER, "Food", 1, 2026)

        self.assertTrue(evaluation.budget_found)
        self.assertIsNone(again.alert)
        self.assertTrue(self.budgets.states[1][80])

    async def test_concurrent_evaluations_alert_exactly_once(self) -> None:
        self.records.add(_spend("500"))

        evaluations = await asyncio.gather(
            *(self.engine.evaluate(OWNER, "Food", 1, 2026) for _ in range(5))
        )

        alerts = [alert for evaluation in evaluations for alert in evaluation.alerts]
        self.assertEqual(alerts, [ThresholdAlert("Food", 80, Decimal("83.33"))])
        self.assertEqual(self.budgets.writes, [(1, 80, True)])

    async def test_income_does_not_evaluate_budgets(self) -> None:
        self.records.add(_spend("5000", kind=INCOME))

        evaluation = await self.engine.on_transaction(self.records.records[-1])

        self.assertFalse(evaluation.budget_found)
        self.assertEqual(self.budgets.writes, [])

    async def test_transaction_month_is_taken_in_utc(self) -> None:
        self.budgets = InMemoryBudgetStore([_budget(month=2)])
        engine = BudgetAlertEngine(self.budgets, self.records, self.normalizer)
        eastern = timezone(timedelta(hours=-5))
        self.records.add(
            _spend("500", timestamp=datetime(2026, 1, 31, 23, 30, tzinfo=eastern))
        )

        evaluation = await engine.on_transaction(self.records.records[-1])

        self.assertTrue(evaluation.budget_found)
        self.assertEqual(evaluation.alert.threshold, 80)

    async def test_non_positive_limit_is_rejected(self) -> None:
        self.budgets = InMemoryBudgetStore([_budget(limit_base=Decimal("0"))])
        engine = BudgetAlertEngine(self.budgets, self.records, self.normalizer)

        with self.assertRaises(InvalidInput):
            await engine.evaluate(OWNER, "Food", 1, 2026)


class BudgetStatusTests(unittest.TestCase):
    def test_status_boundaries(self) -> None:
        cases = [
            (Decimal("0"), HEALTHY),
            (Decimal("69.99"), HEALTHY),
            (Decimal("70"), WARNING),
            (Decimal("89.99"), WARNING),
            (Decimal("90"), CRITICAL),
            (Decimal("100"), CRITICAL),
            (Decimal("100.01"), EXCEEDED),
        ]
        for usage, expected in cases:
            with self.subTest(usage=usage):
                self.assertEqual(budget_status(usage), expected)

    def test_usage_percentage(self) -> None:
        self.assertEqual(usage_percentage(Decimal("150"), Decimal("600")), Decimal("25"))
        with self.assertRaises(InvalidInput):
            usage_percentage(Decimal("10"), Decimal("0"))


if __name__ == "__main__":
    unittest.main()
