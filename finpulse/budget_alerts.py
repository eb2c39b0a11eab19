from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from finpulse.aggregation import EXPENSE, HUNDRED, ZERO, MonetaryRecord
from finpulse.currency_conversion import CurrencyNormalizer, round_money
from finpulse.errors import ConcurrencyConflict, InvalidInput
from finpulse.period_range import PeriodWindow, as_utc, build_month_range
from finpulse.stores import Budget, BudgetStore, RecordFilter, RecordStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"
EXCEEDED = "exceeded"


@dataclass(frozen=True)
class ThresholdAlert:
    category: str
    threshold: int
    usage: Decimal


@dataclass(frozen=True)
class AlertEvaluation:
    budget_found: bool
    total_spent: Decimal
    usage: Decimal
    alert: Optional[ThresholdAlert] = None
    newly_triggered: tuple[int, ...] = ()

    @property
    def alerts(self) -> List[ThresholdAlert]:
        return [self.alert] if self.alert is not None else []


NO_BUDGET = AlertEvaluation(
    budget_found=False,
    total_spent=round_money(ZERO),
    usage=round_money(ZERO),
)


def budget_status(usage: Decimal) -> str:
    if usage > 100:
        return EXCEEDED
    if usage >= 90:
        return CRITICAL
    if usage >= 70:
        return WARNING
    return HEALTHY


def usage_percentage(spent: Decimal, limit: Decimal) -> Decimal:
    if limit <= ZERO:
        raise InvalidInput("Budget limit must be greater than zero.")
    return spent * HUNDRED / limit


def newly_crossed(budget: Budget, usage: Decimal) -> List[int]:
    return [
        threshold
        for threshold in budget.effective_thresholds
        if usage >= threshold and not budget.is_triggered(threshold)
    ]


class BudgetAlertEngine:
    def __init__(
        self,
        budget_store: BudgetStore,
        record_store: RecordStore,
        normalizer: CurrencyNormalizer,
    ) -> None:
        self.budget_store = budget_store
        self.record_store = record_store
        self.normalizer = normalizer
        self._locks: weakref.WeakValueDictionary[tuple, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def on_transaction(self, record: MonetaryRecord) -> AlertEvaluation:
        if record.kind != EXPENSE:
            return NO_BUDGET
        moment = as_utc(record.timestamp)
        return await self.evaluate(record.owner_id, record.category, moment.month, moment.year)

    async def evaluate(
        self, owner_id: int, category: str, month: int, year: int
    ) -> AlertEvaluation:
        window = build_month_range(month, year)
        lock = self._lock_for((owner_id, category, year, month))
        async with lock:
            budget = await self.budget_store.find(owner_id, category, month, year)
            if budget is None:
                return NO_BUDGET

            spent = await self.spent_base(owner_id, category, window)
            limit = await self.limit_base(budget)
            usage = usage_percentage(spent, limit)

            crossed = newly_crossed(budget, usage)
            for threshold in crossed:
                await self._mark_triggered(budget, threshold)

        reported_usage = round_money(usage)
        alert = None
        if crossed:
            alert = ThresholdAlert(category=category, threshold=max(crossed), usage=reported_usage)
            logger.info(
                "Budget %s (%s %d-%02d) crossed %s%% at %s%% usage",
                budget.budget_id,
                category,
                year,
                month,
                alert.threshold,
                reported_usage,
            )
        return AlertEvaluation(
            budget_found=True,
            total_spent=round_money(spent),
            usage=reported_usage,
            alert=alert,
            newly_triggered=tuple(crossed),
        )

    async def spent_base(
        self, owner_id: int, category: str, window: PeriodWindow
    ) -> Decimal:
        rows = await self.record_store.query(
            owner_id, RecordFilter(kind=EXPENSE, category=category, window=window)
        )
        total = ZERO
        for row in rows:
            if row.base_amount is not None:
                total += row.base_amount
            else:
                total += await self.normalizer.to_base(row.native_amount, row.native_currency)
        return total

    async def limit_base(self, budget: Budget) -> Decimal:
        if budget.limit_base is not None:
            return budget.limit_base
        return await self.normalizer.to_base(budget.limit_native, budget.currency)

    async def _mark_triggered(self, budget: Budget, threshold: int) -> None:
        try:
            await self.budget_store.persist_threshold_state(budget.budget_id, threshold, True)
        except ConcurrencyConflict:
            logger.debug(
                "Threshold %s of budget %s already triggered concurrently",
                threshold,
                budget.budget_id,
            )

    def _lock_for(self, key: tuple) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
