from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from finpulse.aggregation import (
    EXPENSE,
    RECORD_KINDS,
    AggregationBucket,
    MonetaryRecord,
    aggregate_by_category,
    aggregate_by_period,
)
from finpulse.config import normalize_currency
from finpulse.errors import InvalidInput
from finpulse.period_range import PeriodWindow, as_utc

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS: tuple[int, ...] = (80, 100)
CATEGORY_GROUP_KEY = "category"


@dataclass(frozen=True)
class RecordFilter:
    kind: str = EXPENSE
    category: Optional[str] = None
    window: Optional[PeriodWindow] = None


@dataclass(frozen=True)
class Budget:
    budget_id: int
    owner_id: int
    category: str
    month: int
    year: int
    limit_native: Decimal
    currency: str
    limit_base: Optional[Decimal] = None
    thresholds: tuple[int, ...] = ()
    triggered: Mapping[int, bool] = field(default_factory=dict)

    @property
    def effective_thresholds(self) -> tuple[int, ...]:
        return tuple(sorted(set(self.thresholds))) or DEFAULT_THRESHOLDS

    def is_triggered(self, threshold: int) -> bool:
        return bool(self.triggered.get(threshold, False))


class RecordStore(Protocol):
    async def query(self, owner_id: int, record_filter: RecordFilter) -> List[MonetaryRecord]: ...

    async def aggregate(
        self, owner_id: int, window: PeriodWindow, group_key: str, kind: str = EXPENSE
    ) -> List[AggregationBucket]: ...


class BudgetStore(Protocol):
    async def find(self, owner_id: int, category: str, month: int, year: int) -> Optional[Budget]: ...

    async def list_for_period(self, owner_id: int, month: int, year: int) -> List[Budget]: ...

    async def persist_threshold_state(
        self, budget_id: int, threshold: int, triggered: bool
    ) -> None: ...


metadata = MetaData()

records = Table(
    "records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("kind", String(10), nullable=False),
    Column("category", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("amount_base", Numeric(14, 2)),
    Column("occurred_at", DateTime, nullable=False),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("category", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("limit_amount", Numeric(14, 2), nullable=False),
    Column("limit_base", Numeric(14, 2)),
    Column("month", Integer, nullable=False),
    Column("year", Integer, nullable=False),
    Column("thresholds", JSON, nullable=False),
    UniqueConstraint("user_id", "category", "month", "year", name="uq_budgets_user_period"),
)

budget_threshold_states = Table(
    "budget_threshold_states",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "budget_id",
        Integer,
        ForeignKey("budgets.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("threshold", Integer, nullable=False),
    Column("triggered", Boolean, nullable=False),
    Column("triggered_at", DateTime),
    UniqueConstraint("budget_id", "threshold", name="uq_budget_threshold_states"),
)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


class SqlRecordStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def add_record(self, record: MonetaryRecord) -> int:
        kind = _validate_kind(record.kind)
        async with self.engine.begin() as conn:
            result = await conn.execute(
                insert(records).values(
                    user_id=record.owner_id,
                    kind=kind,
                    category=record.category,
                    amount=record.native_amount,
                    currency=normalize_currency(record.native_currency),
                    amount_base=record.base_amount,
                    occurred_at=_to_storage(record.timestamp),
                )
            )
        return result.inserted_primary_key[0]

    async def query(self, owner_id: int, record_filter: RecordFilter) -> List[MonetaryRecord]:
        kind = _validate_kind(record_filter.kind)
        stmt = select(records).where(records.c.user_id == owner_id, records.c.kind == kind)
        if record_filter.category is not None:
            stmt = stmt.where(records.c.category == record_filter.category)
        if record_filter.window is not None:
            stmt = stmt.where(
                records.c.occurred_at >= _to_storage(record_filter.window.start),
                records.c.occurred_at <= _to_storage(record_filter.window.end),
            )
        stmt = stmt.order_by(records.c.occurred_at, records.c.id)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            MonetaryRecord(
                owner_id=row["user_id"],
                category=row["category"],
                native_amount=_coerce_decimal(row["amount"]),
                native_currency=row["currency"],
                timestamp=_from_storage(row["occurred_at"]),
                base_amount=(
                    _coerce_decimal(row["amount_base"]) if row["amount_base"] is not None else None
                ),
                kind=row["kind"],
            )
            for row in rows
        ]

    async def aggregate(
        self, owner_id: int, window: PeriodWindow, group_key: str, kind: str = EXPENSE
    ) -> List[AggregationBucket]:
        rows = await self.query(owner_id, RecordFilter(kind=kind, window=window))
        if group_key == CATEGORY_GROUP_KEY:
            return aggregate_by_category(rows)
        return aggregate_by_period(rows, group_key)


class SqlBudgetStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def create_budget(
        self,
        owner_id: int,
        category: str,
        month: int,
        year: int,
        limit_native: Decimal,
        currency: str,
        limit_base: Optional[Decimal] = None,
        thresholds: Iterable[int] = (),
    ) -> Budget:
        if limit_native <= 0:
            raise InvalidInput("Budget limit must be greater than zero.")
        normalized_thresholds = _validate_thresholds(thresholds)
        async with self.engine.begin() as conn:
            try:
                result = await conn.execute(
                    insert(budgets).values(
                        user_id=owner_id,
                        category=category,
                        currency=normalize_currency(currency),
                        limit_amount=limit_native,
                        limit_base=limit_base,
                        month=month,
                        year=year,
                        thresholds=list(normalized_thresholds),
                    )
                )
            except IntegrityError as exc:
                raise InvalidInput(
                    f"Budget for {category} {year}-{month:02d} already exists."
                ) from exc
        return Budget(
            budget_id=result.inserted_primary_key[0],
            owner_id=owner_id,
            category=category,
            month=month,
            year=year,
            limit_native=limit_native,
            currency=normalize_currency(currency),
            limit_base=limit_base,
            thresholds=normalized_thresholds,
        )

    async def delete_budget(self, budget_id: int) -> bool:
        async with self.engine.begin() as conn:
            await conn.execute(
                delete(budget_threshold_states).where(
                    budget_threshold_states.c.budget_id == budget_id
                )
            )
            result = await conn.execute(delete(budgets).where(budgets.c.id == budget_id))
        return result.rowcount > 0

    async def find(self, owner_id: int, category: str, month: int, year: int) -> Optional[Budget]:
        stmt = select(budgets).where(
            budgets.c.user_id == owner_id,
            budgets.c.category == category,
            budgets.c.month == month,
            budgets.c.year == year,
        )
        found = await self._load(stmt)
        return found[0] if found else None

    async def list_for_period(self, owner_id: int, month: int, year: int) -> List[Budget]:
        stmt = (
            select(budgets)
            .where(
                budgets.c.user_id == owner_id,
                budgets.c.month == month,
                budgets.c.year == year,
            )
            .order_by(budgets.c.category)
        )
        return await self._load(stmt)

    async def persist_threshold_state(
        self, budget_id: int, threshold: int, triggered: bool
    ) -> None:
        if not triggered:
            raise InvalidInput("Threshold state can only move from pending to triggered.")
        now = _to_storage(datetime.now(timezone.utc))
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(budget_threshold_states)
                .where(
                    budget_threshold_states.c.budget_id == budget_id,
                    budget_threshold_states.c.threshold == threshold,
                    budget_threshold_states.c.triggered.is_(False),
                )
                .values(triggered=True, triggered_at=now)
            )
            if result.rowcount:
                return
            existing = await conn.execute(
                select(budget_threshold_states.c.id).where(
                    budget_threshold_states.c.budget_id == budget_id,
                    budget_threshold_states.c.threshold == threshold,
                )
            )
            if existing.first() is not None:
                return
        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    insert(budget_threshold_states).values(
                        budget_id=budget_id,
                        threshold=threshold,
                        triggered=True,
                        triggered_at=now,
                    )
                )
        except IntegrityError:
            logger.debug(
                "Threshold %s of budget %s was triggered by a concurrent writer",
                threshold,
                budget_id,
            )

    async def _load(self, stmt) -> List[Budget]:
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
            if not rows:
                return []
            budget_ids = [row["id"] for row in rows]
            state_rows = (
                await conn.execute(
                    select(budget_threshold_states).where(
                        budget_threshold_states.c.budget_id.in_(budget_ids)
                    )
                )
            ).mappings().all()

        states: dict[int, dict[int, bool]] = {}
        for state in state_rows:
            states.setdefault(state["budget_id"], {})[int(state["threshold"])] = bool(
                state["triggered"]
            )
        return [
            Budget(
                budget_id=row["id"],
                owner_id=row["user_id"],
                category=row["category"],
                month=row["month"],
                year=row["year"],
                limit_native=_coerce_decimal(row["limit_amount"]),
                currency=row["currency"],
                limit_base=(
                    _coerce_decimal(row["limit_base"]) if row["limit_base"] is not None else None
                ),
                thresholds=tuple(int(value) for value in row["thresholds"] or ()),
                triggered=states.get(row["id"], {}),
            )
            for row in rows
        ]


def _validate_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in RECORD_KINDS:
        raise InvalidInput(f"Unsupported record kind: {kind}")
    return normalized


def _validate_thresholds(thresholds: Iterable[int]) -> tuple[int, ...]:
    values = set()
    for threshold in thresholds:
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold <= 0:
            raise InvalidInput("Thresholds must be positive whole percentages.")
        values.add(threshold)
    return tuple(sorted(values))


def _to_storage(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def _from_storage(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))
