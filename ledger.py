from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from database import SessionFactory, get_session_factory
from models import Category, Transaction, TransactionType
from money import Money
from periods import AggregationWindow


class StorageUnavailable(RuntimeError):
    """Backing store failed; retryable and scoped to a single user's job."""


@dataclass(frozen=True)
class LedgerTotals:
    total_income: Money
    total_expense: Money
    totals_by_category: dict[str, Money] = field(default_factory=dict)
    income_by_category: dict[str, Money] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def has_activity(self) -> bool:
        return self.transaction_count > 0


class LedgerReader:
    """Read-only aggregate queries over committed ledger transactions."""

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self.session_factory = session_factory or get_session_factory()

    def aggregate(self, user_id: int, window: AggregationWindow) -> LedgerTotals:
        stmt = (
            select(
                Transaction.type.label("type"),
                Category.name.label("category"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == user_id,
                Transaction.deleted_at.is_(None),
                Transaction.occurred_at >= window.start,
                Transaction.occurred_at < window.end,
            )
            .group_by(Transaction.type, Category.name)
        )
        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(
                f"Ledger query failed for user {user_id} window {window.as_key()}"
            ) from exc

        expense: dict[str, int] = {}
        income: dict[str, int] = {}
        count = 0
        for row in rows:
            bucket = income if row.type == TransactionType.income else expense
            bucket[row.category] = bucket.get(row.category, 0) + int(row.total or 0)
            count += int(row.count or 0)

        return LedgerTotals(
            total_income=Money(sum(income.values())),
            total_expense=Money(sum(expense.values())),
            totals_by_category={k: Money(expense[k]) for k in sorted(expense)},
            income_by_category={k: Money(income[k]) for k in sorted(income)},
            transaction_count=count,
        )
