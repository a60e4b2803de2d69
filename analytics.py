from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ledger import LedgerReader, LedgerTotals
from money import Money
from periods import AggregationWindow, ReportSchedule


_PERCENT = Decimal("0.01")


def percent_of(part: Money, whole: Money) -> Optional[Decimal]:
    if whole.amount == 0:
        return None
    ratio = Decimal(part.amount) * 100 / Decimal(whole.amount)
    return ratio.quantize(_PERCENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TrendDeltas:
    previous_window: AggregationWindow
    income_delta: Money
    expense_delta: Money
    net_delta: Money
    category_deltas: dict[str, Money] = field(default_factory=dict)


@dataclass(frozen=True)
class AnalyticsSnapshot:
    user_id: int
    window: AggregationWindow
    frequency: str
    total_income: Money
    total_expense: Money
    category_breakdown: dict[str, Money]
    income_breakdown: dict[str, Money]
    transaction_count: int
    trend: Optional[TrendDeltas] = None

    @property
    def net(self) -> Money:
        return self.total_income - self.total_expense

    @property
    def trend_available(self) -> bool:
        return self.trend is not None

    @property
    def savings_rate(self) -> Optional[Decimal]:
        return percent_of(self.net, self.total_income)

    @property
    def expense_ratio(self) -> Optional[Decimal]:
        return percent_of(self.total_expense, self.total_income)

    def top_categories(self, limit: int = 5) -> list[dict[str, object]]:
        ranked = sorted(
            self.category_breakdown.items(), key=lambda item: (-item[1].amount, item[0])
        )
        return [
            {
                "name": name,
                "amount_cents": amount.amount,
                "percent": _str_or_none(percent_of(amount, self.total_expense)),
            }
            for name, amount in ranked[:limit]
        ]

    def as_payload(self) -> dict[str, object]:
        if self.trend is None:
            trend: dict[str, object] = {"status": "unavailable"}
        else:
            trend = {
                "status": "available",
                "previous_window": _window_payload(self.trend.previous_window),
                "income_delta_cents": self.trend.income_delta.amount,
                "expense_delta_cents": self.trend.expense_delta.amount,
                "net_delta_cents": self.trend.net_delta.amount,
                "category_deltas_cents": _cents_map(self.trend.category_deltas),
            }
        return {
            "user_id": self.user_id,
            "frequency": self.frequency,
            "window": _window_payload(self.window),
            "period_label": self.window.label(),
            "total_income_cents": self.total_income.amount,
            "total_expense_cents": self.total_expense.amount,
            "net_cents": self.net.amount,
            "total_income": self.total_income.format(),
            "total_expense": self.total_expense.format(),
            "net": self.net.format(),
            "savings_rate": _str_or_none(self.savings_rate),
            "expense_ratio": _str_or_none(self.expense_ratio),
            "transaction_count": self.transaction_count,
            "category_breakdown_cents": _cents_map(self.category_breakdown),
            "income_breakdown_cents": _cents_map(self.income_breakdown),
            "top_categories": self.top_categories(),
            "trend": trend,
        }

    def to_json(self) -> str:
        return json.dumps(
            self.as_payload(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )

    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()


def _window_payload(window: AggregationWindow) -> dict[str, str]:
    return {"start": window.start.isoformat(), "end": window.end.isoformat()}


def _cents_map(values: dict[str, Money]) -> dict[str, int]:
    return {key: values[key].amount for key in sorted(values)}


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


class AnalyticsAggregator:
    def __init__(self, reader: LedgerReader) -> None:
        self.reader = reader

    def compute(
        self, user_id: int, window: AggregationWindow, schedule: ReportSchedule
    ) -> AnalyticsSnapshot:
        current = self.reader.aggregate(user_id, window)
        previous_window = schedule.previous(window)
        previous = self.reader.aggregate(user_id, previous_window)

        return AnalyticsSnapshot(
            user_id=user_id,
            window=window,
            frequency=schedule.frequency.value,
            total_income=current.total_income,
            total_expense=current.total_expense,
            category_breakdown=dict(current.totals_by_category),
            income_breakdown=dict(current.income_by_category),
            transaction_count=current.transaction_count,
            trend=self._trend(current, previous, previous_window),
        )

    @staticmethod
    def _trend(
        current: LedgerTotals,
        previous: LedgerTotals,
        previous_window: AggregationWindow,
    ) -> Optional[TrendDeltas]:
        # An empty prior window means "no baseline", not "no change".
        if not previous.has_activity:
            return None

        categories = sorted(
            set(current.totals_by_category) | set(previous.totals_by_category)
        )
        category_deltas = {
            name: current.totals_by_category.get(name, Money.zero())
            - previous.totals_by_category.get(name, Money.zero())
            for name in categories
        }
        current_net = current.total_income - current.total_expense
        previous_net = previous.total_income - previous.total_expense
        return TrendDeltas(
            previous_window=previous_window,
            income_delta=current.total_income - previous.total_income,
            expense_delta=current.total_expense - previous.total_expense,
            net_delta=current_net - previous_net,
            category_deltas=category_deltas,
        )
