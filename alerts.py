from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Union

from models import Budget
from periods import Period

Number = Union[int, float, Decimal]

WARNING_PERCENT = 75
DANGER_PERCENT = 90


class AlertLevel(str, Enum):
    safe = "safe"
    warning = "warning"
    danger = "danger"
    exceeded = "exceeded"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    AlertLevel.exceeded: 0,
    AlertLevel.danger: 1,
    AlertLevel.warning: 2,
    AlertLevel.safe: 3,
}


def percentage_of(spent: Number, limit: Number) -> float:
    if limit <= 0:
        return 0.0
    return float(spent) / float(limit) * 100


def classify(spent: Number, limit: Number) -> AlertLevel:
    if spent > limit:
        return AlertLevel.exceeded
    percentage = percentage_of(spent, limit)
    if percentage >= DANGER_PERCENT:
        return AlertLevel.danger
    if percentage >= WARNING_PERCENT:
        return AlertLevel.warning
    return AlertLevel.safe


@dataclass
class BudgetAlert:
    budget: Budget
    window: Period
    spent_cents: int
    percentage: float
    remaining_cents: int
    is_over_budget: bool
    level: AlertLevel

    @classmethod
    def build(cls, budget: Budget, window: Period, spent_cents: int) -> "BudgetAlert":
        return cls(
            budget=budget,
            window=window,
            spent_cents=spent_cents,
            percentage=percentage_of(spent_cents, budget.amount_cents),
            remaining_cents=budget.amount_cents - spent_cents,
            is_over_budget=spent_cents > budget.amount_cents,
            level=classify(spent_cents, budget.amount_cents),
        )

    def as_dict(self) -> dict[str, object]:
        budget = self.budget
        return {
            "budget_id": budget.id,
            "name": budget.name,
            "category_id": budget.category_id,
            "category": budget.category.name if budget.category else None,
            "period": budget.period.value,
            "amount_cents": budget.amount_cents,
            "window_start": self.window.start.isoformat(),
            "window_end": self.window.end.isoformat(),
            "spent_cents": self.spent_cents,
            "percentage": self.percentage,
            "remaining_cents": self.remaining_cents,
            "is_over_budget": self.is_over_budget,
            "alert_level": self.level.value,
        }


@dataclass
class BudgetAlertSummary:
    budgets: list[BudgetAlert] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.budgets.sort(key=lambda alert: alert.level.severity)

    @property
    def alert_count(self) -> int:
        return sum(1 for a in self.budgets if a.level != AlertLevel.safe)

    @property
    def danger_count(self) -> int:
        return sum(
            1
            for a in self.budgets
            if a.level in (AlertLevel.danger, AlertLevel.exceeded)
        )

    @property
    def warning_count(self) -> int:
        return sum(1 for a in self.budgets if a.level == AlertLevel.warning)

    def as_dict(self) -> dict[str, object]:
        return {
            "budgets": [a.as_dict() for a in self.budgets],
            "alert_count": self.alert_count,
            "danger_count": self.danger_count,
            "warning_count": self.warning_count,
        }
