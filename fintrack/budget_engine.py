from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_ALERT_THRESHOLD = 80


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category_id: Optional[int] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class BudgetRule:
    amount: Decimal
    category_id: int
    start_date: date
    end_date: date
    alert_threshold: int = DEFAULT_ALERT_THRESHOLD


@dataclass(frozen=True)
class BudgetEvaluation:
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    status: str
    transaction_count: int
    days_remaining: int


def evaluate_budget(
    transactions: Iterable[Transaction],
    rule: BudgetRule,
    today: date,
) -> BudgetEvaluation:
    if rule.start_date >= rule.end_date:
        raise ValueError("end_date must be after start_date.")
    if rule.amount <= ZERO:
        raise ValueError("rule.amount must be greater than zero.")

    matching = [
        txn
        for txn in transactions
        if txn.type.strip().lower() == "expense"
        and txn.category_id == rule.category_id
        and rule.start_date <= txn.date <= rule.end_date
    ]
    spent = sum((_coerce_amount(txn.amount) for txn in matching), ZERO)
    remaining = rule.amount - spent
    percentage = spent / rule.amount * HUNDRED

    return BudgetEvaluation(
        spent=spent,
        remaining=remaining,
        percentage=percentage,
        status=budget_status(percentage, rule.alert_threshold),
        transaction_count=len(matching),
        days_remaining=max(0, (rule.end_date - today).days),
    )


def budget_status(percentage: Decimal, alert_threshold: int) -> str:
    if percentage > HUNDRED:
        return "over"
    if percentage >= Decimal(alert_threshold):
        return "warning"
    return "good"


def windows_overlap(
    first_start: date, first_end: date, second_start: date, second_end: date
) -> bool:
    return first_start <= second_end and second_start <= first_end


def is_current(rule: BudgetRule, today: date) -> bool:
    return rule.start_date <= today <= rule.end_date


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
