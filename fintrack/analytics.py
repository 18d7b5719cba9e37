from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")

PERIODS = {"week", "month", "3months", "6months", "year"}
DEFAULT_PERIOD = "month"
TREND_MONTHS = 12

SCORE_WEIGHTS = {
    "savings_rate": Decimal("0.25"),
    "budget_adherence": Decimal("0.25"),
    "emergency_fund": Decimal("0.20"),
    "expense_control": Decimal("0.15"),
    "debt_management": Decimal("0.15"),
}


@dataclass(frozen=True)
class TrendPoint:
    year: int
    month: int
    income: Decimal
    expense: Decimal
    net: Decimal


@dataclass(frozen=True)
class FlowTotals:
    income: Decimal = ZERO
    expense: Decimal = ZERO

    @property
    def net(self) -> Decimal:
        return self.income - self.expense


@dataclass(frozen=True)
class AccountBalance:
    type: str
    balance: Decimal


@dataclass(frozen=True)
class BudgetUsage:
    budgeted: Decimal
    spent: Decimal


@dataclass(frozen=True)
class Insight:
    type: str
    title: str
    description: str
    action: str


@dataclass(frozen=True)
class HealthScores:
    savings_rate: Decimal
    budget_adherence: Decimal
    emergency_fund: Decimal
    expense_control: Decimal
    debt_management: Decimal


@dataclass(frozen=True)
class HealthMetrics:
    savings_rate: Decimal
    expense_ratio: Decimal
    emergency_fund_ratio: Decimal
    debt_to_income_ratio: Decimal
    total_balance: Decimal
    total_debt: Decimal


@dataclass(frozen=True)
class HealthReport:
    overall_score: int
    scores: HealthScores
    metrics: HealthMetrics
    insights: list[Insight] = field(default_factory=list)


def round_money(value: Decimal | float | int) -> Decimal:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def round_whole(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))


def period_start(period: str, today: date) -> date:
    normalized = period.strip().lower()
    if normalized == "week":
        return today - timedelta(days=7)
    if normalized == "month":
        return today.replace(day=1)
    if normalized == "3months":
        return shift_month_keep_day(today, -3)
    if normalized == "6months":
        return shift_month_keep_day(today, -6)
    if normalized == "year":
        return today.replace(month=1, day=1)
    raise ValueError("Period must be week, month, 3months, 6months, or year.")


def resolve_range(
    period: str,
    start_date: date | None,
    end_date: date | None,
    today: date,
) -> tuple[date, date | None]:
    """Explicit bounds win only when both are given; named periods are open-ended."""
    if start_date is not None and end_date is not None:
        if start_date > end_date:
            raise ValueError("Start date must be on or before end date.")
        return start_date, end_date
    return period_start(period, today), None


def trend_start(today: date) -> date:
    return shift_month_keep_day(today, -TREND_MONTHS)


def previous_month_range(today: date) -> tuple[date, date]:
    """First day of last month and first day of this month (exclusive end)."""
    this_month = today.replace(day=1)
    last_month = shift_month_keep_day(this_month, -1)
    return last_month, this_month


def fold_flows(pairs: Iterable[tuple[str, Decimal]]) -> FlowTotals:
    income = ZERO
    expense = ZERO
    for txn_type, amount in pairs:
        if txn_type == "income":
            income += _coerce(amount)
        elif txn_type == "expense":
            expense += _coerce(amount)
    return FlowTotals(income=income, expense=expense)


def monthly_trend(rows: Iterable[tuple[date, str, Decimal]]) -> list[TrendPoint]:
    buckets: dict[tuple[int, int], list[tuple[str, Decimal]]] = {}
    for txn_date, txn_type, amount in rows:
        buckets.setdefault((txn_date.year, txn_date.month), []).append((txn_type, amount))

    points: list[TrendPoint] = []
    for year, month in sorted(buckets):
        flows = fold_flows(buckets[(year, month)])
        points.append(
            TrendPoint(
                year=year,
                month=month,
                income=round_money(flows.income),
                expense=round_money(flows.expense),
                net=round_money(flows.net),
            )
        )
    return points


def assess_financial_health(
    income: Decimal,
    expenses: Decimal,
    accounts: Iterable[AccountBalance],
    budgets: Iterable[BudgetUsage],
) -> HealthReport:
    """Score last month's finances on a 0-100 scale.

    ``income`` and ``expenses`` cover the previous calendar month,
    ``accounts`` are the active accounts and ``budgets`` the active budgets
    whose window contains today.
    """
    income = _coerce(income)
    expenses = _coerce(expenses)
    account_list = list(accounts)

    if income > ZERO:
        savings_rate = (income - expenses) / income * HUNDRED
        expense_ratio = expenses / income * HUNDRED
    else:
        savings_rate = ZERO
        expense_ratio = HUNDRED

    total_balance = sum((_coerce(account.balance) for account in account_list), ZERO)
    if expenses > ZERO:
        emergency_fund_ratio = total_balance / (expenses * 3)
    else:
        emergency_fund_ratio = Decimal("1")

    budget_score = budget_adherence_score(budgets)

    total_debt = sum(
        (abs(_coerce(account.balance)) for account in account_list if account.type == "credit"),
        ZERO,
    )
    debt_to_income_ratio = total_debt / income * HUNDRED if income > ZERO else ZERO

    scores = HealthScores(
        savings_rate=_clamp(savings_rate * 5),
        budget_adherence=Decimal(round_whole(budget_score)),
        emergency_fund=_clamp(emergency_fund_ratio * HUNDRED),
        expense_control=max(ZERO, HUNDRED - expense_ratio),
        debt_management=max(ZERO, HUNDRED - debt_to_income_ratio * 2),
    )
    overall = sum(
        (getattr(scores, name) * weight for name, weight in SCORE_WEIGHTS.items()),
        ZERO,
    )

    return HealthReport(
        overall_score=round_whole(overall),
        scores=scores,
        metrics=HealthMetrics(
            savings_rate=round_money(savings_rate),
            expense_ratio=round_money(expense_ratio),
            emergency_fund_ratio=round_money(emergency_fund_ratio),
            debt_to_income_ratio=round_money(debt_to_income_ratio),
            total_balance=round_money(total_balance),
            total_debt=round_money(total_debt),
        ),
        insights=build_insights(
            savings_rate, emergency_fund_ratio, budget_score, debt_to_income_ratio
        ),
    )


def budget_adherence_score(budgets: Iterable[BudgetUsage]) -> Decimal:
    usages = [usage for usage in budgets if _coerce(usage.budgeted) > ZERO]
    if not usages:
        return HUNDRED
    variance = sum(
        (abs(_coerce(usage.spent) - _coerce(usage.budgeted)) / _coerce(usage.budgeted) for usage in usages),
        ZERO,
    )
    return max(ZERO, HUNDRED - variance / len(usages) * HUNDRED)


def build_insights(
    savings_rate: Decimal,
    emergency_fund_ratio: Decimal,
    budget_score: Decimal,
    debt_to_income_ratio: Decimal,
) -> list[Insight]:
    insights: list[Insight] = []

    if savings_rate < 10:
        insights.append(
            Insight(
                type="warning",
                title="Low Savings Rate",
                description=(
                    f"Your savings rate is {round_whole(savings_rate)}%. "
                    "Aim for at least 20% to improve financial health."
                ),
                action="Review your expenses and find areas to cut back",
            )
        )
    elif savings_rate >= 20:
        insights.append(
            Insight(
                type="success",
                title="Excellent Savings Rate",
                description=f"Great job! You're saving {round_whole(savings_rate)}% of your income.",
                action="Consider increasing investments or building an emergency fund",
            )
        )

    if emergency_fund_ratio < 1:
        insights.append(
            Insight(
                type="alert",
                title="Insufficient Emergency Fund",
                description=(
                    "Build an emergency fund covering 3-6 months of expenses "
                    "for financial security."
                ),
                action="Start by saving a small amount each month consistently",
            )
        )

    if budget_score < 70:
        insights.append(
            Insight(
                type="info",
                title="Budget Variance",
                description="You're frequently going over or under budget in several categories.",
                action="Review and adjust your budgets to be more realistic",
            )
        )

    if debt_to_income_ratio > 30:
        insights.append(
            Insight(
                type="warning",
                title="High Debt-to-Income Ratio",
                description=(
                    f"Your debt-to-income ratio is {round_whole(debt_to_income_ratio)}%. "
                    "Consider debt reduction strategies."
                ),
                action="Focus on paying down high-interest debt first",
            )
        )

    if not insights:
        insights.append(
            Insight(
                type="success",
                title="Strong Financial Health",
                description="You're doing great across all financial health metrics!",
                action="Keep up the good work and consider advanced investment strategies",
            )
        )
    return insights


def _clamp(value: Decimal, lower: Decimal = ZERO, upper: Decimal = HUNDRED) -> Decimal:
    return min(upper, max(lower, value))


def _coerce(amount: Decimal | float | int | str) -> Decimal:
    return amount if isinstance(amount, Decimal) else Decimal(str(amount))
