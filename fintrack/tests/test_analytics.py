import unittest
from datetime import date
from decimal import Decimal

from fintrack.analytics import (
    AccountBalance,
    BudgetUsage,
    assess_financial_health,
    budget_adherence_score,
    monthly_trend,
    period_start,
    previous_month_range,
    resolve_range,
)


class FinancialHealthTests(unittest.TestCase):
    def test_reference_household_scores_88(self) -> None:
        report = assess_financial_health(
            Decimal("2000"),
            Decimal("1600"),
            [AccountBalance(type="checking", balance=Decimal("4800"))],
            [],
        )

        self.assertEqual(report.overall_score, 88)
        self.assertEqual(report.scores.savings_rate, Decimal("100"))
        self.assertEqual(report.scores.expense_control, Decimal("20"))
        self.assertEqual(report.metrics.savings_rate, Decimal("20.00"))
        self.assertEqual(report.metrics.expense_ratio, Decimal("80.00"))
        self.assertEqual(report.metrics.emergency_fund_ratio, Decimal("1.00"))
        self.assertEqual([insight.title for insight in report.insights], ["Excellent Savings Rate"])

    def test_no_income_uses_fallback_ratios(self) -> None:
        report = assess_financial_health(Decimal("0"), Decimal("0"), [], [])

        self.assertEqual(report.overall_score, 60)
        self.assertEqual(report.metrics.expense_ratio, Decimal("100.00"))
        self.assertEqual(report.metrics.debt_to_income_ratio, Decimal("0.00"))
        self.assertEqual([insight.title for insight in report.insights], ["Low Savings Rate"])

    def test_credit_debt_and_thin_reserves(self) -> None:
        report = assess_financial_health(
            Decimal("1000"),
            Decimal("900"),
            [
                AccountBalance(type="checking", balance=Decimal("100")),
                AccountBalance(type="credit", balance=Decimal("-400")),
            ],
            [],
        )

        self.assertEqual(report.overall_score, 42)
        self.assertEqual(report.scores.emergency_fund, Decimal("0"))
        self.assertEqual(report.metrics.total_debt, Decimal("400.00"))
        self.assertEqual(report.metrics.total_balance, Decimal("-300.00"))
        self.assertEqual(
            [insight.title for insight in report.insights],
            ["Insufficient Emergency Fund", "High Debt-to-Income Ratio"],
        )
        self.assertIn("40%", report.insights[1].description)

    def test_budget_adherence(self) -> None:
        self.assertEqual(budget_adherence_score([]), Decimal("100"))
        self.assertEqual(
            budget_adherence_score(
                [
                    BudgetUsage(budgeted=Decimal("100"), spent=Decimal("50")),
                    BudgetUsage(budgeted=Decimal("200"), spent=Decimal("200")),
                ]
            ),
            Decimal("75"),
        )
        self.assertEqual(
            budget_adherence_score([BudgetUsage(budgeted=Decimal("100"), spent=Decimal("300"))]),
            Decimal("0"),
        )


class PeriodTests(unittest.TestCase):
    def test_named_periods(self) -> None:
        today = date(2024, 5, 31)
        self.assertEqual(period_start("week", today), date(2024, 5, 24))
        self.assertEqual(period_start("month", today), date(2024, 5, 1))
        self.assertEqual(period_start("3months", today), date(2024, 2, 29))
        self.assertEqual(period_start("6months", today), date(2023, 11, 30))
        self.assertEqual(period_start("year", today), date(2024, 1, 1))
        with self.assertRaises(ValueError):
            period_start("decade", today)

    def test_explicit_range_needs_both_bounds(self) -> None:
        today = date(2024, 5, 15)
        self.assertEqual(
            resolve_range("month", date(2024, 1, 1), date(2024, 1, 31), today),
            (date(2024, 1, 1), date(2024, 1, 31)),
        )
        self.assertEqual(resolve_range("month", date(2024, 1, 1), None, today), (date(2024, 5, 1), None))
        with self.assertRaises(ValueError):
            resolve_range("month", date(2024, 2, 1), date(2024, 1, 1), today)

    def test_previous_month_range_crosses_year(self) -> None:
        self.assertEqual(previous_month_range(date(2024, 1, 15)), (date(2023, 12, 1), date(2024, 1, 1)))

    def test_monthly_trend_buckets_by_month(self) -> None:
        points = monthly_trend(
            [
                (date(2024, 2, 3), "income", 100),
                (date(2024, 1, 5), "expense", Decimal("40.5")),
                (date(2024, 2, 9), "expense", 30),
            ]
        )

        self.assertEqual([(point.year, point.month) for point in points], [(2024, 1), (2024, 2)])
        self.assertEqual(points[0].net, Decimal("-40.50"))
        self.assertEqual(points[1].income, Decimal("100.00"))
        self.assertEqual(points[1].net, Decimal("70.00"))


if __name__ == "__main__":
    unittest.main()
