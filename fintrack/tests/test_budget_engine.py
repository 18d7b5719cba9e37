import unittest
from datetime import date
from decimal import Decimal

from fintrack.budget_engine import (
    BudgetRule,
    Transaction,
    budget_status,
    evaluate_budget,
    is_current,
    windows_overlap,
)


class BudgetEngineTests(unittest.TestCase):
    def test_sums_expenses_in_category_and_window(self) -> None:
        transactions = [
            Transaction(amount=Decimal("50"), type="expense", date=date(2024, 5, 1), category_id=1),
            Transaction(amount=Decimal("25"), type="expense", date=date(2024, 5, 31), category_id=1),
            Transaction(amount=Decimal("10"), type="expense", date=date(2024, 5, 2), category_id=2),
            Transaction(amount=Decimal("100"), type="income", date=date(2024, 5, 2), category_id=1),
            Transaction(amount=Decimal("70"), type="expense", date=date(2024, 6, 1), category_id=1),
        ]
        rule = BudgetRule(
            amount=Decimal("100"),
            category_id=1,
            start_date=date(2024, 5, 1),
            end_date=date(2024, 5, 31),
        )

        result = evaluate_budget(transactions, rule, today=date(2024, 5, 21))

        self.assertEqual(result.spent, Decimal("75"))
        self.assertEqual(result.remaining, Decimal("25"))
        self.assertEqual(result.percentage, Decimal("75"))
        self.assertEqual(result.status, "good")
        self.assertEqual(result.transaction_count, 2)
        self.assertEqual(result.days_remaining, 10)

    def test_overspending_reports_over_and_negative_remaining(self) -> None:
        transactions = [
            Transaction(amount=Decimal("130"), type="expense", date=date(2024, 5, 3), category_id=4),
        ]
        rule = BudgetRule(
            amount=Decimal("100"),
            category_id=4,
            start_date=date(2024, 5, 1),
            end_date=date(2024, 5, 31),
        )

        result = evaluate_budget(transactions, rule, today=date(2024, 7, 1))

        self.assertEqual(result.status, "over")
        self.assertEqual(result.remaining, Decimal("-30"))
        self.assertEqual(result.days_remaining, 0)

    def test_status_thresholds(self) -> None:
        self.assertEqual(budget_status(Decimal("100"), 80), "warning")
        self.assertEqual(budget_status(Decimal("80"), 80), "warning")
        self.assertEqual(budget_status(Decimal("79.99"), 80), "good")
        self.assertEqual(budget_status(Decimal("100.01"), 80), "over")
        self.assertEqual(budget_status(Decimal("0"), 0), "warning")

    def test_rejects_invalid_rules(self) -> None:
        with self.assertRaises(ValueError):
            evaluate_budget(
                [],
                BudgetRule(
                    amount=Decimal("100"),
                    category_id=1,
                    start_date=date(2024, 5, 31),
                    end_date=date(2024, 5, 31),
                ),
                today=date(2024, 5, 1),
            )
        with self.assertRaises(ValueError):
            evaluate_budget(
                [],
                BudgetRule(
                    amount=Decimal("0"),
                    category_id=1,
                    start_date=date(2024, 5, 1),
                    end_date=date(2024, 5, 31),
                ),
                today=date(2024, 5, 1),
            )

    def test_window_helpers(self) -> None:
        self.assertTrue(
            windows_overlap(date(2024, 1, 1), date(2024, 1, 31), date(2024, 1, 31), date(2024, 2, 28))
        )
        self.assertFalse(
            windows_overlap(date(2024, 1, 1), date(2024, 1, 31), date(2024, 2, 1), date(2024, 2, 28))
        )
        rule = BudgetRule(
            amount=Decimal("10"),
            category_id=1,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
        )
        self.assertTrue(is_current(rule, date(2024, 1, 31)))
        self.assertFalse(is_current(rule, date(2024, 2, 1)))


if __name__ == "__main__":
    unittest.main()
