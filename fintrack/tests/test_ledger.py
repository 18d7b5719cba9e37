import unittest
from datetime import date
from decimal import Decimal

from fintrack.ledger import (
    CategoryOption,
    LedgerEntry,
    aggregate_deltas,
    creation_deltas,
    expected_balance,
    match_import_category,
    parse_tags,
    plan_bulk_import,
    reconcile_update,
    reversal_deltas,
    signed_effect,
    storable_amount,
    to_cents,
)

CATEGORIES = [
    CategoryOption(id=1, name="Food & Dining", type="expense"),
    CategoryOption(id=2, name="Other Expenses", type="expense"),
    CategoryOption(id=3, name="Salary", type="income"),
    CategoryOption(id=4, name="Other Income", type="income"),
]


class LedgerTests(unittest.TestCase):
    def test_signed_effect_follows_type(self) -> None:
        self.assertEqual(signed_effect(Decimal("12.345"), "income"), Decimal("12.35"))
        self.assertEqual(signed_effect("40", "Expense"), Decimal("-40.00"))
        with self.assertRaises(ValueError):
            signed_effect("1", "transfer")

    def test_create_and_delete_are_symmetric(self) -> None:
        entry = LedgerEntry(account_id=7, amount=Decimal("30"), type="expense")
        self.assertEqual(creation_deltas(entry), {7: Decimal("-30.00")})
        self.assertEqual(reversal_deltas(entry), {7: Decimal("30.00")})

    def test_update_on_same_account_collapses_to_one_delta(self) -> None:
        old = LedgerEntry(account_id=1, amount=Decimal("30"), type="expense")
        new = LedgerEntry(account_id=1, amount=Decimal("45"), type="expense")
        self.assertEqual(reconcile_update(old, new), {1: Decimal("-15.00")})

    def test_type_flip_moves_twice_the_amount(self) -> None:
        old = LedgerEntry(account_id=1, amount=Decimal("20"), type="expense")
        new = LedgerEntry(account_id=1, amount=Decimal("20"), type="income")
        self.assertEqual(reconcile_update(old, new), {1: Decimal("40.00")})

    def test_moving_accounts_touches_both(self) -> None:
        old = LedgerEntry(account_id=1, amount=Decimal("20"), type="expense")
        new = LedgerEntry(account_id=2, amount=Decimal("20"), type="expense")
        deltas = reconcile_update(old, new)
        self.assertEqual(deltas, {1: Decimal("20.00"), 2: Decimal("-20.00")})
        self.assertEqual(sum(deltas.values()), Decimal("0"))

    def test_unchanged_update_has_no_deltas(self) -> None:
        entry = LedgerEntry(account_id=3, amount=Decimal("9.99"), type="income")
        self.assertEqual(reconcile_update(entry, entry), {})

    def test_expected_balance(self) -> None:
        entries = [
            LedgerEntry(account_id=1, amount=Decimal("100"), type="income"),
            LedgerEntry(account_id=1, amount=Decimal("35.50"), type="expense"),
        ]
        self.assertEqual(expected_balance(Decimal("10"), entries), Decimal("74.50"))
        self.assertEqual(aggregate_deltas(entries), {1: Decimal("64.50")})

    def test_bulk_import_reports_row_failures(self) -> None:
        rows = [
            {"amount": 100, "description": "Pay", "date": "2024-01-01"},
            {"amount": -1, "description": "", "date": ""},
        ]

        plan = plan_bulk_import(rows, account_id=9, categories=CATEGORIES)

        self.assertEqual(len(plan.rows), 1)
        self.assertEqual(plan.rows[0].type, "income")
        self.assertEqual(plan.rows[0].category_id, 4)
        self.assertEqual(plan.rows[0].date, date(2024, 1, 1))
        self.assertEqual([(f.row, f.error) for f in plan.failures], [(2, "Missing required fields")])
        self.assertEqual(plan.deltas, {9: Decimal("100.00")})

    def test_bulk_import_row_errors(self) -> None:
        rows = [
            {"amount": "abc", "description": "Bad", "date": "2024-01-01"},
            {"amount": 0, "description": "Zero", "date": "2024-01-01"},
            {"amount": "-12.50", "description": "Lunch", "date": "not a date"},
            "not a row",
        ]

        plan = plan_bulk_import(rows, account_id=1, categories=CATEGORIES)

        self.assertEqual(plan.rows, [])
        self.assertEqual(
            [(f.row, f.error) for f in plan.failures],
            [(1, "Invalid amount"), (2, "Missing required fields"), (3, "Invalid date"), (4, "Invalid row")],
        )
        self.assertEqual(plan.deltas, {})

    def test_oversized_rows_fail_alone(self) -> None:
        rows = [
            {"amount": 100, "description": "Pay", "date": "2024-01-01"},
            {"amount": "1e30", "description": "Huge", "date": "2024-01-02"},
            {"amount": Decimal("1E+40"), "description": "Huger", "date": "2024-01-03"},
            {"amount": "0", "description": "Zero text", "date": "2024-01-04"},
        ]

        plan = plan_bulk_import(rows, account_id=5, categories=CATEGORIES)

        self.assertEqual(len(plan.rows), 1)
        self.assertEqual(
            [(f.row, f.error) for f in plan.failures],
            [(2, "Invalid amount"), (3, "Invalid amount"), (4, "Invalid amount")],
        )
        self.assertEqual(plan.deltas, {5: Decimal("100.00")})

    def test_amount_rounding_and_limits(self) -> None:
        self.assertEqual(to_cents("2.005"), Decimal("2.01"))
        self.assertEqual(storable_amount("9999999999.99"), Decimal("9999999999.99"))
        with self.assertRaisesRegex(ValueError, "too large"):
            storable_amount("10000000000")
        with self.assertRaisesRegex(ValueError, "too large"):
            storable_amount(Decimal("-1e30"))
        for bad in ("1e30", "abc", "Infinity", float("nan")):
            with self.assertRaises(ValueError):
                to_cents(bad)

    def test_bulk_import_missing_category_type(self) -> None:
        income_only = [CategoryOption(id=3, name="Salary", type="income")]
        rows = [{"amount": -5, "description": "Snack", "date": "2024-02-01"}]

        plan = plan_bulk_import(rows, account_id=1, categories=income_only)

        self.assertEqual(plan.failures[0].error, "No expense category found")

    def test_bulk_import_sums_deltas_once_per_account(self) -> None:
        rows = [
            {"amount": -20, "description": "Dinner", "date": "2024-03-01", "category": "food", "tags": "eat, out"},
            {"amount": "-5.25", "description": "Coffee", "date": "2024-03-02"},
            {"amount": 50, "description": "Gift", "date": "2024-03-03", "tags": ["family", " "]},
        ]

        plan = plan_bulk_import(rows, account_id=2, categories=CATEGORIES)

        self.assertEqual(plan.deltas, {2: Decimal("24.75")})
        self.assertEqual(plan.rows[0].category_id, 1)
        self.assertEqual(plan.rows[0].tags, ("eat", "out"))
        self.assertEqual(plan.rows[1].category_id, 2)
        self.assertEqual(plan.rows[1].amount, Decimal("5.25"))
        self.assertEqual(plan.rows[2].tags, ("family",))

    def test_category_match_falls_back_to_first_of_type(self) -> None:
        match = match_import_category(CATEGORIES, "income", "bonus")
        self.assertEqual(match.id, 3)
        self.assertIsNone(match_import_category([], "income", None))

    def test_parse_tags(self) -> None:
        self.assertEqual(parse_tags(" a, ,b "), ("a", "b"))
        self.assertEqual(parse_tags(None), ())
        self.assertEqual(parse_tags(5), ())


if __name__ == "__main__":
    unittest.main()
