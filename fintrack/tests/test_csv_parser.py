import unittest
from datetime import date
from decimal import Decimal

from fintrack.csv_parser import parse_decimal, parse_transactions_csv


class CSVParserTests(unittest.TestCase):
    def test_maps_rows_and_skips_unreadable_ones(self) -> None:
        contents = (
            "Date,Description,Amount,Category,Tags\n"
            '2024-01-05,Coffee,-4.50,Food,"morning, caffeine"\n'
            '01/06/2024,Refund,"$1,200.00",,\n'
            ",,,,\n"
            "2024-01-07,Broken,abc,,\n"
            "bad-date,Oops,5,,\n"
        )

        result = parse_transactions_csv(contents)

        self.assertEqual(result.columns, ["date", "description", "amount", "category", "tags"])
        self.assertEqual(len(result.rows), 2)
        coffee, refund = result.rows
        self.assertEqual(coffee.type, "expense")
        self.assertEqual(coffee.amount, Decimal("4.50"))
        self.assertEqual(coffee.category, "Food")
        self.assertEqual(coffee.tags, ["morning", "caffeine"])
        self.assertEqual(refund.date, date(2024, 1, 6))
        self.assertEqual(refund.amount, Decimal("1200.00"))
        self.assertEqual(refund.type, "income")
        self.assertEqual(refund.category, "Other")
        self.assertEqual(result.skipped_rows, [4, 5])

    def test_column_aliases(self) -> None:
        contents = (
            "Posting Date,Memo,Debit,Transaction Type\n"
            "2024-02-01,Paycheck,0,credit\n"
            "2024-02-02,Rent,(950.00),debit\n"
        )

        result = parse_transactions_csv(contents)

        paycheck, rent = result.rows
        self.assertEqual(paycheck.date, date(2024, 2, 1))
        self.assertEqual(paycheck.description, "Paycheck")
        self.assertEqual(paycheck.type, "income")
        self.assertEqual(paycheck.category, "credit")
        self.assertEqual(rent.amount, Decimal("950.00"))
        self.assertEqual(rent.type, "expense")

    def test_defaults_for_missing_columns(self) -> None:
        result = parse_transactions_csv("Amount\n12\n", today=date(2024, 3, 9))

        row = result.rows[0]
        self.assertEqual(row.date, date(2024, 3, 9))
        self.assertEqual(row.description, "Transaction 1")
        self.assertEqual(row.category, "Other")
        self.assertEqual(row.type, "income")

    def test_type_column_marks_income(self) -> None:
        result = parse_transactions_csv("Date,Description,Amount,Type\n2024-04-01,Bonus,-10,income\n")

        self.assertEqual(result.rows[0].type, "income")
        self.assertEqual(result.rows[0].amount, Decimal("10"))

    def test_missing_header_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_transactions_csv("")
        with self.assertRaises(ValueError):
            parse_transactions_csv(" , \n1,2\n")

    def test_parse_decimal(self) -> None:
        self.assertEqual(parse_decimal("(1,234.56)"), Decimal("-1234.56"))
        self.assertEqual(parse_decimal("+$7"), Decimal("7"))
        self.assertIsNone(parse_decimal("NaN"))
        self.assertIsNone(parse_decimal(""))


if __name__ == "__main__":
    unittest.main()
