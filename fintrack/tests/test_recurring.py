import unittest
from datetime import date

from fintrack.recurring import next_occurrence, normalize_frequency, resolve_next_date


class RecurringTests(unittest.TestCase):
    def test_daily_and_weekly_steps(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 12, 31), "daily"), date(2025, 1, 1))
        self.assertEqual(next_occurrence(date(2024, 2, 26), "weekly"), date(2024, 3, 4))

    def test_monthly_clamps_to_month_end(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 1, 31), "monthly"), date(2024, 2, 29))
        self.assertEqual(next_occurrence(date(2023, 1, 31), "monthly"), date(2023, 2, 28))
        self.assertEqual(next_occurrence(date(2024, 12, 15), "monthly"), date(2025, 1, 15))

    def test_yearly_clamps_leap_day(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 2, 29), "yearly"), date(2025, 2, 28))

    def test_rejects_unknown_frequency(self) -> None:
        with self.assertRaises(ValueError):
            normalize_frequency("fortnightly")
        self.assertEqual(normalize_frequency(" Monthly "), "monthly")

    def test_resolve_next_date(self) -> None:
        self.assertIsNone(resolve_next_date(False, "monthly", date(2024, 1, 1)))
        self.assertIsNone(resolve_next_date(True, None, date(2024, 1, 1)))
        self.assertEqual(
            resolve_next_date(True, "monthly", date(2024, 1, 1)),
            date(2024, 2, 1),
        )
        self.assertIsNone(
            resolve_next_date(True, "monthly", date(2024, 1, 1), end_date=date(2024, 1, 20))
        )


if __name__ == "__main__":
    unittest.main()
