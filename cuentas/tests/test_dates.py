import unittest
from datetime import date

from cuentas.dates import (
    EPOCH,
    FALLBACK_TODAY,
    days_left_in_month,
    is_relative_sentinel,
    is_today_sentinel,
    month_end,
    normalize_date,
    parse_date_strict,
    shift_month,
)

TODAY = date(2024, 4, 15)


class NormalizeDateTests(unittest.TestCase):
    def test_relative_sentinels_resolve_against_today(self) -> None:
        self.assertEqual(normalize_date("Hoy", today=TODAY), TODAY)
        self.assertEqual(normalize_date("  hoy ", today=TODAY), TODAY)
        self.assertEqual(normalize_date("Ayer", today=TODAY), date(2024, 4, 14))

    def test_year_first_formats(self) -> None:
        self.assertEqual(normalize_date("2024-03-05", today=TODAY), date(2024, 3, 5))
        self.assertEqual(normalize_date("2024/3/5", today=TODAY), date(2024, 3, 5))

    def test_day_first_formats(self) -> None:
        self.assertEqual(normalize_date("5/3/2024", today=TODAY), date(2024, 3, 5))
        self.assertEqual(normalize_date("05-03-24", today=TODAY), date(2024, 3, 5))

    def test_day_month_without_year_takes_current_year(self) -> None:
        self.assertEqual(normalize_date("1/2", today=TODAY), date(2024, 2, 1))

    def test_iso_datetime_keeps_date_portion(self) -> None:
        self.assertEqual(
            normalize_date("2024-01-31T23:30:00.000Z", today=TODAY),
            date(2024, 1, 31),
        )

    def test_unparseable_values_use_epoch_by_default(self) -> None:
        with self.assertLogs("cuentas.dates", level="WARNING"):
            self.assertEqual(normalize_date("mañana", today=TODAY), EPOCH)

    def test_today_fallback_policy(self) -> None:
        with self.assertLogs("cuentas.dates", level="WARNING"):
            self.assertEqual(
                normalize_date("", today=TODAY, fallback=FALLBACK_TODAY),
                TODAY,
            )

    def test_impossible_calendar_dates_fall_back(self) -> None:
        self.assertIsNone(parse_date_strict("31/2/2024", today=TODAY))
        with self.assertLogs("cuentas.dates", level="WARNING"):
            self.assertEqual(normalize_date("2024-02-30", today=TODAY), EPOCH)

    def test_unknown_fallback_policy_raises(self) -> None:
        with self.assertRaises(ValueError):
            normalize_date("Hoy", today=TODAY, fallback="yesterday")


class MonthHelperTests(unittest.TestCase):
    def test_shift_month_crosses_year_boundary(self) -> None:
        self.assertEqual(shift_month(date(2024, 1, 20), -1), date(2023, 12, 1))
        self.assertEqual(shift_month(date(2024, 12, 2), 1), date(2025, 1, 1))

    def test_month_end_handles_leap_years(self) -> None:
        self.assertEqual(month_end(date(2024, 2, 10)), date(2024, 2, 29))
        self.assertEqual(month_end(date(2023, 2, 10)), date(2023, 2, 28))

    def test_days_left_in_month(self) -> None:
        self.assertEqual(days_left_in_month(TODAY), 15)

    def test_sentinel_checks(self) -> None:
        self.assertTrue(is_today_sentinel("HOY"))
        self.assertFalse(is_today_sentinel("Ayer"))
        self.assertTrue(is_relative_sentinel("ayer"))
        self.assertFalse(is_relative_sentinel("2024-04-15"))
        self.assertFalse(is_relative_sentinel(None))


if __name__ == "__main__":
    unittest.main()
