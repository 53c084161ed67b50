import unittest
from datetime import date
from decimal import Decimal

from cuentas.dates import FALLBACK_TODAY, shift_month
from cuentas.recurring_checklist import (
    build_checklist,
    ensure_cancellable,
    is_due_in_month,
    obligation_key,
    pending_entries,
    prefill_from_entry,
)
from cuentas.transactions import Transaction

TODAY = date(2024, 4, 15)


def make_transaction(txn_id: int, date_value: str, **overrides) -> Transaction:
    values = {
        "id": txn_id,
        "desc": "Alquiler",
        "amount": Decimal("4000"),
        "tag": "Vivienda",
        "type": "expense",
        "date": date_value,
        "goal_type": "mensual",
    }
    values.update(overrides)
    return Transaction(**values)


class ChecklistTests(unittest.TestCase):
    def test_occurrences_collapse_to_one_paid_entry(self) -> None:
        transactions = [
            make_transaction(1, "2024-03-01"),
            make_transaction(2, "Hoy", desc=" alquiler ", tag="VIVIENDA"),
        ]

        entries = build_checklist(transactions, today=TODAY)

        self.assertEqual(len(entries), 1)
        self.assertTrue(entries[0].is_paid)
        self.assertEqual(entries[0].transaction.id, 2)
        self.assertEqual(entries[0].key, ("alquiler", "vivienda"))

    def test_obligation_without_current_payment_is_pending(self) -> None:
        entries = build_checklist([make_transaction(1, "10/03/2024")], today=TODAY)

        self.assertEqual(len(entries), 1)
        self.assertFalse(entries[0].is_paid)
        self.assertEqual(entries[0].due_day, 10)
        self.assertEqual(entries[0].label, "Alquiler")

    def test_periodic_obligation_due_on_its_cycle(self) -> None:
        january = make_transaction(
            1, "2024-01-10", desc="Seguro", tag="Auto", goal_type="periodo", periodicity=3
        )
        february = make_transaction(
            2, "2024-02-10", desc="Patente", tag="Auto", goal_type="periodo", periodicity=3
        )

        entries = build_checklist([january, february], today=TODAY)

        self.assertEqual([entry.transaction.id for entry in entries], [1])
        self.assertFalse(entries[0].is_paid)

    def test_periodic_due_check_uses_month_distance(self) -> None:
        txn = make_transaction(1, "2024-01-10", goal_type="periodo", periodicity=3)

        self.assertTrue(is_due_in_month(txn, date(2024, 1, 10), date(2024, 4, 1)))
        self.assertFalse(is_due_in_month(txn, date(2024, 1, 10), date(2024, 3, 1)))
        self.assertFalse(is_due_in_month(txn, date(2024, 5, 10), date(2024, 4, 1)))

    def test_semiannual_obligation_due_every_six_months(self) -> None:
        txn = make_transaction(1, "2023-10-10", desc="Seguro", goal_type="periodo", periodicity=6)
        anchor = date(2023, 10, 10)
        cases = [(offset, True) for offset in (0, 6, 12)] + [
            (offset, False) for offset in (1, 2, 3, 4, 5, 7, 11)
        ]

        for offset, due in cases:
            reference = shift_month(date(2023, 10, 15), offset)
            with self.subTest(offset=offset):
                self.assertEqual(is_due_in_month(txn, anchor, reference), due)
                entries = build_checklist([txn], today=reference)
                self.assertEqual(len(entries), 1 if due else 0)
                if due:
                    self.assertEqual(entries[0].is_paid, offset == 0)

    def test_periodic_without_periodicity_is_never_due(self) -> None:
        txn = make_transaction(1, "2024-04-01", goal_type="periodo", periodicity=None)

        self.assertEqual(build_checklist([txn], today=TODAY), [])

    def test_ignores_cancelled_income_and_one_off(self) -> None:
        transactions = [
            make_transaction(1, "2024-04-01", is_cancelled=True),
            make_transaction(2, "2024-04-01", desc="Sueldo", type="income"),
            make_transaction(3, "2024-04-01", desc="Cine", goal_type="unico"),
            make_transaction(4, "2024-04-01", desc="Ahorro", goal_type="meta"),
        ]

        self.assertEqual(build_checklist(transactions, today=TODAY), [])

    def test_paid_status_survives_newer_unpaid_occurrence(self) -> None:
        transactions = [
            make_transaction(1, "2024-04-01"),
            make_transaction(2, "2024-05-01"),
        ]

        entries = build_checklist(transactions, today=TODAY)

        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].transaction.id, 2)
        self.assertTrue(entries[0].is_paid)

    def test_ties_keep_first_occurrence(self) -> None:
        transactions = [
            make_transaction(1, "2024-03-05"),
            make_transaction(2, "5/3/2024"),
        ]

        entries = build_checklist(transactions, today=TODAY)

        self.assertEqual(entries[0].transaction.id, 1)

    def test_unpaid_first_then_by_due_day(self) -> None:
        transactions = [
            make_transaction(1, "2024-04-02", desc="Internet", tag="Servicios"),
            make_transaction(2, "2024-03-20", desc="Gimnasio", tag="Salud"),
            make_transaction(3, "2024-03-05", desc="Luz", tag="Servicios"),
        ]

        entries = build_checklist(transactions, today=TODAY)

        self.assertEqual([entry.label for entry in entries], ["Luz", "Gimnasio", "Internet"])
        self.assertEqual([entry.label for entry in pending_entries(entries)], ["Luz", "Gimnasio"])

    def test_unparseable_date_follows_fallback_policy(self) -> None:
        txn = make_transaction(1, "pronto")

        with self.assertLogs("cuentas.dates", level="WARNING"):
            epoch_entries = build_checklist([txn], today=TODAY)
        with self.assertLogs("cuentas.dates", level="WARNING"):
            today_entries = build_checklist([txn], today=TODAY, fallback=FALLBACK_TODAY)

        self.assertFalse(epoch_entries[0].is_paid)
        self.assertTrue(today_entries[0].is_paid)

    def test_obligation_key_is_trimmed_and_lowercased(self) -> None:
        txn = make_transaction(1, "Hoy", desc="  Netflix ", tag=" Ocio")

        self.assertEqual(obligation_key(txn), ("netflix", "ocio"))


class PaymentHelpersTests(unittest.TestCase):
    def test_prefill_uses_ils_snapshot_and_today(self) -> None:
        txn = make_transaction(
            1,
            "2024-03-01",
            amount=Decimal("1000"),
            amount_ils=Decimal("3650"),
            payment_method="card",
            card_digits="4321",
        )
        entry = build_checklist([txn], today=TODAY)[0]

        prefill = prefill_from_entry(entry, TODAY)

        self.assertEqual(prefill["amount"], Decimal("3650"))
        self.assertEqual(prefill["currency"], "ILS")
        self.assertEqual(prefill["date"], "2024-04-15")
        self.assertEqual(prefill["tag"], "Vivienda")
        self.assertEqual(prefill["goal_type"], "mensual")
        self.assertEqual(prefill["card_digits"], "4321")

    def test_prefill_falls_back_to_stored_amount(self) -> None:
        entry = build_checklist([make_transaction(1, "2024-03-01")], today=TODAY)[0]

        self.assertEqual(prefill_from_entry(entry, TODAY)["amount"], Decimal("4000"))

    def test_only_open_recurring_transactions_can_be_cancelled(self) -> None:
        ensure_cancellable(make_transaction(1, "Hoy"))
        with self.assertRaises(ValueError):
            ensure_cancellable(make_transaction(2, "Hoy", goal_type="unico"))
        with self.assertRaises(ValueError):
            ensure_cancellable(make_transaction(3, "Hoy", is_cancelled=True))


if __name__ == "__main__":
    unittest.main()
