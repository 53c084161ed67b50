import unittest
from decimal import Decimal

from cuentas.categories import (
    FALLBACK_ICON,
    FALLBACK_TAG,
    INCOME_ICON,
    INCOME_TAG,
    category_usage,
    discover_categories,
    find_category,
    normalize_tag,
    overlay_without,
    plan_rename,
    plan_soft_delete,
    resolve_category,
)
from cuentas.transactions import CustomCategory, Transaction


def make_transaction(txn_id: int, tag: str, icon: str = "🍔", **overrides) -> Transaction:
    values = {
        "id": txn_id,
        "desc": "Compra",
        "amount": Decimal("10"),
        "tag": tag,
        "type": "expense",
        "date": "Hoy",
        "icon": icon,
    }
    values.update(overrides)
    return Transaction(**values)


class DiscoveryTests(unittest.TestCase):
    def test_normalize_tag_ignores_case_accents_and_spaces(self) -> None:
        self.assertEqual(normalize_tag(" Educación "), "EDUCACION")
        self.assertEqual(normalize_tag("educacion"), normalize_tag("EDUCACIÓN"))

    def test_discovers_distinct_tags_sorted(self) -> None:
        transactions = [
            make_transaction(1, "Transporte", "🚌"),
            make_transaction(2, "educación", "📚"),
            make_transaction(3, "Educacion", "🎓"),
            make_transaction(4, "  "),
        ]

        catalog = discover_categories(transactions)

        self.assertEqual([category.label for category in catalog], ["educación", "Transporte"])
        self.assertEqual(catalog[0].icon, "📚")
        self.assertEqual(catalog[0].id, "tx-cat-educacion")

    def test_custom_categories_overlay_discovered_ones(self) -> None:
        transactions = [make_transaction(1, "Ocio", "🎮")]
        custom = [
            CustomCategory(label="OCIO", icon="🎬", id="ocio"),
            CustomCategory(label="Mascotas", icon="🐶", id="mascotas"),
        ]

        catalog = discover_categories(transactions, custom)

        self.assertEqual(len(catalog), 2)
        ocio = find_category(catalog, "ocio")
        self.assertEqual(ocio.icon, "🎬")
        self.assertEqual(ocio.id, "ocio")

    def test_income_always_resolves_to_capital_income(self) -> None:
        category = resolve_category([], None, "income")

        self.assertEqual(category.label, INCOME_TAG)
        self.assertEqual(category.icon, INCOME_ICON)

    def test_expense_requires_known_category(self) -> None:
        catalog = discover_categories([make_transaction(1, "Salud", "💊")])

        self.assertEqual(resolve_category(catalog, " salud", "expense").label, "Salud")
        with self.assertRaises(ValueError):
            resolve_category(catalog, None, "expense")
        with self.assertRaises(ValueError):
            resolve_category(catalog, "Viajes", "expense")

    def test_usage_counts_most_used_first(self) -> None:
        transactions = [
            make_transaction(1, "Comida"),
            make_transaction(2, "Comida"),
            make_transaction(3, "Ocio", "🎮"),
        ]

        usage = category_usage(transactions)

        self.assertEqual([(entry.tag, entry.count) for entry in usage], [("Comida", 2), ("Ocio", 1)])


class RetagPlanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            make_transaction(1, "Educación"),
            make_transaction(2, "EDUCACION "),
            make_transaction(3, "Ocio"),
        ]

    def test_rename_matches_case_and_accent_insensitively(self) -> None:
        plan = plan_rename(self.transactions, "educacion", " Estudios ", "📚")

        self.assertEqual(plan.transaction_ids, [1, 2])
        self.assertEqual(plan.tag, "Estudios")
        self.assertEqual(plan.icon, "📚")

    def test_rename_requires_all_fields(self) -> None:
        with self.assertRaises(ValueError):
            plan_rename(self.transactions, "Ocio", "", "🎮")
        with self.assertRaises(ValueError):
            plan_rename(self.transactions, "Ocio", "Juegos", " ")

    def test_soft_delete_moves_to_fallback(self) -> None:
        plan = plan_soft_delete(self.transactions, "ocio")

        self.assertEqual(plan.transaction_ids, [3])
        self.assertEqual(plan.tag, FALLBACK_TAG)
        self.assertEqual(plan.icon, FALLBACK_ICON)

    def test_overlay_without_drops_matching_label(self) -> None:
        custom = [CustomCategory(label="Educación"), CustomCategory(label="Ocio")]

        remaining = overlay_without(custom, "EDUCACION")

        self.assertEqual([entry.label for entry in remaining], ["Ocio"])


if __name__ == "__main__":
    unittest.main()
