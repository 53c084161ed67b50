"""
Category catalog derived from the transaction log.

Categories are not stored on their own: the catalog is rebuilt on every load
from the distinct tags found on transactions and overlaid with the user's
custom categories. Tags are matched on a normalized form (trimmed, upper
case, diacritics removed) so "Educación" and "educacion " are the same
category.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from cuentas.transactions import DEFAULT_ICON, CustomCategory, Transaction

FALLBACK_TAG = "OTROS"
FALLBACK_ICON = "❓"
DISCOVERED_ICON = "📦"
INCOME_TAG = "Ingreso de Capital"
INCOME_ICON = "💼"
MAX_GLYPH_LENGTH = 5


@dataclass(frozen=True)
class Category:
    id: str
    label: str
    icon: str


@dataclass(frozen=True)
class CategoryUsage:
    tag: str
    icon: str
    count: int


@dataclass(frozen=True)
class RetagPlan:
    transaction_ids: List[int]
    tag: str
    icon: str


def normalize_tag(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.strip().upper())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def category_slug(label: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", normalize_tag(label).lower())


def discover_categories(
    transactions: Iterable[Transaction],
    custom: Iterable[CustomCategory] = (),
) -> List[Category]:
    """Distinct categories from history, overlaid with custom ones, A-Z."""
    catalog: Dict[str, Category] = {}
    for txn in transactions:
        label = txn.tag.strip() if txn.tag else ""
        if not label:
            continue
        key = normalize_tag(label)
        if key not in catalog:
            catalog[key] = Category(
                id=f"tx-cat-{category_slug(label)}",
                label=label,
                icon=txn.icon or DISCOVERED_ICON,
            )

    for entry in custom:
        label = entry.label.strip() if entry.label else ""
        if not label:
            continue
        catalog[normalize_tag(label)] = Category(
            id=entry.id or category_slug(label),
            label=label,
            icon=entry.icon or DEFAULT_ICON,
        )

    return sorted(catalog.values(), key=lambda category: category.label.casefold())


def find_category(categories: Iterable[Category], label: str) -> Optional[Category]:
    target = normalize_tag(label)
    for category in categories:
        if normalize_tag(category.label) == target:
            return category
    return None


def resolve_category(
    categories: Iterable[Category],
    tag: str | None,
    transaction_type: str,
) -> Category:
    """Category a new transaction is filed under.

    Income is always filed under the capital-income category; expenses must
    name a known category.
    """
    if transaction_type == "income":
        return Category(id=category_slug(INCOME_TAG), label=INCOME_TAG, icon=INCOME_ICON)
    if not tag or not tag.strip():
        raise ValueError("Category required.")
    category = find_category(categories, tag)
    if category is None:
        raise ValueError(f"Unknown category: {tag.strip()}")
    return category


def category_usage(
    transactions: Iterable[Transaction],
    categories: Iterable[Category] = (),
) -> List[CategoryUsage]:
    """Transaction count per tag, most used first."""
    usage: Dict[str, Dict[str, object]] = {}
    for category in categories:
        usage[category.label] = {"icon": category.icon, "count": 0}
    for txn in transactions:
        entry = usage.setdefault(txn.tag, {"icon": txn.icon, "count": 0})
        if txn.icon and len(txn.icon) < MAX_GLYPH_LENGTH:
            entry["icon"] = txn.icon
        entry["count"] = int(entry["count"]) + 1
    ranked = sorted(usage.items(), key=lambda item: item[1]["count"], reverse=True)
    return [
        CategoryUsage(tag=tag, icon=str(entry["icon"] or DEFAULT_ICON), count=int(entry["count"]))
        for tag, entry in ranked
    ]


def plan_rename(
    transactions: Iterable[Transaction],
    old_tag: str,
    new_tag: str,
    new_icon: str,
) -> RetagPlan:
    """Transactions to rewrite when renaming ``old_tag``.

    Renaming onto a label that already exists merges the two categories.
    """
    if not old_tag or not old_tag.strip():
        raise ValueError("Original category required.")
    if not new_tag or not new_tag.strip():
        raise ValueError("New category name required.")
    if not new_icon or not new_icon.strip():
        raise ValueError("Category icon required.")
    return RetagPlan(
        transaction_ids=_matching_ids(transactions, old_tag),
        tag=new_tag.strip(),
        icon=new_icon.strip(),
    )


def plan_soft_delete(transactions: Iterable[Transaction], tag: str) -> RetagPlan:
    if not tag or not tag.strip():
        raise ValueError("Category required.")
    return RetagPlan(
        transaction_ids=_matching_ids(transactions, tag),
        tag=FALLBACK_TAG,
        icon=FALLBACK_ICON,
    )


def overlay_without(custom: Iterable[CustomCategory], tag: str) -> List[CustomCategory]:
    target = normalize_tag(tag)
    return [entry for entry in custom if normalize_tag(entry.label) != target]


def _matching_ids(transactions: Iterable[Transaction], tag: str) -> List[int]:
    target = normalize_tag(tag)
    return [
        txn.id
        for txn in transactions
        if txn.id is not None and txn.tag and normalize_tag(txn.tag) == target
    ]
