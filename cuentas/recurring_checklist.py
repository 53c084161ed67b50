from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cuentas.dates import (
    FALLBACK_EPOCH,
    is_today_sentinel,
    month_index,
    normalize_date,
    same_month,
)
from cuentas.transactions import (
    GOAL_MENSUAL,
    GOAL_PERIODO,
    Transaction,
)

ObligationKey = Tuple[str, str]


@dataclass(frozen=True)
class ChecklistEntry:
    transaction: Transaction
    is_paid: bool
    due_day: int
    label: str
    key: ObligationKey


@dataclass
class _GroupState:
    latest: Transaction
    latest_date: date
    is_paid: bool


def build_checklist(
    transactions: Iterable[Transaction],
    today: Optional[date] = None,
    fallback: str = FALLBACK_EPOCH,
) -> List[ChecklistEntry]:
    """Recurring obligations due this month, each flagged paid or pending.

    Occurrences sharing a normalized (description, category) key collapse to
    one entry showing the most recent occurrence; the entry is paid when any
    occurrence in the group was paid this month.
    """
    reference = today or date.today()
    groups: Dict[ObligationKey, _GroupState] = {}

    for txn in transactions:
        if not _is_open_recurring_expense(txn):
            continue
        txn_date = normalize_date(txn.date, today=reference, fallback=fallback)
        if not is_due_in_month(txn, txn_date, reference):
            continue

        paid_this_month = same_month(txn_date, reference) or is_today_sentinel(txn.date)
        key = obligation_key(txn)
        existing = groups.get(key)
        if existing is None or existing.latest_date < txn_date:
            groups[key] = _GroupState(
                latest=txn,
                latest_date=txn_date,
                is_paid=(existing is not None and existing.is_paid) or paid_this_month,
            )
        elif paid_this_month:
            existing.is_paid = True

    entries = [
        ChecklistEntry(
            transaction=state.latest,
            is_paid=state.is_paid,
            due_day=state.latest_date.day,
            label=state.latest.desc.strip(),
            key=key,
        )
        for key, state in groups.items()
    ]
    entries.sort(key=lambda entry: (entry.is_paid, entry.due_day))
    return entries


def obligation_key(txn: Transaction) -> ObligationKey:
    return (txn.desc.strip().lower(), txn.tag.strip().lower())


def is_due_in_month(txn: Transaction, anchor: date, reference: date) -> bool:
    if txn.goal_type == GOAL_MENSUAL:
        return True
    if txn.goal_type == GOAL_PERIODO and txn.periodicity:
        months_diff = month_index(reference) - month_index(anchor)
        return months_diff >= 0 and months_diff % txn.periodicity == 0
    return False


def pending_entries(entries: Iterable[ChecklistEntry]) -> List[ChecklistEntry]:
    return [entry for entry in entries if not entry.is_paid]


def prefill_from_entry(entry: ChecklistEntry, today: Optional[date] = None) -> Dict[str, Any]:
    """Form data for recording a payment of a pending obligation."""
    txn = entry.transaction
    amount: Decimal = txn.amount_ils if txn.amount_ils is not None else txn.amount
    return {
        "desc": txn.desc,
        "amount": amount,
        "currency": "ILS",
        "tag": txn.tag,
        "icon": txn.icon,
        "type": txn.type,
        "goal_type": txn.goal_type,
        "periodicity": txn.periodicity,
        "exclude_from_budget": txn.exclude_from_budget,
        "details": txn.details,
        "payment_method": txn.payment_method,
        "card_digits": txn.card_digits,
        "date": (today or date.today()).isoformat(),
    }


def ensure_cancellable(txn: Transaction) -> None:
    if not txn.is_recurring:
        raise ValueError("Only recurring transactions can be cancelled.")
    if txn.is_cancelled:
        raise ValueError("Recurrence already cancelled.")


def _is_open_recurring_expense(txn: Transaction) -> bool:
    return txn.is_expense and txn.is_recurring and not txn.is_cancelled
