from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional

ZERO = Decimal("0")

TYPE_EXPENSE = "expense"
TYPE_INCOME = "income"
TRANSACTION_TYPES = {TYPE_EXPENSE, TYPE_INCOME}

GOAL_UNICO = "unico"
GOAL_MENSUAL = "mensual"
GOAL_PERIODO = "periodo"
GOAL_META = "meta"
GOAL_TYPES = {GOAL_UNICO, GOAL_MENSUAL, GOAL_PERIODO, GOAL_META}
RECURRING_GOAL_TYPES = {GOAL_MENSUAL, GOAL_PERIODO}

DEFAULT_ICON = "💳"
DEFAULT_DESCRIPTION = "Sin título"
DEFAULT_PERIODICITY = 12


@dataclass(frozen=True)
class Transaction:
    id: Optional[int]
    desc: str
    amount: Decimal
    tag: str
    type: str
    date: str
    icon: str = DEFAULT_ICON
    details: Optional[str] = None
    amount_usd: Optional[Decimal] = None
    amount_ars: Optional[Decimal] = None
    amount_ils: Optional[Decimal] = None
    amount_eur: Optional[Decimal] = None
    exclude_from_budget: bool = False
    goal_type: str = GOAL_UNICO
    is_cancelled: bool = False
    periodicity: Optional[int] = None
    payment_method: Optional[str] = None
    card_digits: Optional[str] = None

    @property
    def is_expense(self) -> bool:
        return self.type == TYPE_EXPENSE

    @property
    def is_income(self) -> bool:
        return self.type == TYPE_INCOME

    @property
    def is_recurring(self) -> bool:
        return self.goal_type in RECURRING_GOAL_TYPES


@dataclass(frozen=True)
class CustomCategory:
    label: str
    icon: str = DEFAULT_ICON
    id: Optional[str] = None


@dataclass(frozen=True)
class Preferences:
    """Per-user settings handed to the engine instead of ambient storage."""

    display_currency: str = "ILS"
    monthly_goal: Decimal = Decimal("3000")
    travel_mode_start: Optional[date] = None
    date_fallback: str = "epoch"
    custom_categories: tuple[CustomCategory, ...] = field(default_factory=tuple)


def normalize_transaction_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError("Invalid transaction type.")
    return normalized


def normalize_goal_type(value: str | None) -> str:
    if value is None or not value.strip():
        return GOAL_UNICO
    normalized = value.strip().lower()
    if normalized not in GOAL_TYPES:
        raise ValueError("Invalid goal type.")
    return normalized


def normalize_periodicity(goal_type: str, value: int | None) -> int | None:
    if goal_type != GOAL_PERIODO:
        return None
    if value is None:
        return DEFAULT_PERIODICITY
    if value <= 0:
        raise ValueError("Periodicity must be a positive number of months.")
    return value


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _optional_amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return coerce_amount(value)


def transaction_from_row(row: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        desc=row["description"] or "",
        amount=coerce_amount(row["amount"]),
        tag=row["tag"] or "",
        type=row["type"],
        date=row["date"] or "",
        icon=row["icon"] or DEFAULT_ICON,
        details=row["details"],
        amount_usd=_optional_amount(row["amount_usd"]),
        amount_ars=_optional_amount(row["amount_ars"]),
        amount_ils=_optional_amount(row["amount_ils"]),
        amount_eur=_optional_amount(row["amount_eur"]),
        exclude_from_budget=bool(row["exclude_from_budget"]),
        goal_type=row["goal_type"] or GOAL_UNICO,
        is_cancelled=bool(row["is_cancelled"]),
        periodicity=row["periodicity"],
        payment_method=row["payment_method"],
        card_digits=row["card_digits"],
    )
