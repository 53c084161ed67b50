from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection

from cuentas.transactions import (
    CustomCategory,
    Preferences,
    Transaction,
    coerce_amount,
    transaction_from_row,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("monthly_goal", Numeric(14, 2), nullable=False, server_default="3000"),
    Column("display_currency", String(3), nullable=False, server_default="ILS"),
    Column("date_fallback", String(10), nullable=False, server_default="epoch"),
    Column("travel_mode_start", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("description", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("amount_usd", Numeric(18, 2)),
    Column("amount_ars", Numeric(18, 2)),
    Column("amount_ils", Numeric(18, 2)),
    Column("amount_eur", Numeric(18, 2)),
    Column("tag", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("date", String(40), nullable=False),
    Column("icon", String(32)),
    Column("details", Text),
    Column("exclude_from_budget", Boolean, nullable=False, server_default="0"),
    Column("goal_type", String(20), nullable=False, server_default="unico"),
    Column("is_cancelled", Boolean, nullable=False, server_default="0"),
    Column("periodicity", Integer),
    Column("payment_method", String(50)),
    Column("card_digits", String(4)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

custom_categories = Table(
    "custom_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("slug", String(255), nullable=False),
    Column("label", String(255), nullable=False),
    Column("icon", String(32), nullable=False),
    UniqueConstraint("user_id", "slug", name="uq_custom_categories_user_slug"),
)

TRANSACTION_FIELDS = {
    "desc": "description",
    "amount": "amount",
    "amount_usd": "amount_usd",
    "amount_ars": "amount_ars",
    "amount_ils": "amount_ils",
    "amount_eur": "amount_eur",
    "tag": "tag",
    "type": "type",
    "date": "date",
    "icon": "icon",
    "details": "details",
    "exclude_from_budget": "exclude_from_budget",
    "goal_type": "goal_type",
    "is_cancelled": "is_cancelled",
    "periodicity": "periodicity",
    "payment_method": "payment_method",
    "card_digits": "card_digits",
}


def list_transactions(conn: Connection, user_id: int) -> list[Transaction]:
    """All of a user's transactions, newest entries first.

    Callers needing date order sort on the normalized date themselves.
    """
    rows = conn.execute(
        select(transactions)
        .where(transactions.c.user_id == user_id)
        .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
    ).mappings().all()
    return [transaction_from_row(row) for row in rows]


def get_transaction(conn: Connection, user_id: int, transaction_id: int) -> Transaction | None:
    row = conn.execute(
        select(transactions).where(
            transactions.c.id == transaction_id,
            transactions.c.user_id == user_id,
        )
    ).mappings().first()
    return transaction_from_row(row) if row else None


def create_transaction(conn: Connection, user_id: int, fields: Mapping[str, Any]) -> Transaction:
    values = _column_values(fields)
    values["user_id"] = user_id
    row = conn.execute(
        insert(transactions).values(**values).returning(*transactions.c)
    ).mappings().first()
    if not row:
        raise RuntimeError("Failed to create transaction.")
    logger.info("Created transaction %s for user %s", row["id"], user_id)
    return transaction_from_row(row)


def create_transactions(conn: Connection, user_id: int, rows: Iterable[Mapping[str, Any]]) -> int:
    values = []
    for fields in rows:
        row_values = _column_values(fields)
        row_values["user_id"] = user_id
        values.append(row_values)
    if not values:
        return 0
    conn.execute(insert(transactions), values)
    logger.info("Imported %s transactions for user %s", len(values), user_id)
    return len(values)


def update_transaction(
    conn: Connection,
    user_id: int,
    transaction_id: int,
    fields: Mapping[str, Any],
) -> Transaction | None:
    values = _column_values(fields)
    if not values:
        return get_transaction(conn, user_id, transaction_id)
    row = conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
        .values(**values)
        .returning(*transactions.c)
    ).mappings().first()
    if row:
        logger.info("Updated transaction %s (%s)", transaction_id, ", ".join(sorted(values)))
    return transaction_from_row(row) if row else None


def delete_transaction(conn: Connection, user_id: int, transaction_id: int) -> bool:
    result = conn.execute(
        delete(transactions).where(
            transactions.c.id == transaction_id,
            transactions.c.user_id == user_id,
        )
    )
    return result.rowcount > 0


def bulk_retag(
    conn: Connection,
    user_id: int,
    transaction_ids: list[int],
    tag: str,
    icon: str,
) -> int:
    if not transaction_ids:
        return 0
    result = conn.execute(
        update(transactions)
        .where(transactions.c.user_id == user_id, transactions.c.id.in_(transaction_ids))
        .values(tag=tag, icon=icon)
    )
    logger.info("Retagged %s transactions to %r for user %s", result.rowcount, tag, user_id)
    return result.rowcount


def list_custom_categories(conn: Connection, user_id: int) -> list[CustomCategory]:
    rows = conn.execute(
        select(custom_categories)
        .where(custom_categories.c.user_id == user_id)
        .order_by(custom_categories.c.id.asc())
    ).mappings().all()
    return [CustomCategory(id=row["slug"], label=row["label"], icon=row["icon"]) for row in rows]


def add_custom_category(conn: Connection, user_id: int, category: CustomCategory) -> CustomCategory:
    conn.execute(
        insert(custom_categories).values(
            user_id=user_id,
            slug=category.id,
            label=category.label,
            icon=category.icon,
        )
    )
    logger.info("Added custom category %r for user %s", category.label, user_id)
    return category


def replace_custom_categories(
    conn: Connection,
    user_id: int,
    categories: Iterable[CustomCategory],
) -> None:
    conn.execute(delete(custom_categories).where(custom_categories.c.user_id == user_id))
    values = [
        {"user_id": user_id, "slug": entry.id, "label": entry.label, "icon": entry.icon}
        for entry in categories
    ]
    if values:
        conn.execute(insert(custom_categories), values)


def load_preferences(conn: Connection, user_id: int) -> Preferences:
    row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise LookupError("User not found.")
    return Preferences(
        display_currency=row["display_currency"],
        monthly_goal=coerce_amount(row["monthly_goal"]),
        travel_mode_start=row["travel_mode_start"],
        date_fallback=row["date_fallback"],
        custom_categories=tuple(list_custom_categories(conn, user_id)),
    )


def update_preferences(
    conn: Connection,
    user_id: int,
    *,
    monthly_goal: Decimal | None = None,
    display_currency: str | None = None,
    date_fallback: str | None = None,
    travel_mode_start: date | None = None,
    clear_travel_mode: bool = False,
) -> bool:
    values: dict[str, Any] = {}
    if monthly_goal is not None:
        values["monthly_goal"] = monthly_goal
    if display_currency is not None:
        values["display_currency"] = display_currency
    if date_fallback is not None:
        values["date_fallback"] = date_fallback
    if travel_mode_start is not None:
        values["travel_mode_start"] = travel_mode_start
    elif clear_travel_mode:
        values["travel_mode_start"] = None
    if not values:
        return conn.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None
    result = conn.execute(update(users).where(users.c.id == user_id).values(**values))
    return result.rowcount > 0


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in fields.items():
        column = TRANSACTION_FIELDS.get(key)
        if column is None:
            raise ValueError(f"Unknown transaction field: {key}")
        values[column] = value
    return values
