from __future__ import annotations

import csv
import io
import re
import unicodedata
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable

from pydantic import BaseModel

from cuentas.categories import FALLBACK_TAG
from cuentas.transactions import DEFAULT_ICON, TYPE_EXPENSE, TYPE_INCOME, Transaction


class ImportedRow(BaseModel):
    desc: str
    amount: Decimal
    type: str
    tag: str
    date: str
    details: str | None = None
    icon: str = DEFAULT_ICON


class ImportParseResult(BaseModel):
    rows: list[ImportedRow]
    skipped: int = 0


FIELD_ALIASES: dict[str, list[str]] = {
    "amount": ["monto", "amount", "valor", "precio"],
    "description": ["descripcion", "desc", "description", "concepto", "titulo"],
    "category": ["categoria", "category", "tag", "clase"],
    "date": ["fecha", "date", "dia"],
    "details": ["detalles", "details", "notas", "notes"],
}

EXPORT_HEADERS = ["Fecha", "Categoria", "Monto", "Descripcion", "Detalles"]
IMPORTED_DESCRIPTION = "Importado"

DAY_MONTH_ONLY = re.compile(r"^\d{1,2}[/-]\d{1,2}$")
FILENAME_YEAR = re.compile(r"(?<!\d)(20\d{2})(?!\d)")
LEADING_NUMBER = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")


def parse_import_csv(
    contents: str,
    filename: str | None = None,
    today: date | None = None,
) -> ImportParseResult:
    """Parse a spreadsheet export into rows ready to store.

    Dates without a year take the year found in the file name, blank dates
    repeat the previous row's date, and a leading ``+`` marks income.
    """
    reader = csv.reader(io.StringIO(contents))
    rows = list(reader)
    if not rows:
        raise ValueError("File missing header row.")

    fieldnames = rows[0]
    amount_header = find_header(fieldnames, FIELD_ALIASES["amount"])
    description_header = find_header(fieldnames, FIELD_ALIASES["description"])
    category_header = find_header(fieldnames, FIELD_ALIASES["category"])
    date_header = find_header(fieldnames, FIELD_ALIASES["date"])
    details_header = find_header(fieldnames, FIELD_ALIASES["details"])
    if not amount_header and not description_header and not category_header:
        raise ValueError("File headers missing required fields.")

    reference = today or date.today()
    fallback_year = fallback_year_from_filename(filename, reference)
    last_date = reference.isoformat()

    parsed: list[ImportedRow] = []
    skipped = 0
    for raw in rows[1:]:
        row = row_to_dict(fieldnames, raw)
        if is_blank_row(row):
            continue

        date_value = clean_text(row.get(date_header)) if date_header else ""
        if DAY_MONTH_ONLY.match(date_value):
            date_value = f"{date_value}/{fallback_year}"
        if date_value:
            last_date = date_value
        else:
            date_value = last_date

        raw_amount = clean_text(row.get(amount_header)) if amount_header else ""
        amount, is_income = parse_signed_amount(raw_amount)
        description = clean_text(row.get(description_header)) if description_header else ""
        category = clean_text(row.get(category_header)) if category_header else ""
        if amount == 0 and not description and not category:
            skipped += 1
            continue

        details = clean_text(row.get(details_header)) if details_header else ""
        parsed.append(
            ImportedRow(
                desc=description or IMPORTED_DESCRIPTION,
                amount=abs(amount),
                type=TYPE_INCOME if is_income else TYPE_EXPENSE,
                tag=category or FALLBACK_TAG,
                date=date_value,
                details=details or None,
            )
        )

    return ImportParseResult(rows=parsed, skipped=skipped)


def export_transactions_csv(transactions: Iterable[Transaction]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_HEADERS)
    for txn in transactions:
        amount = abs(txn.amount)
        signed = -amount if txn.type == TYPE_EXPENSE else amount
        writer.writerow([txn.date, txn.tag, f"{signed:f}", txn.desc, txn.details or ""])
    return buffer.getvalue()


def parse_signed_amount(value: str) -> tuple[Decimal, bool]:
    cleaned = re.sub(r"[^0-9.\-+]", "", value.replace(",", ".", 1))
    is_income = "+" in cleaned
    match = LEADING_NUMBER.match(cleaned.replace("+", ""))
    if not match:
        return Decimal("0"), is_income
    try:
        return Decimal(match.group(0)), is_income
    except InvalidOperation:
        return Decimal("0"), is_income


def fallback_year_from_filename(filename: str | None, today: date) -> str:
    if filename:
        match = FILENAME_YEAR.search(filename)
        if match:
            return match.group(1)
    return str(today.year)


def find_header(fieldnames: list[str], candidates: list[str]) -> str | None:
    normalized = [(name, normalize_header(name)) for name in fieldnames if name]
    for candidate in candidates:
        cand_norm = normalize_header(candidate)
        for name, norm in normalized:
            if norm == cand_norm:
                return name
    return None


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str | None]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def normalize_header(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.strip().lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]", "", stripped)


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: dict[str, str | None]) -> bool:
    return all(not clean_text(value) for value in row.values())
