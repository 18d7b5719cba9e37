from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel


class ParsedTransaction(BaseModel):
    date: date
    description: str
    amount: Decimal
    category: str
    type: str
    tags: list[str] = []


class CSVParseResult(BaseModel):
    columns: list[str]
    rows: list[ParsedTransaction]
    skipped_rows: list[int] = []


AMOUNT_COLUMNS = ("amount", "debit", "credit", "transaction_amount")
DESCRIPTION_COLUMNS = ("description", "memo", "payee", "transaction_description")
DATE_COLUMNS = ("date", "transaction_date", "posting_date")
CATEGORY_COLUMNS = ("category", "type", "transaction_type")
DEFAULT_CATEGORY = "Other"

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d/%m/%Y", "%d %b %Y", "%d %B %Y")


def parse_transactions_csv(contents: str, today: date | None = None) -> CSVParseResult:
    """Map an uploaded statement onto provisional transactions.

    Nothing is persisted here. Rows whose amount or date cannot be read are
    skipped and reported by their 1-based data row number.
    """
    reader = csv.reader(io.StringIO(contents))
    records = list(reader)
    if not records or not any(clean_text(value) for value in records[0]):
        raise ValueError("CSV missing header row.")

    fieldnames = [normalize_column(name) for name in records[0]]
    fallback_date = today or date.today()

    rows: list[ParsedTransaction] = []
    skipped: list[int] = []
    for index, record in enumerate(records[1:], start=1):
        row = row_to_dict(fieldnames, record)
        if is_blank_row(row):
            continue
        parsed = map_row(row, index, fallback_date)
        if parsed is None:
            skipped.append(index)
            continue
        rows.append(parsed)

    return CSVParseResult(columns=fieldnames, rows=rows, skipped_rows=skipped)


def map_row(row: dict[str, str | None], index: int, fallback_date: date) -> ParsedTransaction | None:
    raw_amount = first_value(row, AMOUNT_COLUMNS)
    if raw_amount:
        amount = parse_decimal(raw_amount)
        if amount is None:
            return None
    else:
        amount = Decimal("0")

    raw_date = first_value(row, DATE_COLUMNS)
    if raw_date:
        txn_date = parse_date(raw_date)
        if txn_date is None:
            return None
    else:
        txn_date = fallback_date

    description = first_value(row, DESCRIPTION_COLUMNS) or f"Transaction {index}"
    category = first_value(row, CATEGORY_COLUMNS) or DEFAULT_CATEGORY

    row_type = clean_text(row.get("type")).lower()
    transaction_type = clean_text(row.get("transaction_type")).lower()
    if amount > 0 or row_type == "income" or transaction_type == "credit":
        txn_type = "income"
    else:
        txn_type = "expense"

    return ParsedTransaction(
        date=txn_date,
        description=description,
        amount=abs(amount),
        category=category,
        type=txn_type,
        tags=split_tags(row.get("tags")),
    )


def normalize_column(value: str) -> str:
    return re.sub(r"\s+", "_", value.strip().lower())


def first_value(row: dict[str, str | None], candidates: tuple[str, ...]) -> str:
    for candidate in candidates:
        value = clean_text(row.get(candidate))
        if value:
            return value
    return ""


def split_tags(value: str | None) -> list[str]:
    cleaned = clean_text(value)
    if not cleaned:
        return []
    return [tag.strip() for tag in cleaned.split(",") if tag.strip()]


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str | None]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = cleaned.replace("$", "").replace(",", "")
    cleaned = re.sub(r"\s+", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None

    return -amount if negative else amount


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: dict[str, str | None]) -> bool:
    return all(not clean_text(value) for value in row.values())
