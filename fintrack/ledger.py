"""Balance bookkeeping for accounts.

An account's stored balance always equals its initial balance plus the
signed effect of every transaction linked to it: income adds the amount,
expense subtracts it. The helpers here only compute per-account deltas;
callers apply them inside the same database transaction that writes the
transaction rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

from fintrack.csv_parser import clean_text, parse_date, parse_decimal

ZERO = Decimal("0")
CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")
TRANSACTION_TYPES = {"income", "expense"}
DEFAULT_IMPORT_CATEGORY = "other"


@dataclass(frozen=True)
class LedgerEntry:
    account_id: int
    amount: Decimal
    type: str


@dataclass(frozen=True)
class CategoryOption:
    id: int
    name: str
    type: str


@dataclass(frozen=True)
class ImportedRow:
    row: int
    account_id: int
    category_id: int
    amount: Decimal
    type: str
    description: str
    date: date
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class RowFailure:
    row: int
    error: str


@dataclass(frozen=True)
class ImportPlan:
    rows: list[ImportedRow] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)
    deltas: dict[int, Decimal] = field(default_factory=dict)


def to_cents(value: Decimal | float | int | str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise ValueError("Invalid amount.")
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount.") from exc


def storable_amount(value: Decimal | float | int | str) -> Decimal:
    """Round to cents and reject values the NUMERIC(12, 2) columns cannot hold."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount.") from exc
    if amount.is_finite() and abs(amount) > MAX_AMOUNT:
        raise ValueError("Amount is too large.")
    return to_cents(amount)


def normalize_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError("Type must be either income or expense.")
    return normalized


def signed_effect(amount: Decimal | float | int | str, txn_type: str) -> Decimal:
    value = to_cents(amount)
    return value if normalize_type(txn_type) == "income" else -value


def creation_deltas(entry: LedgerEntry) -> dict[int, Decimal]:
    return _compact({entry.account_id: signed_effect(entry.amount, entry.type)})


def reversal_deltas(entry: LedgerEntry) -> dict[int, Decimal]:
    return _compact({entry.account_id: -signed_effect(entry.amount, entry.type)})


def reconcile_update(old: LedgerEntry, new: LedgerEntry) -> dict[int, Decimal]:
    """Deltas that move an edited transaction's effect from its old to its new state.

    The old effect is reversed on the old account and the new effect is
    applied to the new account. When both are the same account the two
    adjustments collapse into one delta; accounts whose net change is zero
    are dropped.
    """
    deltas: dict[int, Decimal] = {}
    _accumulate(deltas, old.account_id, -signed_effect(old.amount, old.type))
    _accumulate(deltas, new.account_id, signed_effect(new.amount, new.type))
    return _compact(deltas)


def aggregate_deltas(entries: Iterable[LedgerEntry]) -> dict[int, Decimal]:
    deltas: dict[int, Decimal] = {}
    for entry in entries:
        _accumulate(deltas, entry.account_id, signed_effect(entry.amount, entry.type))
    return _compact(deltas)


def expected_balance(initial_balance: Decimal, entries: Iterable[LedgerEntry]) -> Decimal:
    total = to_cents(initial_balance)
    for entry in entries:
        total += signed_effect(entry.amount, entry.type)
    return total


def plan_bulk_import(
    raw_rows: Sequence[Mapping[str, Any]],
    account_id: int,
    categories: Sequence[CategoryOption],
) -> ImportPlan:
    """Normalize raw import rows into insertable rows plus per-account deltas.

    Each row is judged on its own; a bad row is reported with its 1-based
    position and never stops the rest of the batch. Balance deltas are
    summed across the whole batch so each account is adjusted once.
    """
    plan = ImportPlan()
    for index, raw in enumerate(raw_rows, start=1):
        try:
            plan.rows.append(_normalize_import_row(index, raw, account_id, categories))
        except ValueError as exc:
            plan.failures.append(RowFailure(row=index, error=str(exc)))

    plan.deltas.update(
        aggregate_deltas(
            LedgerEntry(account_id=row.account_id, amount=row.amount, type=row.type)
            for row in plan.rows
        )
    )
    return plan


def match_import_category(
    categories: Sequence[CategoryOption], txn_type: str, label: str | None
) -> CategoryOption | None:
    needle = (clean_text(label) or DEFAULT_IMPORT_CATEGORY).lower()
    candidates = [category for category in categories if category.type == txn_type]
    for category in candidates:
        if needle in category.name.lower():
            return category
    return candidates[0] if candidates else None


def parse_tags(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple)):
        parts = [str(part) for part in value]
    else:
        return ()
    return tuple(part.strip() for part in parts if part and part.strip())


def _normalize_import_row(
    index: int,
    raw: Mapping[str, Any],
    account_id: int,
    categories: Sequence[CategoryOption],
) -> ImportedRow:
    if not isinstance(raw, Mapping):
        raise ValueError("Invalid row")

    raw_amount = raw.get("amount")
    description = clean_text(_as_text(raw.get("description")))
    raw_date = raw.get("date")
    if _is_missing(raw_amount) or not description or _is_missing(raw_date):
        raise ValueError("Missing required fields")

    signed_amount = _parse_amount(raw_amount)
    if signed_amount is None or signed_amount == ZERO:
        raise ValueError("Invalid amount")

    txn_date = raw_date if isinstance(raw_date, date) else parse_date(_as_text(raw_date))
    if txn_date is None:
        raise ValueError("Invalid date")

    txn_type = "income" if signed_amount >= ZERO else "expense"
    category = match_import_category(categories, txn_type, _as_text(raw.get("category")))
    if category is None:
        raise ValueError(f"No {txn_type} category found")

    return ImportedRow(
        row=index,
        account_id=account_id,
        category_id=category.id,
        amount=abs(signed_amount),
        type=txn_type,
        description=description[:500],
        date=txn_date,
        tags=parse_tags(raw.get("tags")),
    )


def _parse_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, Decimal)):
        value = parse_decimal(_as_text(value))
        if value is None:
            return None
    try:
        return storable_amount(value)
    except ValueError:
        return None


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (int, float, Decimal)):
        return value == 0
    return False


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _accumulate(deltas: dict[int, Decimal], account_id: int, amount: Decimal) -> None:
    deltas[account_id] = deltas.get(account_id, ZERO) + amount


def _compact(deltas: dict[int, Decimal]) -> dict[int, Decimal]:
    return {account_id: delta for account_id, delta in deltas.items() if delta != ZERO}
