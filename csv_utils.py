import csv
import re
from datetime import date, datetime
from io import StringIO
from typing import Sequence

from models import Transaction
from money import from_cents, parse_amount
from schemas import ImportRowIn

EXPORT_HEADER = ["Date", "Type", "Amount", "Description", "Category", "Account", "ToAccount"]
FORMULA_PREFIXES = ("=", "+", "-", "@")
RISKY_CELL = re.compile(r"^(?:(?:cmd|powershell|bash|sh)\b|\.|https?://)", re.IGNORECASE)


def sanitize_csv_value(value: str) -> str:
    """Neutralize spreadsheet formula injection by prefixing risky cells with a tab."""
    cleaned = (value or "").strip()
    if not cleaned:
        return ""
    if cleaned.startswith(FORMULA_PREFIXES) or RISKY_CELL.match(cleaned):
        return "\t" + cleaned
    return cleaned


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value}")


def parse_csv(content: str) -> tuple[list[ImportRowIn], list[str]]:
    """Read a bank statement export into import rows.

    Expected columns are ``Date``, ``Description`` and ``Amount``; ``Type`` and
    ``Category`` are optional. Without a type, the sign of the amount decides
    between income and expense.
    """
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    rows: list[ImportRowIn] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_date(raw.get("Date") or "")
            amount_raw = (raw.get("Amount") or "").strip()
            cents = parse_amount(amount_raw, allow_negative=True)
            type_raw = (raw.get("Type") or "").strip().lower()
            if not type_raw:
                type_raw = "expense" if cents < 0 else "income"
            description = (raw.get("Description") or "").strip() or None
            category = (raw.get("Category") or "").strip() or None
            rows.append(
                ImportRowIn(
                    date=date_value.isoformat(),
                    description=description,
                    amount=from_cents(cents),
                    type=type_raw,
                    category_name=category,
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{from_cents(txn.amount_cents):.2f}",
                sanitize_csv_value(txn.description or ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(txn.to_account.name if txn.to_account else ""),
            ]
        )
    return output.getvalue()
