import csv
import re
from io import StringIO
from typing import Iterable, Optional

from models import Transaction
from money import safe_number

EXPORT_HEADER = ["Date", "Type", "Amount", "Category", "Description"]

# Leading characters spreadsheets evaluate as a formula.
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

# Shell commands and links that some viewers turn into live actions.
SUSPICIOUS_PREFIX = re.compile(
    r"^(?:cmd|powershell|bash)|^sh\s|^https?://", re.IGNORECASE
)


def sanitize_csv_value(value: Optional[str]) -> str:
    """Neutralise spreadsheet formula injection with a leading tab."""
    text = (value or "").strip()
    if not text:
        return ""
    if text.startswith(FORMULA_PREFIXES) or SUSPICIOUS_PREFIX.match(text):
        return f"\t{text}"
    return text


def _export_row(txn: Transaction) -> list[str]:
    return [
        txn.date.date().isoformat(),
        txn.type.value,
        f"{safe_number(txn.amount):.2f}",
        sanitize_csv_value(txn.category),
        sanitize_csv_value(txn.description),
    ]


def export_transactions(transactions: Iterable[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    writer.writerows(_export_row(txn) for txn in transactions)
    return output.getvalue()
